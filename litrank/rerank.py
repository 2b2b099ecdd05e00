# litrank/rerank.py
from __future__ import annotations

import math
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np
from loguru import logger
from sentence_transformers import CrossEncoder

from . import config
from .cache import RelevanceCache
from .errors import (
    DependencyUnavailable,
    RecoverableStageFailure,
    RequestCancelled,
    StageOutcome,
)
from .normalize import basic_clean
from .pipeline_types import Candidate, QueryContext, ScoredCandidate
from .resilience import ResilienceLayer

STAGE = "neural_rerank"


class RelevanceScorer(Protocol):
    def score(self, inputs: Sequence[str]) -> Sequence[float]:
        ...


# ---------------------------------------------------------------------------
# HF model handling
# ---------------------------------------------------------------------------

def split_input(text: str) -> Tuple[str, str]:
    query, _, doc = text.partition(config.NEURAL_SEPARATOR)
    return query, doc


class CrossEncoderScorer:
    """
    Adapter from "query [SEP] text" inputs to a sentence-transformers
    CrossEncoder. Scores come back as probabilities in [0, 1].
    """

    def __init__(self, model, model_id: str, outputs_logits: bool = False) -> None:
        self.model = model
        self.model_id = model_id
        self.outputs_logits = outputs_logits

    @classmethod
    def load(
        cls,
        candidates: Optional[Sequence[str]] = None,
        device: str = "cpu",
    ) -> "CrossEncoderScorer":
        """Load the first cross-encoder that works. Respects HF offline cache via env."""
        for rid in candidates or config.RERANKER_CANDIDATES:
            try:
                logger.info("Loading cross-encoder reranker: {}", rid)
                model = CrossEncoder(rid, device=device)
                logger.info("Loaded cross-encoder reranker: {}", rid)
                return cls(model, rid, config.RERANKER_OUTPUTS_LOGITS.get(rid, False))
            except Exception as e:
                logger.warning("Failed to load CrossEncoder '{}': {}", rid, e)
        raise DependencyUnavailable(config.NEURAL_DEPENDENCY_KEY, "no cross-encoder could be loaded")

    def score(self, inputs: Sequence[str]) -> np.ndarray:
        if not inputs:
            return np.zeros((0,), dtype="float32")
        pairs = [split_input(t) for t in inputs]
        raw = np.asarray(self.model.predict(pairs, show_progress_bar=False), dtype="float32").reshape(-1)
        if self.outputs_logits:
            raw = 1.0 / (1.0 + np.exp(-raw))
        return raw


# ---------------------------------------------------------------------------
# Public structures and helpers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RerankOptions:
    batch_size: int = config.NEURAL_BATCH_SIZE
    concurrency: int = config.NEURAL_CONCURRENCY
    threshold: float = config.NEURAL_SCORE_THRESHOLD
    timeout_s: float = config.NEURAL_TIMEOUT_S


class CancellationToken:
    """Request-scoped stop flag, checked between neural batches."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def build_input(query_text: str, candidate: Candidate, limit: int = config.NEURAL_TEXT_LIMIT) -> str:
    """
    "query [SEP] title. abstract" with the candidate side cut to whatever the
    query leaves of `limit`, before anything is joined.
    """
    budget = max(0, limit - len(query_text) - len(config.NEURAL_SEPARATOR))
    title = basic_clean(candidate.title)[:budget]
    room = budget - len(title) - 2
    abstract = basic_clean(candidate.abstract)[:room] if room > 0 else ""
    body = f"{title}. {abstract}" if abstract else title
    return f"{query_text}{config.NEURAL_SEPARATOR}{body}"


def explain_score(score: float) -> str:
    for bound, label in config.NEURAL_EXPLANATIONS:
        if score >= bound:
            return f"{label} ({score * 100:.0f}% confidence)"
    return config.NEURAL_EXPLANATIONS[-1][1]


def _clamp_score(value: float) -> float:
    v = float(value)
    if math.isnan(v):
        logger.warning("Reranker returned NaN; treating as 0")
        return 0.0
    if v < 0.0 or v > 1.0:
        logger.warning("Reranker score {} outside [0,1]; clamping", v)
        return min(1.0, max(0.0, v))
    return v


# ---------------------------------------------------------------------------
# Reranker
# ---------------------------------------------------------------------------

class NeuralReranker:
    def __init__(
        self,
        scorer: Optional[RelevanceScorer] = None,
        scorer_factory: Optional[Callable[[], RelevanceScorer]] = None,
        cache: Optional[RelevanceCache] = None,
        resilience: Optional[ResilienceLayer] = None,
        dependency_key: str = config.NEURAL_DEPENDENCY_KEY,
        text_limit: int = config.NEURAL_TEXT_LIMIT,
    ) -> None:
        self._scorer = scorer
        self._factory = scorer_factory or CrossEncoderScorer.load
        self._load_lock = threading.Lock()
        self._load_failed = False
        self.cache = cache or RelevanceCache()
        self.resilience = resilience or ResilienceLayer()
        self.dependency_key = dependency_key
        self.text_limit = text_limit

    def _get_scorer(self) -> Optional[RelevanceScorer]:
        with self._load_lock:
            if self._scorer is not None or self._load_failed:
                return self._scorer
            try:
                self._scorer = self._factory()
            except Exception as e:
                logger.warning("Neural scorer unavailable; reranking will pass through: {}", e)
                self._load_failed = True
            return self._scorer

    def warmup(self) -> bool:
        return self._get_scorer() is not None

    def _predict(self, scorer: RelevanceScorer, inputs: List[str]) -> List[float]:
        raw = scorer.score(inputs)
        scores = [float(s) for s in np.asarray(raw, dtype="float64").reshape(-1)]
        if len(scores) != len(inputs):
            raise ValueError(f"scorer returned {len(scores)} scores for {len(inputs)} inputs")
        return scores

    def _score_batch(self, scorer: RelevanceScorer, inputs: List[str]) -> List[float]:
        return self.resilience.call(self.dependency_key, self._predict, scorer, inputs)

    def _passthrough(
        self,
        candidates: List[ScoredCandidate],
        reason: str,
        counters: Dict[str, float],
    ) -> StageOutcome[List[ScoredCandidate]]:
        logger.warning("Neural rerank degraded to lexical pass-through: {}", reason)
        ranked = sorted(candidates, key=lambda sc: -sc.relevance)
        return StageOutcome.degrade(ranked, RecoverableStageFailure(STAGE, reason), **counters)

    def rerank(
        self,
        query: QueryContext,
        candidates: List[ScoredCandidate],
        opts: Optional[RerankOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> StageOutcome[List[ScoredCandidate]]:
        """
        Score candidates with the cross-encoder in bounded-concurrency batches,
        drop those under the threshold and return the rest sorted by relevance.

        Cached scores are reused; failed batches keep their candidates without
        a neural score; total unavailability falls back to the lexical proxy.
        """
        opts = opts or RerankOptions()
        counters: Dict[str, float] = {
            "cache_hits": 0,
            "cache_lookups": 0,
            "inferred": 0,
            "batches": 0,
            "failed_batches": 0,
            "dropped": 0,
            "timed_out_batches": 0,
        }
        if not candidates:
            return StageOutcome.ok([], **counters)

        # cache first
        scores: Dict[int, float] = {}
        keys: List[str] = []
        misses: List[int] = []
        for i, sc in enumerate(candidates):
            key = RelevanceCache.make_key(query.normalized, sc.candidate)
            keys.append(key)
            cached = self.cache.get(key)
            if cached is None:
                misses.append(i)
            else:
                scores[i] = cached
        counters["cache_lookups"] = len(candidates)
        counters["cache_hits"] = len(scores)

        failed: List[int] = []
        model_unavailable = False
        if misses:
            scorer = self._get_scorer()
            if scorer is None and not scores:
                return self._passthrough(candidates, "neural model could not be loaded", counters)
            if scorer is None:
                model_unavailable = True
                failed = list(misses)
            else:
                failed = self._run_batches(query, candidates, misses, scorer, opts, cancel_token, keys, scores, counters)

        if failed and len(failed) == len(candidates):
            if counters["timed_out_batches"]:
                reason = f"neural stage exceeded its {opts.timeout_s:g}s deadline"
            else:
                reason = "every inference batch failed"
            return self._passthrough(candidates, reason, counters)

        failed_set = set(failed)
        kept: List[ScoredCandidate] = []
        for i, sc in enumerate(candidates):
            if i in failed_set:
                kept.append(sc)
                continue
            s = scores[i]
            if s < opts.threshold:
                counters["dropped"] += 1
                continue
            kept.append(replace(sc, neural_score=s, neural_explanation=explain_score(s)))

        kept.sort(key=lambda sc: -sc.relevance)
        logger.info(
            "Neural rerank: {} -> {} (cache hits={}, inferred={}, failed batches={}, threshold={})",
            len(candidates), len(kept), int(counters["cache_hits"]), int(counters["inferred"]),
            int(counters["failed_batches"]), opts.threshold,
        )
        if failed:
            if model_unavailable:
                note = f"neural model unavailable; {len(failed)} uncached candidates unscored"
            else:
                note = f"{int(counters['failed_batches'])} batch(es) failed; {len(failed)} candidates unscored"
                if counters["timed_out_batches"]:
                    note += f" ({int(counters['timed_out_batches'])} past the {opts.timeout_s:g}s deadline)"
            return StageOutcome.degrade(kept, RecoverableStageFailure(STAGE, note), **counters)
        return StageOutcome.ok(kept, **counters)

    def _run_batches(
        self,
        query: QueryContext,
        candidates: List[ScoredCandidate],
        misses: List[int],
        scorer: RelevanceScorer,
        opts: RerankOptions,
        cancel_token: Optional[CancellationToken],
        keys: List[str],
        scores: Dict[int, float],
        counters: Dict[str, float],
    ) -> List[int]:
        """
        Fill `scores` for the cache misses; return indices left unscored.

        Nothing here waits past `opts.timeout_s`: batches not submitted or not
        finished by then count as failed and are left running in the
        background.
        """
        query_text = basic_clean(query.raw)
        size = max(1, opts.batch_size)
        batches = [misses[j:j + size] for j in range(0, len(misses), size)]
        counters["batches"] = len(batches)

        deadline = time.monotonic() + opts.timeout_s
        slots = threading.BoundedSemaphore(max(1, opts.concurrency))
        submitted: List[Tuple[List[int], Future]] = []
        cancelled = False

        pool = ThreadPoolExecutor(max_workers=max(1, opts.concurrency), thread_name_prefix="rerank")
        try:
            for batch in batches:
                if cancel_token is not None and cancel_token.cancelled:
                    cancelled = True
                    break
                if not slots.acquire(timeout=max(0.0, deadline - time.monotonic())):
                    break
                if cancel_token is not None and cancel_token.cancelled:
                    slots.release()
                    cancelled = True
                    break
                inputs = [build_input(query_text, candidates[i].candidate, self.text_limit) for i in batch]
                fut = pool.submit(self._score_batch, scorer, inputs)
                fut.add_done_callback(lambda _f: slots.release())
                submitted.append((batch, fut))

            wait([fut for _, fut in submitted], timeout=max(0.0, deadline - time.monotonic()))
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        if cancelled:
            logger.info("Neural rerank cancelled after {} of {} batches", len(submitted), len(batches))
            raise RequestCancelled(f"rerank cancelled after {len(submitted)} of {len(batches)} batches")

        failed: List[int] = []
        for batch, fut in submitted:
            if not fut.done():
                counters["failed_batches"] += 1
                counters["timed_out_batches"] += 1
                failed.extend(batch)
                continue
            try:
                batch_scores = fut.result()
            except DependencyUnavailable as e:
                counters["failed_batches"] += 1
                failed.extend(batch)
                logger.warning("Neural batch of {} failed: {}", len(batch), e)
                continue
            for i, raw in zip(batch, batch_scores):
                s = _clamp_score(raw)
                self.cache.put(keys[i], s)
                scores[i] = s
                counters["inferred"] += 1

        for batch in batches[len(submitted):]:
            counters["failed_batches"] += 1
            counters["timed_out_batches"] += 1
            failed.extend(batch)

        if counters["timed_out_batches"]:
            logger.warning(
                "Neural rerank hit its {:g}s deadline: {} of {} batches unfinished",
                opts.timeout_s, int(counters["timed_out_batches"]), len(batches),
            )
        return failed
