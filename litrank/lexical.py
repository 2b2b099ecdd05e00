# litrank/lexical.py
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Pattern, Sequence, Tuple

import numpy as np
from loguru import logger
from rank_bm25 import BM25Okapi

from . import config
from .errors import RecoverableStageFailure, StageOutcome
from .normalize import lexical_tokens_for_bm25, normalize_for_lexical_index
from .pipeline_types import Candidate, QueryContext, ScoredCandidate

STAGE = "lexical_recall"


class FieldBM25(BM25Okapi):
    """
    BM25Okapi with the non-negative Lucene idf, floored, and document length
    measured without the query terms.

    The stock Okapi idf goes negative for terms present in more than half of
    the documents, which on a small per-request batch would make a matching
    candidate score below a non-matching one.

    Only non-query tokens count towards `dl` and `avgdl`, so another
    occurrence of one query term never shrinks the other terms' share and
    the summed score cannot drop when a term count goes up.
    """

    idf_floor = config.BM25_IDF_FLOOR

    def __init__(self, corpus, query_terms: Iterable[str] = (), **kwargs):
        self.length_exclude = frozenset(query_terms)
        super().__init__(corpus, **kwargs)

    def _initialize(self, corpus):
        nd = super()._initialize(corpus)
        self.doc_len = [sum(1 for tok in doc if tok not in self.length_exclude) for doc in corpus]
        # a batch made only of query terms has no length to normalise by
        self.avgdl = max(1.0, sum(self.doc_len) / float(self.corpus_size or 1))
        return nd

    def _calc_idf(self, nd):
        for word, freq in nd.items():
            idf = math.log(1.0 + (self.corpus_size - freq + 0.5) / (freq + 0.5))
            self.idf[word] = max(idf, self.idf_floor)


def _field_scores(docs: List[List[str]], terms: Sequence[str], k1: float, b: float) -> np.ndarray:
    if not docs or not terms or sum(len(d) for d in docs) == 0:
        return np.zeros((len(docs),), dtype="float64")
    bm25 = FieldBM25(docs, query_terms=terms, k1=k1, b=b)
    return np.asarray(bm25.get_scores(list(terms)), dtype="float64")


# ---------------------------------------------------------------------------
# Query compilation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CompiledQuery:
    terms: Tuple[str, ...]
    phrase: Optional[Pattern[str]]


def compile_query(query: QueryContext) -> CompiledQuery:
    """Build the matchers once per batch; every candidate reuses them."""
    terms = tuple(query.terms)
    phrase = None
    if len(terms) >= 2:
        phrase = re.compile(r"\b" + r"\s+".join(re.escape(t) for t in terms) + r"\b")
    return CompiledQuery(terms=terms, phrase=phrase)


# ---------------------------------------------------------------------------
# Scorer
# ---------------------------------------------------------------------------

class LexicalScorer:
    def __init__(
        self,
        k1: float = config.BM25_K1,
        b: float = config.BM25_B,
        title_weight: float = config.TITLE_FIELD_WEIGHT,
        abstract_weight: float = config.ABSTRACT_FIELD_WEIGHT,
        title_coverage_bonus: float = config.TITLE_COVERAGE_BONUS,
        phrase_bonus: float = config.TITLE_PHRASE_BONUS,
    ) -> None:
        self.k1 = k1
        self.b = b
        self.title_weight = title_weight
        self.abstract_weight = abstract_weight
        self.title_coverage_bonus = title_coverage_bonus
        self.phrase_bonus = phrase_bonus

    def score(self, query: QueryContext, candidates: Sequence[Candidate]) -> List[ScoredCandidate]:
        """
        One lexical score per candidate, same order and length as the input.
        Title and abstract are indexed as separate BM25 fields over this batch.
        """
        if not candidates:
            return []

        cq = compile_query(query)
        if not cq.terms:
            logger.warning("Query '{}' has no usable terms; lexical scores are all zero", query.raw)
            return [ScoredCandidate(candidate=c) for c in candidates]

        title_norms = [normalize_for_lexical_index(c.title) for c in candidates]
        title_docs = [lexical_tokens_for_bm25(t) for t in title_norms]
        abstract_docs = [lexical_tokens_for_bm25(c.abstract) for c in candidates]

        title_bm25 = _field_scores(title_docs, cq.terms, self.k1, self.b)
        abstract_bm25 = _field_scores(abstract_docs, cq.terms, self.k1, self.b)

        n_terms = float(len(cq.terms))
        raw_scores: List[float] = []
        for i in range(len(candidates)):
            s = self.title_weight * title_bm25[i] + self.abstract_weight * abstract_bm25[i]
            if title_docs[i]:
                present = set(title_docs[i])
                coverage = sum(1 for t in cq.terms if t in present) / n_terms
                s += self.title_coverage_bonus * coverage
            if cq.phrase is not None and cq.phrase.search(title_norms[i]):
                s += self.phrase_bonus
            raw_scores.append(float(s))

        top = max(raw_scores)
        out = [
            ScoredCandidate(
                candidate=c,
                lexical_score=s,
                lexical_norm=(s / top) if top > 0 else 0.0,
            )
            for c, s in zip(candidates, raw_scores)
        ]
        nonzero = sum(1 for s in raw_scores if s > 0)
        logger.info(
            "Lexical scoring: {} candidates, {} with matches, max={:.3f}",
            len(out), nonzero, top,
        )
        return out


# ---------------------------------------------------------------------------
# Recall filter
# ---------------------------------------------------------------------------

def is_degenerate(
    scores: Sequence[float],
    threshold: float,
    zero_rate: float = config.DEGENERATE_ZERO_RATE,
    below_rate: float = config.DEGENERATE_BELOW_RATE,
) -> bool:
    if not scores:
        return False
    n = float(len(scores))
    zeros = sum(1 for s in scores if s <= 0.0)
    below = sum(1 for s in scores if s < threshold)
    return zeros == len(scores) or zeros / n > zero_rate or below / n >= below_rate


def recall_filter(
    scored: List[ScoredCandidate],
    threshold: float = config.DEFAULT_LEXICAL_RECALL_THRESHOLD,
    zero_rate: float = config.DEGENERATE_ZERO_RATE,
    below_rate: float = config.DEGENERATE_BELOW_RATE,
) -> StageOutcome[List[ScoredCandidate]]:
    """
    Apply the lexical recall cut. A degenerate score distribution means the
    scores say nothing useful, so everything is passed on instead of
    dropping the whole batch.
    """
    if not scored:
        return StageOutcome.ok([])

    scores = [sc.lexical_score for sc in scored]
    if is_degenerate(scores, threshold, zero_rate, below_rate):
        logger.warning(
            "Recall filter bypassed: degenerate lexical scores ({} candidates, threshold={})",
            len(scored), threshold,
        )
        return StageOutcome.degrade(
            list(scored),
            RecoverableStageFailure(STAGE, "degenerate lexical scores; recall cut bypassed"),
        )

    kept = [sc for sc in scored if sc.lexical_score >= threshold]
    logger.info("Recall filter: {} -> {} (threshold={})", len(scored), len(kept), threshold)
    return StageOutcome.ok(kept)


def cap_for_neural(scored: List[ScoredCandidate], limit: int) -> List[ScoredCandidate]:
    """Keep the top `limit` by lexical score before the expensive stage."""
    if len(scored) <= limit:
        return list(scored)
    ranked = sorted(scored, key=lambda sc: -sc.lexical_score)
    logger.info("Capping neural input: {} -> {}", len(scored), limit)
    return ranked[:limit]
