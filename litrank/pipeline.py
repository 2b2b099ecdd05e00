"""
End-to-end relevance pipeline:

lexical -> recall filter -> neural rerank -> domain/aspect filter
-> quality -> quality filter -> diversity selection

Only the relevance cache and the resilience registry are shared between
runs; everything else is built per call from PipelineConfig.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from loguru import logger

from .cache import RelevanceCache
from .config import PipelineConfig
from .diversity import DiversitySampler, source_diversity_report
from .domain_filter import DomainAspectFilter
from .errors import ValidationFailure
from .lexical import LexicalScorer, cap_for_neural, recall_filter
from .monitor import PerformanceMonitor, PipelineRunReport, log_report
from .pipeline_types import Candidate, RankedResult
from .providers import GatherResult, Provider, ProviderGateway
from .quality import QualityScorer, VenueLookup, quality_filter
from .query_analysis import analyze_query
from .rerank import CancellationToken, NeuralReranker, RelevanceScorer, RerankOptions
from .resilience import CircuitStatus, ResilienceLayer


@dataclass
class PipelineResult:
    results: List[RankedResult]
    report: PipelineRunReport


class RelevancePipeline:
    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        scorer: Optional[RelevanceScorer] = None,
        cache: Optional[RelevanceCache] = None,
        resilience: Optional[ResilienceLayer] = None,
        reranker: Optional[NeuralReranker] = None,
        lexical: Optional[LexicalScorer] = None,
        domain_filter: Optional[DomainAspectFilter] = None,
        venue_prestige: Optional[VenueLookup] = None,
        current_year: Optional[int] = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.cache = cache or RelevanceCache(ttl_seconds=self.config.cache_ttl_seconds)
        self.resilience = resilience or ResilienceLayer()
        self.reranker = reranker or NeuralReranker(
            scorer=scorer, cache=self.cache, resilience=self.resilience
        )
        self.lexical = lexical or LexicalScorer()
        self.domain_filter = domain_filter or DomainAspectFilter()
        self.venue_prestige = venue_prestige
        self.current_year = current_year

    def warmup(self) -> bool:
        ok = self.reranker.warmup()
        logger.info("Pipeline warmup: neural scorer {}", "ready" if ok else "unavailable")
        return ok

    def get_circuit_status(self, key: str) -> CircuitStatus:
        return self.resilience.get_circuit_status(key)

    def run(
        self,
        query: str,
        candidates: Sequence[Candidate],
        config: Optional[PipelineConfig] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> PipelineResult:
        cfg = config or self.config
        candidates = list(candidates or [])
        monitor = PerformanceMonitor(query or "", initial_count=len(candidates))

        problem = None
        if not query or not query.strip():
            problem = ValidationFailure("validate", "query is blank")
        elif not candidates:
            problem = ValidationFailure("validate", "no candidates")
        if problem is not None:
            with monitor.stage("validate", len(candidates)) as st:
                st.add_note(problem.message)
            logger.warning("Validation failed: {}", problem)
            report = monitor.report(final_count=0)
            return PipelineResult(results=[], report=report)

        ctx = analyze_query(query, self.domain_filter)

        with monitor.stage("lexical", len(candidates)) as st:
            scored = self.lexical.score(ctx, candidates)
            st.output_count = len(scored)
            st.counters["matched"] = sum(1 for sc in scored if sc.lexical_score > 0)

        with monitor.stage("recall_filter", len(scored)) as st:
            outcome = recall_filter(scored, cfg.lexical_recall_threshold)
            recalled = outcome.value
            if outcome.degraded:
                st.mark_degraded(outcome.error.message)
            st.output_count = len(recalled)

        capped = cap_for_neural(recalled, cfg.max_neural_candidates)
        with monitor.stage("neural_rerank", len(capped)) as st:
            st.counters["capped"] = len(recalled) - len(capped)
            opts = RerankOptions(
                batch_size=cfg.neural_batch_size,
                concurrency=cfg.neural_concurrency,
                threshold=cfg.neural_score_threshold,
                timeout_s=cfg.neural_timeout_s,
            )
            outcome = self.reranker.rerank(ctx, capped, opts, cancel_token)
            reranked = outcome.value
            st.counters.update(outcome.counters)
            if outcome.degraded:
                st.mark_degraded(outcome.error.message)
            st.output_count = len(reranked)
            monitor.record_cache(
                int(outcome.counters.get("cache_hits", 0)),
                int(outcome.counters.get("cache_lookups", 0)),
            )

        with monitor.stage("domain_filter", len(reranked)) as st:
            outcome = self.domain_filter.filter(ctx, reranked, cfg.allowed_domains)
            filtered = outcome.value
            if outcome.degraded:
                st.mark_degraded(outcome.error.message)
            st.output_count = len(filtered)

        with monitor.stage("quality", len(filtered)) as st:
            scorer = QualityScorer(
                weights=cfg.quality_weights,
                current_year=self.current_year,
                venue_prestige=self.venue_prestige,
            )
            rated = scorer.score_all(filtered)
            st.output_count = len(rated)

        with monitor.stage("quality_filter", len(rated)) as st:
            outcome = quality_filter(rated, cfg.min_quality_score, cfg.preserved_sources)
            rated = outcome.value
            st.counters.update(outcome.counters)
            if outcome.degraded:
                st.mark_degraded(outcome.error.message)
            st.output_count = len(rated)

        with monitor.stage("diversity", len(rated)) as st:
            sampler = DiversitySampler(
                relevance_weight=cfg.relevance_weight,
                quality_weight=cfg.quality_weight,
                max_consecutive_per_source=cfg.max_consecutive_per_source,
            )
            results = sampler.select(rated, cfg.result_limit)
            st.output_count = len(results)
            div = source_diversity_report(results)
            st.counters["sources"] = len(div.source_counts)
            st.counters["max_source_share"] = round(div.max_share, 4)
            if div.needs_enforcement:
                st.add_note(f"source '{div.dominant_source}' holds {div.max_share:.0%} of results")

        report = monitor.report(final_count=len(results))
        log_report(report)
        return PipelineResult(results=results, report=report)

    def search(
        self,
        query: str,
        providers: Sequence[Provider],
        config: Optional[PipelineConfig] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> PipelineResult:
        """Fetch from providers, then rank what came back."""
        gathered: GatherResult = ProviderGateway(self.resilience).gather(query, providers)
        result = self.run(query, gathered.candidates, config, cancel_token)
        for name, err in gathered.failures.items():
            result.report.degradations.append(f"provider:{name}: {err}")
        return result


def run_pipeline(
    query: str,
    candidates: Sequence[Candidate],
    config: Optional[PipelineConfig] = None,
    *,
    pipeline: Optional[RelevancePipeline] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> PipelineResult:
    """Convenience entry point; builds a default pipeline when none is given."""
    pipe = pipeline or RelevancePipeline(config=config)
    return pipe.run(query, candidates, config, cancel_token)
