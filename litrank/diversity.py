"""Final blend, ordering and source diversity."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence

from loguru import logger

from . import config
from .pipeline_types import RankedResult, ScoredCandidate


@dataclass(frozen=True)
class SourceDiversityReport:
    total: int
    source_counts: Dict[str, int]
    dominant_source: Optional[str]
    max_share: float
    needs_enforcement: bool


class DiversitySampler:
    def __init__(
        self,
        relevance_weight: float = config.RELEVANCE_WEIGHT,
        quality_weight: float = config.QUALITY_WEIGHT,
        max_consecutive_per_source: int = config.MAX_CONSECUTIVE_PER_SOURCE,
    ) -> None:
        total = relevance_weight + quality_weight
        if total <= 0:
            raise ValueError("relevance_weight + quality_weight must be > 0")
        self.relevance_weight = relevance_weight / total
        self.quality_weight = quality_weight / total
        self.max_consecutive = max(1, max_consecutive_per_source)

    def final_rank(self, sc: ScoredCandidate) -> float:
        # relevance is 0-1, quality 0-100; result is 0-100
        quality = sc.quality_score if sc.quality_score is not None else 0.0
        return self.relevance_weight * 100.0 * sc.relevance + self.quality_weight * quality

    def select(self, candidates: Sequence[ScoredCandidate], limit: int) -> List[RankedResult]:
        """
        Blend, sort once, then fill greedily. At most `max_consecutive` results
        in a row may share a source; the cap is soft and gives way when only
        one source is left to draw from.
        """
        if not candidates or limit <= 0:
            return []

        pool = [replace(sc, final_rank=self.final_rank(sc)) for sc in candidates]
        pool.sort(key=lambda sc: -(sc.final_rank or 0.0))

        chosen: List[ScoredCandidate] = []
        run_source: Optional[str] = None
        run_length = 0
        deferred = 0
        while pool and len(chosen) < limit:
            pick = 0
            if run_length >= self.max_consecutive:
                for j, sc in enumerate(pool):
                    if sc.candidate.source != run_source:
                        pick = j
                        break
                if pick:
                    deferred += 1
            sc = pool.pop(pick)
            if sc.candidate.source == run_source:
                run_length += 1
            else:
                run_source = sc.candidate.source
                run_length = 1
            chosen.append(sc)

        if deferred:
            logger.debug("Diversity cap reordered {} picks", deferred)

        return [
            RankedResult(
                candidate=sc.candidate,
                lexical_score=sc.lexical_score,
                neural_score=sc.neural_score,
                quality_score=sc.quality_score if sc.quality_score is not None else 0.0,
                final_rank=sc.final_rank or 0.0,
                position=pos,
                domain=sc.domain,
                neural_explanation=sc.neural_explanation,
            )
            for pos, sc in enumerate(chosen, start=1)
        ]


def source_diversity_report(
    results: Sequence[RankedResult],
    dominance_share: float = config.SOURCE_DOMINANCE_SHARE,
) -> SourceDiversityReport:
    counts = Counter(r.candidate.source for r in results)
    if not counts:
        return SourceDiversityReport(0, {}, None, 0.0, False)
    source, top = counts.most_common(1)[0]
    share = top / float(len(results))
    return SourceDiversityReport(
        total=len(results),
        source_counts=dict(counts),
        dominant_source=source,
        max_share=share,
        needs_enforcement=len(counts) > 1 and share > dominance_share,
    )
