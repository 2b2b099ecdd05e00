from __future__ import annotations

"""
Adaptive multi-factor quality score (0-100).

Three sub-scores, each on 0-100:

* citation impact - citations per year since publication, log-saturated
* venue prestige  - lookup table or venue h-index / impact factor
* recency         - exponential decay with a multi-year half-life

When a candidate has no venue data its venue weight is spread over the
other two factors, so sources that expose no venue metrics are not
penalised for it.
"""

import datetime as _dt
import math
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Union

from loguru import logger

from . import config
from .config import QualityWeights
from .errors import RecoverableStageFailure, StageOutcome
from .pipeline_types import Candidate, ScoredCandidate

STAGE = "quality_filter"

VenueLookup = Union[Mapping[str, float], Callable[[str], Optional[float]]]


def _clamp(v: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return max(lo, min(hi, v))


def _log_saturation(value: float, saturation: float) -> float:
    if value <= 0:
        return 0.0
    return _clamp(100.0 * math.log1p(value) / math.log1p(saturation))


class QualityScorer:
    def __init__(
        self,
        weights: Optional[QualityWeights] = None,
        current_year: Optional[int] = None,
        venue_prestige: Optional[VenueLookup] = None,
    ) -> None:
        self.current_year = current_year or _dt.date.today().year
        self._venue_lookup = venue_prestige

        if weights is None:
            w_venue = dict(config.QUALITY_WEIGHTS_WITH_VENUE)
        else:
            w_venue = {"citation": weights.citation, "venue": weights.venue, "recency": weights.recency}
        self.weights_with_venue = self._normalise(w_venue)

        if weights is None:
            self.weights_without_venue = self._normalise(dict(config.QUALITY_WEIGHTS_WITHOUT_VENUE))
        else:
            # venue share redistributed in proportion to the remaining weights
            self.weights_without_venue = self._normalise(
                {"citation": weights.citation, "recency": weights.recency}
            )

    @staticmethod
    def _normalise(weights: Dict[str, float]) -> Dict[str, float]:
        total = sum(weights.values())
        return {k: v / total for k, v in weights.items()}

    # ---------------------------
    # Sub-scores
    # ---------------------------

    def _age(self, year: Optional[int]) -> Optional[int]:
        if year is None:
            return None
        return max(1, self.current_year - int(year))

    def citation_score(self, candidate: Candidate) -> float:
        if not candidate.citation_count or candidate.citation_count <= 0:
            return 0.0
        age = self._age(candidate.year) or 1
        per_year = candidate.citation_count / age
        return _log_saturation(per_year, config.CITATION_RATE_SATURATION)

    def recency_score(self, candidate: Candidate) -> float:
        if candidate.year is None:
            return config.UNKNOWN_YEAR_RECENCY
        age = max(0, self.current_year - int(candidate.year))
        return _clamp(100.0 * 0.5 ** (age / config.RECENCY_HALF_LIFE_YEARS))

    def venue_score(self, candidate: Candidate) -> Optional[float]:
        """None when nothing is known about the venue."""
        if candidate.venue and self._venue_lookup is not None:
            if callable(self._venue_lookup):
                found = self._venue_lookup(candidate.venue)
            else:
                found = self._venue_lookup.get(candidate.venue)
            if found is not None:
                return _clamp(float(found))

        parts = []
        if candidate.venue_h_index is not None:
            parts.append(_log_saturation(candidate.venue_h_index, config.VENUE_H_INDEX_SATURATION))
        if candidate.venue_impact_factor is not None:
            parts.append(_log_saturation(candidate.venue_impact_factor, config.VENUE_IMPACT_FACTOR_SATURATION))
        if parts:
            return sum(parts) / len(parts)
        return None

    # ---------------------------
    # Public API
    # ---------------------------

    def components(self, candidate: Candidate) -> Dict[str, float]:
        citation = self.citation_score(candidate)
        recency = self.recency_score(candidate)
        venue = self.venue_score(candidate)

        if venue is None:
            w = self.weights_without_venue
            total = w["citation"] * citation + w["recency"] * recency
            out = {"citation": citation, "recency": recency}
        else:
            w = self.weights_with_venue
            total = w["citation"] * citation + w["venue"] * venue + w["recency"] * recency
            out = {"citation": citation, "venue": venue, "recency": recency}

        out["total"] = _clamp(total)
        out.update({f"w_{k}": v for k, v in w.items()})
        return out

    def score(self, candidate: Candidate) -> float:
        try:
            return self.components(candidate)["total"]
        except (TypeError, ValueError) as e:
            logger.warning("Quality scoring failed for '{}': {}", candidate.title[:60], e)
            return 0.0

    def score_all(self, scored: List[ScoredCandidate]) -> List[ScoredCandidate]:
        out: List[ScoredCandidate] = []
        for sc in scored:
            try:
                comps = self.components(sc.candidate)
            except (TypeError, ValueError) as e:
                logger.warning("Quality scoring failed for '{}': {}", sc.candidate.title[:60], e)
                comps = {"total": 0.0}
            out.append(replace(sc, quality_score=comps["total"], quality_components=comps))
        if out:
            mean = sum(sc.quality_score or 0.0 for sc in out) / len(out)
            with_venue = sum(1 for sc in out if "venue" in (sc.quality_components or {}))
            logger.info("Quality scores: n={}, mean={:.1f}, with venue data={}", len(out), mean, with_venue)
        return out


def quality_filter(
    scored: List[ScoredCandidate],
    min_score: float = config.MIN_QUALITY_SCORE,
    preserved_sources: Iterable[str] = config.PRESERVED_SOURCES,
    preserved_floor: float = config.PRESERVED_SOURCE_QUALITY_FLOOR,
) -> StageOutcome[List[ScoredCandidate]]:
    """
    Drop candidates scoring under `min_score`. Records from a preserved
    source are kept regardless and lifted to `preserved_floor`.

    If nothing would survive, the cut is bypassed and the outcome degraded.
    """
    if not scored:
        return StageOutcome.ok([], rejected=0, preserved=0)

    keep_sources = {s.lower() for s in preserved_sources}
    kept: List[ScoredCandidate] = []
    preserved = 0
    for sc in scored:
        q = sc.quality_score or 0.0
        if q >= min_score:
            kept.append(sc)
        elif (sc.candidate.source or "").lower() in keep_sources:
            lifted = max(q, preserved_floor)
            comps = dict(sc.quality_components or {})
            comps["total"] = lifted
            comps["source_floor"] = preserved_floor
            kept.append(replace(sc, quality_score=lifted, quality_components=comps))
            preserved += 1

    rejected = len(scored) - len(kept)
    if not kept:
        logger.warning(
            "Quality filter bypassed: all {} candidates under {:.0f}/100", len(scored), min_score
        )
        return StageOutcome.degrade(
            list(scored),
            RecoverableStageFailure(STAGE, f"every candidate scored under {min_score:g}; quality cut bypassed"),
            rejected=0,
            preserved=0,
        )

    logger.info(
        "Quality filter (>= {:.0f}/100): {} -> {} ({} preserved by source)",
        min_score, len(scored), len(kept), preserved,
    )
    return StageOutcome.ok(kept, rejected=rejected, preserved=preserved)
