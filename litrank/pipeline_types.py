"""Typed containers shared across pipeline modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional, Tuple

from .normalize import normalize_title


@dataclass(frozen=True)
class Candidate:
    """One bibliographic record as delivered by a provider. Never mutated."""

    title: str
    abstract: Optional[str] = None
    id: Optional[str] = None
    doi: Optional[str] = None
    venue: Optional[str] = None
    year: Optional[int] = None
    citation_count: Optional[int] = None
    source: str = "unknown"
    url: Optional[str] = None
    venue_impact_factor: Optional[float] = None
    venue_h_index: Optional[float] = None

    @property
    def identity(self) -> str:
        if self.id:
            return f"id:{self.id}"
        if self.doi:
            return f"doi:{self.doi.strip().lower()}"
        return f"title:{normalize_title(self.title)}"

    @property
    def text(self) -> str:
        return f"{self.title or ''} {self.abstract or ''}".strip()


@dataclass(frozen=True)
class QueryAspects:
    requires_animals: bool = False
    requires_research: bool = False
    behavior_type: Optional[str] = None


@dataclass(frozen=True)
class QueryContext:
    raw: str
    normalized: str
    terms: Tuple[str, ...]
    domains: FrozenSet[str] = frozenset()
    aspects: QueryAspects = field(default_factory=QueryAspects)
    complexity: str = "specific"


@dataclass(frozen=True)
class CandidateAspects:
    subjects: Tuple[str, ...] = ()
    study_type: Optional[str] = None
    behaviors: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ScoredCandidate:
    """
    A candidate plus whatever the stages so far have attached to it.
    Stages return new copies via dataclasses.replace.
    """

    candidate: Candidate
    lexical_score: float = 0.0
    lexical_norm: float = 0.0
    neural_score: Optional[float] = None
    neural_explanation: Optional[str] = None
    domain: Optional[str] = None
    domain_confidence: Optional[float] = None
    domain_match: Optional[bool] = None
    aspects: Optional[CandidateAspects] = None
    quality_score: Optional[float] = None
    quality_components: Optional[Dict[str, float]] = None
    final_rank: Optional[float] = None

    @property
    def relevance(self) -> float:
        # lexical proxy stands in when no neural score was produced
        if self.neural_score is not None:
            return self.neural_score
        return self.lexical_norm


@dataclass(frozen=True)
class RankedResult:
    candidate: Candidate
    lexical_score: float
    neural_score: Optional[float]
    quality_score: float
    final_rank: float
    position: int
    domain: Optional[str] = None
    neural_explanation: Optional[str] = None

    def to_dict(self) -> Dict:
        c = self.candidate
        return {
            "position": self.position,
            "title": c.title,
            "identity": c.identity,
            "source": c.source,
            "url": c.url,
            "year": c.year,
            "venue": c.venue,
            "domain": self.domain,
            "lexical_score": round(self.lexical_score, 4),
            "neural_score": None if self.neural_score is None else round(self.neural_score, 4),
            "quality_score": round(self.quality_score, 2),
            "final_rank": round(self.final_rank, 2),
            "explanation": self.neural_explanation,
        }
