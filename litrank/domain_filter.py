"""
Rule-based topical domain and aspect classification.

Patterns are compiled once per DomainAspectFilter; candidate text is
lower-cased once and the same string is fed to every pattern.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import FrozenSet, Iterable, List, Optional, Pattern, Sequence, Set, Tuple

from loguru import logger

from .errors import RecoverableStageFailure, StageOutcome
from .pipeline_types import CandidateAspects, QueryAspects, QueryContext, ScoredCandidate

GENERAL = "General"
STAGE = "domain_filter"


# ---------------------------
# Rule tables (order matters: ties go to the earlier rule)
# ---------------------------

DOMAIN_KEYWORDS: List[Tuple[str, Sequence[str]]] = [
    ("Tourism", ["tourism", "tourist", "tourists", "travel", "vacation", "hospitality", "visitor", "visitors"]),
    ("Computer Science", [
        "machine learning", "deep learning", "neural network", "neural networks", "algorithm",
        "algorithms", "software", "computer", "computing", "artificial intelligence",
        "natural language processing", "reinforcement learning", "large language model",
        "large language models", "transformer", "dataset", "classification", "database",
    ]),
    ("Medicine", [
        "patient", "patients", "clinical", "disease", "diseases", "treatment", "therapy",
        "diagnosis", "cancer", "hospital", "medical", "surgery", "drug", "trial",
    ]),
    ("Neuroscience", [
        "neuron", "neurons", "neural circuit", "brain", "cortex", "cortical", "synaptic",
        "hippocampus", "neuroscience", "neurotransmitter",
    ]),
    ("Biology", [
        "species", "animal", "animals", "organism", "organisms", "ecology", "evolution",
        "genetics", "gene", "genes", "protein", "cell", "cells", "genome",
    ]),
    ("Environmental Science", [
        "climate", "environmental", "pollution", "emissions", "biodiversity", "ecosystem",
        "ecosystems", "sustainability", "carbon",
    ]),
    ("Physics", ["quantum", "particle", "particles", "relativity", "photon", "optics", "thermodynamics"]),
    ("Chemistry", ["chemical", "molecule", "molecules", "molecular", "catalyst", "synthesis", "reaction"]),
    ("Economics", ["economic", "economics", "market", "markets", "finance", "financial", "inflation", "gdp"]),
    ("Education", ["education", "educational", "student", "students", "teaching", "classroom", "curriculum"]),
    ("Social Science", [
        "social", "society", "survey respondents", "participants", "community", "policy",
        "sociology", "psychology", "children",
    ]),
]

SUBJECT_PATTERNS: List[Tuple[str, str]] = [
    ("Animals", r"\b(animal|animals|species|organism|organisms|fauna|wildlife|creature|creatures)\b"),
    ("Primates", r"\b(primate|primates|monkey|monkeys|ape|apes|chimpanzee|chimpanzees|gorilla|orangutan)\b"),
    ("Humans", r"\b(human|humans|child|children|patient|patients|participant|participants|people)\b"),
]

# first match wins; nothing matching means empirical research
STUDY_TYPE_PATTERNS: List[Tuple[str, str]] = [
    ("Tourism", r"\b(tourism|tourist|tourists|travel|vacation|hospitality|visitor|visitors)\b"),
    ("Review", r"\b(review|survey|meta-analysis|systematic review)\b"),
    ("Application", r"\b(application|applications|implement|implementation|deploy|deployment|practical|intervention)\b"),
]
DEFAULT_STUDY_TYPE = "Empirical Research"

BEHAVIOR_PATTERNS: List[Tuple[str, str]] = [
    ("Social", r"\b(social|interaction|interactions|group|hierarchy|cooperation|communication)\b"),
    ("Cognitive", r"\b(cognitive|cognition|learning|memory|intelligence|problem solving)\b"),
    ("Instinctual", r"\b(aggression|mating|feeding|foraging|territorial)\b"),
]

_BEHAVIOR_CUE = re.compile(r"\bbehaviou?rs?\b|\bbehaviou?ral\b")
_RESEARCH_EXEMPT = re.compile(r"\b(tourism|tourist|travel|vacation|hospitality)\b")


@dataclass(frozen=True)
class DomainTags:
    primary: str
    confidence: float
    tags: Tuple[str, ...]


def _keyword_pattern(words: Iterable[str]) -> Pattern[str]:
    # longest alternatives first so "neural networks" beats "neural network"
    alts = sorted({re.escape(w) for w in words}, key=len, reverse=True)
    return re.compile(r"\b(?:" + "|".join(alts) + r")\b")


class DomainAspectFilter:
    """
    Classify candidates into topical domains / aspects and drop the ones that
    do not fit the query.
    """

    def __init__(self, domain_keywords: Optional[List[Tuple[str, Sequence[str]]]] = None) -> None:
        rules = domain_keywords if domain_keywords is not None else DOMAIN_KEYWORDS
        self._domain_rules: List[Tuple[str, Pattern[str]]] = [
            (name, _keyword_pattern(words)) for name, words in rules
        ]
        self._subjects = [(name, re.compile(p)) for name, p in SUBJECT_PATTERNS]
        self._study_types = [(name, re.compile(p)) for name, p in STUDY_TYPE_PATTERNS]
        self._behaviors = [(name, re.compile(p)) for name, p in BEHAVIOR_PATTERNS]

    @property
    def domains(self) -> List[str]:
        return [name for name, _ in self._domain_rules] + [GENERAL]

    # ---------------------------
    # Classification
    # ---------------------------

    def classify_normalized(self, lowered: str) -> DomainTags:
        hits: List[Tuple[int, int, str]] = []
        for order, (name, pattern) in enumerate(self._domain_rules):
            n = len(pattern.findall(lowered))
            if n:
                hits.append((-n, order, name))
        if not hits:
            return DomainTags(primary=GENERAL, confidence=0.5, tags=(GENERAL,))
        hits.sort()
        top = -hits[0][0]
        confidence = min(0.95, 0.55 + 0.1 * top)
        return DomainTags(primary=hits[0][2], confidence=confidence, tags=tuple(h[2] for h in hits))

    def classify(self, text: str) -> DomainTags:
        return self.classify_normalized((text or "").lower())

    def extract_aspects_normalized(self, lowered: str) -> CandidateAspects:
        subjects = tuple(name for name, p in self._subjects if p.search(lowered))
        study_type = DEFAULT_STUDY_TYPE
        for name, p in self._study_types:
            if p.search(lowered):
                study_type = name
                break
        behaviors = tuple(name for name, p in self._behaviors if p.search(lowered))
        return CandidateAspects(subjects=subjects, study_type=study_type, behaviors=behaviors)

    # ---------------------------
    # Query side
    # ---------------------------

    def query_domains(self, query_text: str) -> FrozenSet[str]:
        tags = self.classify(query_text)
        return frozenset(t for t in tags.tags if t != GENERAL)

    def parse_query_aspects(self, query_text: str) -> QueryAspects:
        lowered = (query_text or "").lower()
        requires_animals = self._subjects[0][1].search(lowered) is not None

        # behaviour only constrains when the query is actually about behaviour
        behavior_type = None
        if _BEHAVIOR_CUE.search(lowered):
            for name, p in self._behaviors:
                if p.search(lowered):
                    behavior_type = name
                    break

        return QueryAspects(
            requires_animals=requires_animals,
            requires_research=_RESEARCH_EXEMPT.search(lowered) is None,
            behavior_type=behavior_type,
        )

    # ---------------------------
    # Filtering
    # ---------------------------

    @staticmethod
    def _aspects_ok(aspects: CandidateAspects, wanted: QueryAspects) -> bool:
        if wanted.requires_animals and "Animals" not in aspects.subjects:
            return False
        if wanted.requires_research and aspects.study_type == "Tourism":
            return False
        if wanted.behavior_type and wanted.behavior_type not in aspects.behaviors:
            return False
        return True

    def filter(
        self,
        query: QueryContext,
        candidates: List[ScoredCandidate],
        allowed_domains: Optional[Iterable[str]] = None,
    ) -> StageOutcome[List[ScoredCandidate]]:
        """
        Annotate every candidate with its domain / aspects and keep those that
        match. With no explicit allowed set, the query's inferred domains plus
        General are allowed, and any tag of the candidate may match; with
        neither, the domain check is open and only aspects are enforced.
        If nothing would survive, the cut is skipped and the outcome degraded.
        """
        explicit = allowed_domains is not None
        allowed: Optional[Set[str]]
        if explicit:
            allowed = set(allowed_domains)
        elif query.domains:
            allowed = set(query.domains) | {GENERAL}
        else:
            allowed = None

        annotated: List[ScoredCandidate] = []
        kept: List[ScoredCandidate] = []
        rejected_domain = 0
        rejected_aspect = 0

        for sc in candidates:
            lowered = sc.candidate.text.lower()
            tags = self.classify_normalized(lowered)
            aspects = self.extract_aspects_normalized(lowered)

            if allowed is None:
                domain_ok = True
            elif explicit:
                domain_ok = tags.primary in allowed
            else:
                domain_ok = bool(allowed.intersection(tags.tags))

            aspect_ok = self._aspects_ok(aspects, query.aspects)
            item = replace(
                sc,
                domain=tags.primary,
                domain_confidence=tags.confidence,
                domain_match=domain_ok and aspect_ok,
                aspects=aspects,
            )
            annotated.append(item)
            if not domain_ok:
                rejected_domain += 1
            elif not aspect_ok:
                rejected_aspect += 1
            else:
                kept.append(item)

        logger.info(
            "Domain filter: {} -> {} (domain rejects={}, aspect rejects={})",
            len(candidates), len(kept), rejected_domain, rejected_aspect,
        )

        if candidates and not kept:
            logger.warning("Domain filter rejected every candidate; passing all {} through", len(candidates))
            return StageOutcome.degrade(
                annotated,
                RecoverableStageFailure(STAGE, "filter rejected all candidates; bypassed"),
            )
        return StageOutcome.ok(kept)
