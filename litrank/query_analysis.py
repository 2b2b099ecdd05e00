from __future__ import annotations

import re
from typing import Optional

from loguru import logger

from . import config
from .domain_filter import DomainAspectFilter
from .normalize import normalize_query, query_terms
from .pipeline_types import QueryContext

_COMPREHENSIVE_CUES = re.compile(r"\b(review|survey|overview|comprehensive|systematic|meta-analysis)\b")


def _complexity(raw: str, n_terms: int) -> str:
    if _COMPREHENSIVE_CUES.search(raw.lower()):
        return "comprehensive"
    if n_terms <= 2:
        return "broad"
    return "specific"


def analyze_query(
    raw: str,
    domain_filter: Optional[DomainAspectFilter] = None,
    min_term_length: int = config.MIN_TERM_LENGTH,
) -> QueryContext:
    """Normalise the query once and derive everything later stages need from it."""
    raw = raw or ""
    normalized = normalize_query(raw)
    terms = tuple(query_terms(raw, min_length=min_term_length))

    dfilter = domain_filter or DomainAspectFilter()
    ctx = QueryContext(
        raw=raw,
        normalized=normalized,
        terms=terms,
        domains=dfilter.query_domains(normalized),
        aspects=dfilter.parse_query_aspects(normalized),
        complexity=_complexity(raw, len(terms)),
    )
    logger.debug(
        "Query analysed: terms={} domains={} complexity={}",
        list(ctx.terms), sorted(ctx.domains), ctx.complexity,
    )
    return ctx
