from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Protocol, Sequence

from loguru import logger

from .errors import DependencyUnavailable
from .pipeline_types import Candidate
from .resilience import ResilienceLayer


class Provider(Protocol):
    """Anything with a name and a fetch(query) returning candidates."""

    name: str

    def fetch(self, query: str) -> List[Candidate]:
        ...


@dataclass
class GatherResult:
    candidates: List[Candidate]
    per_provider: Dict[str, int] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    duplicates: int = 0


def provider_key(name: str) -> str:
    return f"provider:{name}"


class ProviderGateway:
    """
    Fan a query out to providers, each behind its own breaker / rate
    limiter, and merge what comes back by candidate identity.
    """

    def __init__(self, resilience: ResilienceLayer) -> None:
        self.resilience = resilience

    def gather(self, query: str, providers: Sequence[Provider]) -> GatherResult:
        merged: List[Candidate] = []
        seen = set()
        result = GatherResult(candidates=merged)

        for p in providers:
            try:
                fetched = self.resilience.call(provider_key(p.name), p.fetch, query)
            except DependencyUnavailable as e:
                result.failures[p.name] = str(e)
                logger.warning("Provider '{}' unavailable: {}", p.name, e)
                continue

            result.per_provider[p.name] = len(fetched)
            for c in fetched:
                ident = c.identity
                if ident in seen:
                    result.duplicates += 1
                    continue
                seen.add(ident)
                merged.append(c)

        logger.info(
            "Gathered {} candidates from {} providers ({} duplicates, {} failed)",
            len(merged), len(providers), result.duplicates, len(result.failures),
        )
        return result
