"""Stage error taxonomy and the tagged result stages hand back to the pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class PipelineError(Exception):
    """Root of everything this package raises on purpose."""


class StageError(PipelineError):
    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"[{stage}] {message}")
        self.stage = stage
        self.message = message


class RecoverableStageFailure(StageError):
    """The stage could not do its job and fell back to a pass-through."""


class DependencyUnavailable(StageError):
    """A dependency is down, rate limited past the wait budget, or its circuit is open."""


class ExhaustedRetries(DependencyUnavailable):
    def __init__(self, stage: str, message: str, attempts: int) -> None:
        super().__init__(stage, message)
        self.attempts = attempts


class ValidationFailure(StageError):
    """Input is unusable (blank query, no candidates)."""


class RequestCancelled(PipelineError):
    """Raised when the caller cancels a run; never degraded, always propagated."""


@dataclass(frozen=True)
class StageOutcome(Generic[T]):
    value: T
    error: Optional[StageError] = None
    counters: Dict[str, float] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return self.error is not None

    @classmethod
    def ok(cls, value: T, **counters: float) -> "StageOutcome[T]":
        return cls(value=value, counters=dict(counters))

    @classmethod
    def degrade(cls, value: T, error: StageError, **counters: float) -> "StageOutcome[T]":
        return cls(value=value, error=error, counters=dict(counters))
