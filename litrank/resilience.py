"""
Circuit breaking, rate limiting and bounded retry around external calls.

Every dependency (the inference model, each provider) gets its own breaker
and token bucket, keyed by name and created lazily on first use. State
changes happen under a lock; the wrapped call itself never runs under one.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TypeVar

from loguru import logger
from tenacity import (
    RetryError,
    Retrying,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import ResilienceSettings
from .errors import DependencyUnavailable, ExhaustedRetries, RequestCancelled

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitStatus:
    key: str
    state: CircuitState
    failure_count: int
    success_count: int
    next_retry_time: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "next_retry_time": self.next_retry_time,
        }


class CircuitOpen(DependencyUnavailable):
    def __init__(self, key: str, retry_in: float) -> None:
        super().__init__(key, f"circuit open, retry in {retry_in:.1f}s")
        self.retry_in = retry_in


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------

class CircuitBreaker:
    def __init__(
        self,
        key: str,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        open_timeout: float = 60.0,
        failure_window: float = 60.0,
        half_open_max_calls: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.key = key
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.open_timeout = open_timeout
        self.failure_window = failure_window
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock
        self._lock = threading.Lock()

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.next_retry_time: Optional[float] = None
        self._window_start: Optional[float] = None
        self._half_open_in_flight = 0

    def _trip(self, now: float) -> None:
        self.state = CircuitState.OPEN
        self.next_retry_time = now + self.open_timeout
        self.success_count = 0
        self._half_open_in_flight = 0
        logger.error(
            "Circuit '{}' OPEN after {} failures; retry at +{:.0f}s",
            self.key, self.failure_count, self.open_timeout,
        )

    def before_call(self) -> None:
        """Admit a call or raise CircuitOpen without touching the dependency."""
        with self._lock:
            now = self._clock()
            if self.state is CircuitState.OPEN:
                if self.next_retry_time is not None and now < self.next_retry_time:
                    raise CircuitOpen(self.key, self.next_retry_time - now)
                self.state = CircuitState.HALF_OPEN
                self.success_count = 0
                self._half_open_in_flight = 0
                logger.info("Circuit '{}' HALF_OPEN; allowing trial calls", self.key)

            if self.state is CircuitState.HALF_OPEN:
                if self._half_open_in_flight >= self.half_open_max_calls:
                    raise CircuitOpen(self.key, 0.0)
                self._half_open_in_flight += 1

    def record_success(self) -> None:
        with self._lock:
            if self.state is CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self.state = CircuitState.CLOSED
                    self.failure_count = 0
                    self.success_count = 0
                    self.next_retry_time = None
                    self._window_start = None
                    logger.info("Circuit '{}' CLOSED", self.key)
            elif self.state is CircuitState.CLOSED:
                self.failure_count = 0
                self._window_start = None

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            if self.state is CircuitState.HALF_OPEN:
                self.failure_count += 1
                self._trip(now)
            elif self.state is CircuitState.CLOSED:
                if self._window_start is None or now - self._window_start > self.failure_window:
                    self._window_start = now
                    self.failure_count = 0
                self.failure_count += 1
                if self.failure_count >= self.failure_threshold:
                    self._trip(now)

    def release(self) -> None:
        """Give back a half-open slot for a call that never reached the dependency."""
        with self._lock:
            if self.state is CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)

    def status(self) -> CircuitStatus:
        with self._lock:
            return CircuitStatus(
                key=self.key,
                state=self.state,
                failure_count=self.failure_count,
                success_count=self.success_count,
                next_retry_time=self.next_retry_time,
            )


# ---------------------------------------------------------------------------
# Token bucket
# ---------------------------------------------------------------------------

class TokenBucket:
    def __init__(
        self,
        key: str,
        capacity: int,
        refill_per_s: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.key = key
        self.capacity = float(capacity)
        self.refill_per_s = float(refill_per_s)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._tokens = float(capacity)
        self._updated = clock()

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_per_s)
        self._updated = now

    def acquire(self, max_wait: float) -> float:
        """
        Take one token, sleeping (outside the lock) until it is available.
        Returns the time waited; raises DependencyUnavailable if the wait
        would exceed max_wait.
        """
        with self._lock:
            self._refill(self._clock())
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return 0.0
            wait = (1.0 - self._tokens) / self.refill_per_s
            if wait > max_wait:
                raise DependencyUnavailable(
                    self.key, f"rate limited; wait {wait:.2f}s exceeds {max_wait:.2f}s"
                )
            # reserve the token now so concurrent callers queue behind us
            self._tokens -= 1.0
        logger.debug("Rate limiter '{}' waiting {:.2f}s", self.key, wait)
        self._sleep(wait)
        return wait

    @property
    def tokens(self) -> float:
        with self._lock:
            self._refill(self._clock())
            return self._tokens


# ---------------------------------------------------------------------------
# Layer
# ---------------------------------------------------------------------------

class ResilienceLayer:
    """Registry of per-key breakers and buckets, plus the guarded call path."""

    def __init__(
        self,
        settings: Optional[ResilienceSettings] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or ResilienceSettings()
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._buckets: Dict[str, TokenBucket] = {}

    def breaker(self, key: str) -> CircuitBreaker:
        with self._lock:
            cb = self._breakers.get(key)
            if cb is None:
                s = self.settings
                cb = CircuitBreaker(
                    key,
                    failure_threshold=s.failure_threshold,
                    success_threshold=s.success_threshold,
                    open_timeout=s.open_timeout_s,
                    failure_window=s.failure_window_s,
                    half_open_max_calls=s.half_open_max_calls,
                    clock=self._clock,
                )
                self._breakers[key] = cb
            return cb

    def bucket(self, key: str) -> TokenBucket:
        with self._lock:
            tb = self._buckets.get(key)
            if tb is None:
                tb = TokenBucket(
                    key,
                    capacity=self.settings.rate_capacity,
                    refill_per_s=self.settings.rate_refill_per_s,
                    clock=self._clock,
                    sleep=self._sleep,
                )
                self._buckets[key] = tb
            return tb

    def _attempt(self, key: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        cb = self.breaker(key)
        cb.before_call()
        try:
            self.bucket(key).acquire(self.settings.rate_max_wait_s)
        except DependencyUnavailable:
            cb.release()
            raise

        try:
            result = fn(*args, **kwargs)
        except RequestCancelled:
            cb.release()
            raise
        except Exception as e:
            cb.record_failure()
            logger.warning("Call to '{}' failed: {}", key, e)
            raise
        cb.record_success()
        return result

    def call(self, key: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Run fn through the breaker, the rate limiter and bounded retries.

        Open circuits, rate-limit rejections and cancellation are never
        retried. Running out of attempts raises ExhaustedRetries.
        """
        s = self.settings
        retrying = Retrying(
            stop=stop_after_attempt(s.max_attempts),
            wait=wait_exponential(multiplier=s.backoff_min_s, min=s.backoff_min_s, max=s.backoff_max_s),
            retry=retry_if_not_exception_type((DependencyUnavailable, RequestCancelled)),
            sleep=self._sleep,
        )
        try:
            return retrying(self._attempt, key, fn, *args, **kwargs)
        except RetryError as e:
            attempt = e.last_attempt
            cause = attempt.exception()
            raise ExhaustedRetries(
                key, f"gave up after {attempt.attempt_number} attempts: {cause}", attempt.attempt_number
            ) from cause

    def get_circuit_status(self, key: str) -> CircuitStatus:
        """Status for `key`; keys that were never called report CLOSED and are not registered."""
        with self._lock:
            cb = self._breakers.get(key)
        if cb is None:
            return CircuitStatus(
                key=key,
                state=CircuitState.CLOSED,
                failure_count=0,
                success_count=0,
                next_retry_time=None,
            )
        return cb.status()

    def circuit_statuses(self) -> List[CircuitStatus]:
        with self._lock:
            breakers = list(self._breakers.values())
        return [cb.status() for cb in breakers]
