import pytest

from litrank.config import ResilienceSettings
from litrank.errors import DependencyUnavailable, ExhaustedRetries, RequestCancelled
from litrank.resilience import (
    CircuitBreaker,
    CircuitOpen,
    CircuitState,
    ResilienceLayer,
    TokenBucket,
)


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class FlakyDependency:
    """Fails while `failing` is set; counts every invocation."""

    def __init__(self, failing=True):
        self.failing = failing
        self.calls = 0

    def __call__(self, value="ok"):
        self.calls += 1
        if self.failing:
            raise RuntimeError("boom")
        return value


def _layer(clock, **overrides):
    settings = ResilienceSettings(max_attempts=1, **overrides)
    return ResilienceLayer(settings, clock=clock, sleep=lambda s: None)


def test_circuit_walks_closed_open_half_open_closed():
    clock = FakeClock()
    layer = _layer(clock)
    dep = FlakyDependency(failing=True)

    for _ in range(5):
        with pytest.raises(ExhaustedRetries):
            layer.call("dep", dep)
    status = layer.get_circuit_status("dep")
    assert status.state is CircuitState.OPEN
    assert status.next_retry_time == 60.0

    # open: fail fast without touching the dependency
    with pytest.raises(CircuitOpen):
        layer.call("dep", dep)
    assert dep.calls == 5

    clock.now = 60.0
    dep.failing = False
    assert layer.call("dep", dep) == "ok"
    assert layer.get_circuit_status("dep").state is CircuitState.HALF_OPEN

    assert layer.call("dep", dep) == "ok"
    status = layer.get_circuit_status("dep")
    assert status.state is CircuitState.CLOSED
    assert status.failure_count == 0
    assert status.success_count == 0


def test_any_failure_in_half_open_reopens_the_circuit():
    clock = FakeClock()
    layer = _layer(clock)
    dep = FlakyDependency(failing=True)
    for _ in range(5):
        with pytest.raises(ExhaustedRetries):
            layer.call("dep", dep)

    clock.now = 61.0
    dep.failing = False
    layer.call("dep", dep)  # one success, still half-open
    dep.failing = True
    with pytest.raises(ExhaustedRetries):
        layer.call("dep", dep)

    status = layer.get_circuit_status("dep")
    assert status.state is CircuitState.OPEN
    assert status.next_retry_time == 61.0 + 60.0


def test_failures_outside_the_window_do_not_accumulate():
    clock = FakeClock()
    breaker = CircuitBreaker("dep", failure_threshold=3, failure_window=10.0, clock=clock)
    for t in (0.0, 5.0, 20.0, 25.0):
        clock.now = t
        breaker.before_call()
        breaker.record_failure()
    assert breaker.status().state is CircuitState.CLOSED


def test_success_while_closed_resets_failure_count():
    breaker = CircuitBreaker("dep", failure_threshold=3, clock=FakeClock())
    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()
    assert breaker.status().state is CircuitState.CLOSED
    assert breaker.status().failure_count == 1


def test_half_open_admits_one_trial_at_a_time():
    clock = FakeClock()
    breaker = CircuitBreaker("dep", failure_threshold=1, open_timeout=5.0, clock=clock)
    breaker.before_call()
    breaker.record_failure()
    clock.now = 5.0
    breaker.before_call()  # trial admitted
    with pytest.raises(CircuitOpen):
        breaker.before_call()
    breaker.record_success()
    breaker.before_call()  # slot is free again


def test_keys_are_isolated():
    clock = FakeClock()
    layer = _layer(clock)
    bad = FlakyDependency(failing=True)
    good = FlakyDependency(failing=False)
    for _ in range(5):
        with pytest.raises(ExhaustedRetries):
            layer.call("provider:a", bad)
    assert layer.get_circuit_status("provider:a").state is CircuitState.OPEN
    assert layer.call("provider:b", good, "fine") == "fine"
    assert layer.call("neural-inference", good) == "ok"
    assert layer.get_circuit_status("provider:b").state is CircuitState.CLOSED


def test_retries_are_bounded_and_recover_transient_errors():
    sleeps = []
    layer = ResilienceLayer(ResilienceSettings(max_attempts=3), clock=FakeClock(), sleep=sleeps.append)

    attempts = {"n": 0}

    def transient():
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise ConnectionError("flaky")
        return 42

    assert layer.call("dep", transient) == 42
    assert attempts["n"] == 3
    assert len(sleeps) == 2
    assert sleeps[1] >= sleeps[0]


def test_exhausted_retries_is_a_dependency_unavailable():
    layer = ResilienceLayer(ResilienceSettings(max_attempts=3), clock=FakeClock(), sleep=lambda s: None)
    dep = FlakyDependency(failing=True)
    with pytest.raises(DependencyUnavailable) as info:
        layer.call("dep", dep)
    assert isinstance(info.value, ExhaustedRetries)
    assert info.value.attempts == 3
    assert dep.calls == 3


def test_open_circuit_is_never_retried():
    layer = ResilienceLayer(
        ResilienceSettings(max_attempts=3, failure_threshold=2), clock=FakeClock(), sleep=lambda s: None
    )
    dep = FlakyDependency(failing=True)
    # attempt 1 and 2 fail and trip the breaker, attempt 3 hits the open circuit
    with pytest.raises(CircuitOpen):
        layer.call("dep", dep)
    assert dep.calls == 2
    with pytest.raises(CircuitOpen):
        layer.call("dep", dep)
    assert dep.calls == 2


def test_cancellation_is_not_retried_or_counted():
    layer = ResilienceLayer(ResilienceSettings(max_attempts=3), clock=FakeClock(), sleep=lambda s: None)
    calls = {"n": 0}

    def cancelled():
        calls["n"] += 1
        raise RequestCancelled("stop")

    with pytest.raises(RequestCancelled):
        layer.call("dep", cancelled)
    assert calls["n"] == 1
    assert layer.get_circuit_status("dep").failure_count == 0


def test_token_bucket_sleeps_outside_when_empty():
    clock = FakeClock()
    sleeps = []
    bucket = TokenBucket("dep", capacity=2, refill_per_s=1.0, clock=clock, sleep=sleeps.append)
    assert bucket.acquire(max_wait=5.0) == 0.0
    assert bucket.acquire(max_wait=5.0) == 0.0
    waited = bucket.acquire(max_wait=5.0)
    assert waited == pytest.approx(1.0)
    assert sleeps == [pytest.approx(1.0)]


def test_token_bucket_rejects_waits_over_budget():
    bucket = TokenBucket("dep", capacity=1, refill_per_s=0.1, clock=FakeClock(), sleep=lambda s: None)
    bucket.acquire(max_wait=0.0)
    with pytest.raises(DependencyUnavailable):
        bucket.acquire(max_wait=1.0)


def test_rate_limit_rejection_releases_half_open_slot():
    clock = FakeClock()
    layer = ResilienceLayer(
        ResilienceSettings(
            max_attempts=1, failure_threshold=1, open_timeout_s=1.0,
            rate_capacity=1, rate_refill_per_s=0.01, rate_max_wait_s=0.0,
        ),
        clock=clock,
        sleep=lambda s: None,
    )
    dep = FlakyDependency(failing=True)
    with pytest.raises(ExhaustedRetries):
        layer.call("dep", dep)  # uses the only token, trips the breaker
    clock.now = 1.0
    with pytest.raises(DependencyUnavailable):
        layer.call("dep", dep)  # half-open trial admitted, then rate limited
    assert dep.calls == 1
    breaker = layer.breaker("dep")
    breaker.before_call()  # the trial slot was given back


def test_circuit_statuses_lists_created_keys():
    layer = _layer(FakeClock())
    layer.call("a", FlakyDependency(failing=False))
    layer.call("b", FlakyDependency(failing=False))
    keys = sorted(s.key for s in layer.circuit_statuses())
    assert keys == ["a", "b"]


def test_status_lookup_for_unknown_keys_does_not_register_breakers():
    layer = _layer(FakeClock())
    layer.call("known", FlakyDependency(failing=False))
    for i in range(1000):
        status = layer.get_circuit_status(f"unknown-{i}")
        assert status.state is CircuitState.CLOSED
        assert status.failure_count == 0
        assert status.next_retry_time is None
    assert [s.key for s in layer.circuit_statuses()] == ["known"]
