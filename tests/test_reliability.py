"""
Tests for reliability — circuit breaker + retry policy.
"""

import time

import pytest

from converge.core.errors import ProviderError, ProviderOperationFailed, ResourceNotFound
from converge.core.reliability.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)
from converge.core.reliability.retry import RetryPolicy

# ── Circuit Breaker State Machine ────────────────────────────────────


class TestCircuitBreaker:
    def test_initial_state_closed(self):
        cb = CircuitBreaker(name="test")
        assert cb.state == CircuitState.CLOSED
        assert cb.allow_request()

    def test_transitions_to_open_after_threshold(self):
        cb = CircuitBreaker(name="test", failure_threshold=3)
        cb.record_failure()
        cb.record_failure()
        assert cb.state == CircuitState.CLOSED
        cb.record_failure()  # 3rd failure
        assert cb.state == CircuitState.OPEN

    def test_open_rejects_requests(self):
        cb = CircuitBreaker(name="test", failure_threshold=1)
        cb.record_failure()
        assert not cb.allow_request()
        assert cb.total_rejections == 1

    def test_success_resets_count(self):
        cb = CircuitBreaker(name="test", failure_threshold=2)
        cb.record_failure()
        cb.record_success()
        cb.record_failure()
        assert cb.state == CircuitState.CLOSED

    def test_half_open_probe(self):
        cb = CircuitBreaker(name="test", failure_threshold=1, recovery_timeout=0.01)
        cb.record_failure()
        time.sleep(0.02)
        assert cb.allow_request()  # → HALF_OPEN
        assert cb.state == CircuitState.HALF_OPEN

        cb.record_success()
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0

    def test_half_open_to_open_on_failure(self):
        cb = CircuitBreaker(name="test", failure_threshold=1, recovery_timeout=0.01)
        cb.record_failure()
        time.sleep(0.02)
        cb.allow_request()
        cb.record_failure()
        assert cb.state == CircuitState.OPEN

    def test_reset(self):
        cb = CircuitBreaker(name="test", failure_threshold=1)
        cb.record_failure()
        cb.allow_request()
        cb.reset()
        assert cb.state == CircuitState.CLOSED
        assert cb.total_rejections == 0

    def test_to_dict(self):
        data = CircuitBreaker(name="compute").to_dict()
        assert data["name"] == "compute"
        assert data["state"] == "closed"


class TestCircuitBreakerRegistry:
    def test_get_or_create_reuses(self):
        registry = CircuitBreakerRegistry(default_threshold=2, default_timeout=1.0)
        cb = registry.get_or_create("compute")
        assert registry.get_or_create("compute") is cb
        assert cb.failure_threshold == 2

    def test_status_and_reset_all(self):
        registry = CircuitBreakerRegistry(default_threshold=1)
        registry.get_or_create("a").record_failure()
        assert registry.get_status()["a"]["state"] == "open"
        registry.reset_all()
        assert registry.get_status()["a"]["state"] == "closed"


# ── Retry policy ─────────────────────────────────────────────────────


class _Flaky:
    def __init__(self, failures: int, error: Exception):
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class TestRetryPolicy:
    def _policy(self, delays: list[float], **kwargs) -> RetryPolicy:
        return RetryPolicy(sleep=delays.append, **kwargs)

    def test_succeeds_after_transient_failures(self):
        delays: list[float] = []
        fn = _Flaky(2, ProviderError("throttled", transient=True))
        assert self._policy(delays).run(fn, operation="create", address="a") == "ok"
        assert fn.calls == 3
        assert len(delays) == 2

    def test_non_transient_not_retried(self):
        delays: list[float] = []
        fn = _Flaky(1, ProviderError("invalid machine type"))
        with pytest.raises(ProviderOperationFailed) as exc:
            self._policy(delays).run(fn, operation="create", address="a")
        assert exc.value.attempts == 1
        assert fn.calls == 1
        assert delays == []

    def test_exhaustion(self):
        delays: list[float] = []
        fn = _Flaky(10, ProviderError("timeout", transient=True))
        with pytest.raises(ProviderOperationFailed) as exc:
            self._policy(delays, max_attempts=4).run(fn, operation="update", address="a")
        assert exc.value.attempts == 4
        assert exc.value.operation == "update"
        assert isinstance(exc.value.cause, ProviderError)

    def test_not_found_passes_through(self):
        fn = _Flaky(1, ResourceNotFound("gone"))
        with pytest.raises(ResourceNotFound):
            self._policy([]).run(fn, operation="read", address="a")

    def test_delay_backoff_bounded(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=4.0, jitter=0.0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 4.0]

    def test_jitter_within_bounds(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=8.0, jitter=0.3)
        for _ in range(50):
            assert 2.0 <= policy.delay_for(2) <= 2.6
