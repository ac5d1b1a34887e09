"""Tests for retry, circuit breaker and the error handler."""

import pytest

from recall.errors import (
    CircuitOpenError,
    PersistenceError,
    RemoteBackendError,
    ValidationError,
)
from recall.resilience import (
    BreakerState,
    CircuitBreaker,
    ErrorHandler,
    RetryOptions,
    backoff_delay,
    retry,
    retrying,
)

from conftest import FakeClock, no_sleep


class Flaky:
    """Callable failing a fixed number of times before succeeding."""

    def __init__(self, failures: int, error=None, result="ok"):
        self.failures = failures
        self.error = error or RemoteBackendError.connection_failed("http://x")
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


def _opts(**kwargs):
    kwargs.setdefault("sleep", no_sleep)
    kwargs.setdefault("log_retries", False)
    return RetryOptions(**kwargs)


class TestBackoff:

    def test_exponential_without_jitter(self):
        opts = RetryOptions(initial_delay=1.0, multiplier=2.0, jitter=0.0)
        assert [backoff_delay(a, opts) for a in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        opts = RetryOptions(initial_delay=1.0, multiplier=2.0, max_delay=30.0, jitter=0.0)
        assert backoff_delay(10, opts) == 30.0

    def test_jitter_bounds(self):
        opts = RetryOptions(initial_delay=1.0, jitter=0.1)
        assert backoff_delay(0, opts, rng=lambda: 0.0) == pytest.approx(0.9)
        assert backoff_delay(0, opts, rng=lambda: 0.5) == pytest.approx(1.0)
        assert backoff_delay(0, opts, rng=lambda: 1.0) == pytest.approx(1.1)


class TestRetry:

    def test_succeeds_after_transient_failures(self):
        fn = Flaky(2)
        assert retry(fn, _opts(max_attempts=3)) == "ok"
        assert fn.calls == 3

    def test_final_error_propagates_unchanged(self):
        error = RemoteBackendError.connection_failed("http://x")
        fn = Flaky(10, error=error)
        with pytest.raises(RemoteBackendError) as exc_info:
            retry(fn, _opts(max_attempts=3))
        assert exc_info.value is error
        assert fn.calls == 3

    def test_non_retryable_is_not_retried(self):
        fn = Flaky(10, error=ValidationError.invalid_input("x", 1, "bad"))
        with pytest.raises(ValidationError):
            retry(fn, _opts(max_attempts=5))
        assert fn.calls == 1

    def test_foreign_exceptions_not_retried_by_default(self):
        fn = Flaky(10, error=KeyError("k"))
        with pytest.raises(KeyError):
            retry(fn, _opts(max_attempts=5))
        assert fn.calls == 1

    def test_custom_predicate(self):
        fn = Flaky(2, error=KeyError("k"))
        assert retry(fn, _opts(max_attempts=3, is_retryable=lambda e: True)) == "ok"

    def test_sleeps_and_reports_each_retry(self):
        slept = []
        seen = []
        fn = Flaky(2)
        opts = RetryOptions(
            max_attempts=3, initial_delay=0.5, jitter=0.0, log_retries=False,
            sleep=slept.append, on_retry=lambda attempt, e, delay: seen.append((attempt, delay)),
        )
        retry(fn, opts)
        assert slept == [0.5, 1.0]
        assert seen == [(1, 0.5), (2, 1.0)]

    def test_decorator(self):
        fn = Flaky(1)

        @retrying(_opts(max_attempts=2))
        def wrapped():
            return fn()

        assert wrapped() == "ok"
        assert fn.calls == 2


class TestCircuitBreaker:

    def _failing(self, breaker, n):
        for _ in range(n):
            with pytest.raises(RemoteBackendError):
                breaker.execute(Flaky(1))

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker("test", failure_threshold=3, clock=FakeClock())
        self._failing(breaker, 2)
        assert breaker.state.state is BreakerState.CLOSED
        self._failing(breaker, 1)
        assert breaker.state.is_open

    def test_fails_fast_while_open(self):
        clock = FakeClock()
        breaker = CircuitBreaker("test", failure_threshold=1, cooldown_period=60, clock=clock)
        self._failing(breaker, 1)

        fn = Flaky(0)
        clock.advance(30)
        assert breaker.allows_request() is False
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.execute(fn)
        assert fn.calls == 0
        assert exc_info.value.context["breaker"] == "test"
        assert exc_info.value.context["cooldown_remaining"] == pytest.approx(30)

    def test_success_resets_failure_count(self):
        breaker = CircuitBreaker("test", failure_threshold=3, clock=FakeClock())
        self._failing(breaker, 2)
        breaker.execute(lambda: None)
        self._failing(breaker, 2)
        assert breaker.state.state is BreakerState.CLOSED

    def test_recovers_after_cooldown(self):
        clock = FakeClock()
        breaker = CircuitBreaker("test", failure_threshold=1, cooldown_period=60,
                                 recovery_attempts=2, clock=clock)
        self._failing(breaker, 1)
        clock.advance(61)

        assert breaker.allows_request() is True
        assert breaker.execute(lambda: "trial") == "trial"
        assert breaker.state.state is BreakerState.HALF_OPEN

        breaker.execute(lambda: None)
        assert breaker.state.state is BreakerState.CLOSED
        assert breaker.state.failure_count == 0

    def test_trial_failure_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker("test", failure_threshold=5, cooldown_period=10, clock=clock)
        self._failing(breaker, 5)
        clock.advance(11)

        self._failing(breaker, 1)
        assert breaker.state.is_open
        assert breaker.allows_request() is False

    def test_one_trial_call_at_a_time(self):
        clock = FakeClock()
        breaker = CircuitBreaker("test", failure_threshold=1, cooldown_period=10, clock=clock)
        self._failing(breaker, 1)
        clock.advance(11)

        inner_calls = []

        def trial_call():
            # A concurrent caller during the trial call is rejected
            with pytest.raises(CircuitOpenError):
                breaker.execute(lambda: inner_calls.append(1))
            return "done"

        assert breaker.execute(trial_call) == "done"
        assert inner_calls == []

    def test_manual_reset_and_trip(self):
        clock = FakeClock()
        breaker = CircuitBreaker("test", failure_threshold=1, clock=clock)
        breaker.trip()
        assert breaker.state.is_open
        breaker.reset()
        assert breaker.state.state is BreakerState.CLOSED
        assert breaker.allows_request()

    def test_snapshot(self):
        breaker = CircuitBreaker("remote", failure_threshold=1, clock=FakeClock())
        self._failing(breaker, 1)
        snap = breaker.snapshot()
        assert snap["name"] == "remote"
        assert snap["state"] == "open"
        assert snap["is_open"] is True
        assert snap["failure_count"] == 1


class TestErrorHandler:

    def test_handle_converts_and_counts(self):
        handler = ErrorHandler(log_errors=False)
        converted = handler.handle(OSError(5, "disk"))
        assert converted.code == "RESOURCE_ACCESS_ERROR"
        handler.handle(PersistenceError.save_failed("r1"))
        handler.handle(PersistenceError.save_failed("r2"))

        stats = handler.get_stats()
        assert stats["total_errors"] == 3
        assert stats["by_code"] == {"RESOURCE_ACCESS_ERROR": 1, "PERSISTENCE_ERROR": 2}
        assert {e["code"] for e in stats["recent_errors"]} == {"RESOURCE_ACCESS_ERROR", "PERSISTENCE_ERROR"}

    def test_on_error_callback(self):
        seen = []
        handler = ErrorHandler(log_errors=False, on_error=seen.append)
        handler.handle(ValueError("boom"))
        assert len(seen) == 1
        assert seen[0].message == "boom"

    def test_safe_execute_returns_fallback(self):
        handler = ErrorHandler(log_errors=False)
        assert handler.safe_execute(lambda: 1 / 0, "fallback") == "fallback"
        assert handler.safe_execute(lambda: "value", "fallback") == "value"
        assert handler.get_stats()["total_errors"] == 1

    def test_safe_execute_logs(self, caplog):
        handler = ErrorHandler()
        with caplog.at_level("ERROR", logger="recall.resilience"):
            handler.safe_execute(lambda: 1 / 0, None, {"operation": "divide"})
        assert "divide" in caplog.text

    def test_safe_execute_with_retry(self):
        handler = ErrorHandler(log_errors=False)
        fn = Flaky(1)
        assert handler.safe_execute_with_retry(fn, None, _opts(max_attempts=2)) == "ok"
        fn = Flaky(5)
        assert handler.safe_execute_with_retry(fn, "fb", _opts(max_attempts=2)) == "fb"
        assert fn.calls == 2

    def test_safe_execute_with_circuit_breaker(self):
        handler = ErrorHandler(log_errors=False)
        breaker = CircuitBreaker("cb", failure_threshold=1, clock=FakeClock())
        assert handler.safe_execute_with_circuit_breaker(Flaky(1), "fb", breaker) == "fb"
        fn = Flaky(0)
        assert handler.safe_execute_with_circuit_breaker(fn, "fb", breaker) == "fb"
        assert fn.calls == 0
        assert handler.get_stats()["by_code"]["CIRCUIT_OPEN"] == 1

    def test_reset_stats(self):
        handler = ErrorHandler(log_errors=False)
        handler.handle(ValueError("x"))
        handler.reset_stats()
        assert handler.get_stats() == {"total_errors": 0, "by_code": {}, "recent_errors": []}
