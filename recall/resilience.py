"""
Retry with exponential backoff, circuit breaker, and safe-execution wrappers.

retry() re-runs a callable on retryable failures, sleeping
min(initial_delay * multiplier^attempt, max_delay) seconds (with +/- jitter)
between attempts. CircuitBreaker fails fast after repeated failures and
tries one call after a cooldown. ErrorHandler converts exceptions through
the taxonomy, logs them, tracks per-code counts, and returns fallbacks.

There are no process-global instances: construct one breaker per protected
dependency and one handler per process, and pass them where needed.
"""

import enum
import functools
import logging
import random
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional, TypeVar

from .errors import CircuitOpenError, RecallError, is_retryable, to_recall_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

@dataclass
class RetryOptions:
    """Retry policy. Delays are in seconds."""
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.1
    log_retries: bool = True
    is_retryable: Callable[[BaseException], bool] = is_retryable
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)


def backoff_delay(attempt: int, options: RetryOptions, rng: Callable[[], float] = random.random) -> float:
    """Delay before the retry that follows failed attempt number ``attempt`` (zero-based)."""
    delay = min(options.initial_delay * (options.multiplier ** attempt), options.max_delay)
    spread = delay * options.jitter
    return max(0.0, delay + (rng() * spread * 2 - spread))


def retry(fn: Callable[[], T], options: Optional[RetryOptions] = None) -> T:
    """
    Call ``fn`` until it succeeds, retrying retryable failures.

    Non-retryable errors and the error from the final attempt propagate
    unchanged.
    """
    opts = options or RetryOptions()
    attempts = max(1, opts.max_attempts)

    for attempt in range(attempts):
        try:
            return fn()
        except Exception as e:
            if attempt >= attempts - 1 or not opts.is_retryable(e):
                raise
            delay = backoff_delay(attempt, opts)
            if opts.log_retries:
                logger.warning(
                    "Retry attempt %d/%d after %.0fms: %s",
                    attempt + 1, attempts, delay * 1000, e,
                )
            if opts.on_retry is not None:
                opts.on_retry(attempt + 1, e, delay)
            opts.sleep(delay)

    raise AssertionError("unreachable")


def retrying(options: Optional[RetryOptions] = None):
    """Decorator form of retry()."""
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            return retry(lambda: fn(*args, **kwargs), options)
        return wrapper
    return decorator


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------

class BreakerState(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitState:
    """Immutable snapshot of a breaker."""
    state: BreakerState = BreakerState.CLOSED
    failure_count: int = 0
    last_failure_time: float = 0.0
    success_count: int = 0

    @property
    def is_open(self) -> bool:
        return self.state is BreakerState.OPEN


class CircuitBreaker:
    """
    Fail-fast guard around an unreliable dependency.

    Transitions:
        CLOSED --failure_count >= threshold--> OPEN
        OPEN --cooldown elapsed, next call--> HALF_OPEN (one trial call at a time)
        HALF_OPEN --success x recovery_attempts--> CLOSED
        HALF_OPEN --failure--> OPEN
    """

    def __init__(
        self,
        name: str = "default",
        *,
        failure_threshold: int = 5,
        cooldown_period: float = 60.0,
        recovery_attempts: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_period = cooldown_period
        self.recovery_attempts = recovery_attempts
        self._clock = clock
        self._state = CircuitState()
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def allows_request(self) -> bool:
        """True if execute() would call the wrapped function right now."""
        with self._lock:
            if self._state.state is BreakerState.OPEN:
                return self._cooldown_remaining() <= 0
            if self._state.state is BreakerState.HALF_OPEN:
                return not self._trial_in_flight
            return True

    def _cooldown_remaining(self) -> float:
        return self.cooldown_period - (self._clock() - self._state.last_failure_time)

    def _before_call(self) -> None:
        with self._lock:
            if self._state.state is BreakerState.OPEN:
                remaining = self._cooldown_remaining()
                if remaining > 0:
                    raise CircuitOpenError(self.name, remaining)
                logger.info("Circuit breaker %s cooldown expired, attempting recovery", self.name)
                self._state = replace(self._state, state=BreakerState.HALF_OPEN, success_count=0)
            if self._state.state is BreakerState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(self.name, 0.0)
                self._trial_in_flight = True

    def _on_success(self) -> None:
        with self._lock:
            self._trial_in_flight = False
            if self._state.state is BreakerState.HALF_OPEN:
                successes = self._state.success_count + 1
                if successes >= self.recovery_attempts:
                    self._state = CircuitState(success_count=successes)
                    logger.info("Circuit breaker %s fully recovered", self.name)
                else:
                    self._state = replace(self._state, failure_count=0, success_count=successes)
            else:
                self._state = replace(self._state, failure_count=0)

    def _on_failure(self) -> None:
        with self._lock:
            was_trial = self._state.state is BreakerState.HALF_OPEN
            self._trial_in_flight = False
            failures = self._state.failure_count + 1
            now = self._clock()
            if was_trial or failures >= self.failure_threshold:
                self._state = CircuitState(
                    state=BreakerState.OPEN,
                    failure_count=failures,
                    last_failure_time=now,
                )
                logger.error(
                    "Circuit breaker %s opened after %d consecutive failures",
                    self.name, failures,
                )
            else:
                self._state = replace(
                    self._state, failure_count=failures, last_failure_time=now,
                )

    def execute(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` under breaker protection. Raises CircuitOpenError when failing fast."""
        self._before_call()
        try:
            result = fn()
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        """Manually close the breaker."""
        with self._lock:
            self._state = CircuitState()
            self._trial_in_flight = False
        logger.info("Circuit breaker %s manually reset", self.name)

    def trip(self) -> None:
        """Manually open the breaker, starting a fresh cooldown."""
        with self._lock:
            self._state = replace(
                self._state,
                state=BreakerState.OPEN,
                last_failure_time=self._clock(),
                success_count=0,
            )
        logger.info("Circuit breaker %s manually opened", self.name)

    def snapshot(self) -> dict:
        s = self.state
        return {
            "name": self.name,
            "state": s.state.value,
            "is_open": s.is_open,
            "failure_count": s.failure_count,
            "success_count": s.success_count,
            "last_failure_time": s.last_failure_time,
        }


# ---------------------------------------------------------------------------
# Error handler
# ---------------------------------------------------------------------------

MAX_RECENT_ERRORS = 10


class ErrorHandler:
    """
    Central error handling: convert, log, count, and fall back.

    One instance per process, injected into the engine and processor.
    """

    def __init__(self, *, log_errors: bool = True, on_error: Optional[Callable[[RecallError], None]] = None):
        self._log_errors = log_errors
        self._on_error = on_error
        self._counts: dict[str, int] = {}
        self._recent: dict[str, RecallError] = {}
        self._lock = threading.Lock()

    def handle(self, error: BaseException, context: Optional[dict[str, Any]] = None) -> RecallError:
        """Convert, record and log an error. Returns the converted error."""
        converted = to_recall_error(error)
        with self._lock:
            self._counts[converted.code] = self._counts.get(converted.code, 0) + 1
            self._recent[converted.code] = converted
        if self._log_errors:
            if context:
                logger.error("%s (%s)", converted.formatted_message(), context)
            else:
                logger.error("%s", converted.formatted_message())
        if self._on_error is not None:
            self._on_error(converted)
        return converted

    def handle_with_fallback(self, error: BaseException, fallback: T,
                             context: Optional[dict[str, Any]] = None) -> T:
        self.handle(error, context)
        return fallback

    def safe_execute(self, fn: Callable[[], T], fallback: T,
                     context: Optional[dict[str, Any]] = None) -> T:
        """Run ``fn``; on any exception return ``fallback``. Never raises."""
        try:
            return fn()
        except Exception as e:
            return self.handle_with_fallback(e, fallback, context)

    def safe_execute_with_retry(self, fn: Callable[[], T], fallback: T,
                                options: Optional[RetryOptions] = None,
                                context: Optional[dict[str, Any]] = None) -> T:
        """Retry ``fn`` per ``options``; return ``fallback`` once retries are exhausted."""
        try:
            return retry(fn, options)
        except Exception as e:
            return self.handle_with_fallback(e, fallback, context)

    def safe_execute_with_circuit_breaker(self, fn: Callable[[], T], fallback: T,
                                          breaker: CircuitBreaker,
                                          context: Optional[dict[str, Any]] = None) -> T:
        try:
            return breaker.execute(fn)
        except Exception as e:
            return self.handle_with_fallback(e, fallback, context)

    def get_stats(self) -> dict:
        with self._lock:
            recent = sorted(self._recent.values(), key=lambda e: e.timestamp, reverse=True)
            return {
                "total_errors": sum(self._counts.values()),
                "by_code": dict(self._counts),
                "recent_errors": [
                    {"code": e.code, "message": e.message, "timestamp": e.timestamp}
                    for e in recent[:MAX_RECENT_ERRORS]
                ],
            }

    def reset_stats(self) -> None:
        with self._lock:
            self._counts.clear()
            self._recent.clear()
