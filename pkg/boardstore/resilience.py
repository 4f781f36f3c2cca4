"""
Resilience wrappers for board store operations.

Everything here wraps a zero-argument coroutine function, so the wrappers
compose around any service call:

    await runner.retry(lambda: service.save_data(data), "save")

  - retry            exponential backoff with jitter, OperationFailedError at the end
  - with_fallback    run a fallback when the primary operation fails
  - circuit_breaker  reject calls for a while after repeated failures
  - Debouncer        only the last of a burst of calls runs
  - Throttler        calls arriving too soon after the last one are dropped

ErrorStatistics and PerformanceMetrics record what the wrappers see.
"""
import asyncio
import logging
import math
import random
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Deque, Dict, Optional, TypeVar

from .errors import (
    ArgumentError,
    CircuitOpenError,
    DebounceSuperseded,
    InvalidOperationError,
    NotFoundError,
    OperationFailedError,
    ValidationError,
)
from .feedback import FeedbackBridge
from .schema import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")
Operation = Callable[[], Awaitable[T]]

# Errors that describe the request, not the environment; retrying cannot help
NON_RETRYABLE = (ArgumentError, NotFoundError, ValidationError, InvalidOperationError, CircuitOpenError)

RETRY_NOTICE_MS = 2000
JITTER = 0.1
ALL_OPERATIONS = "all operations"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Circuit breaker
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Failure counter for one named circuit.

    Closed: calls pass, failures are counted. At failure_threshold the
    circuit opens and rejects calls for `timeout` seconds, then lets a
    single trial call through (half-open). Success closes it again,
    failure re-opens it.
    """

    def __init__(self, name: str, failure_threshold: int = 5, timeout: float = 30.0,
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.opened_at: Optional[float] = None

    def allow(self) -> bool:
        if self.state is CircuitState.OPEN:
            if self._clock() - (self.opened_at or 0.0) < self.timeout:
                return False
            self.state = CircuitState.HALF_OPEN
            logger.info(f"Circuit '{self.name}' half-open, allowing a trial call")
        return True

    def record_success(self) -> None:
        if self.state is not CircuitState.CLOSED:
            logger.info(f"Circuit '{self.name}' closed")
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.opened_at = None

    def record_failure(self) -> None:
        self.failures += 1
        if self.state is CircuitState.HALF_OPEN or self.failures >= self.failure_threshold:
            if self.state is not CircuitState.OPEN:
                logger.error(f"Circuit '{self.name}' opened after {self.failures} failure(s)")
            self.state = CircuitState.OPEN
            self.opened_at = self._clock()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Statistics
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass
class ErrorStatistics:
    """Success and failure counts for one operation name, or an aggregate of several."""
    operation: str = ALL_OPERATIONS
    total_operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None

    # Below this many operations the rate is too noisy to call anything unhealthy
    MIN_SAMPLE = 10
    MAX_ERROR_RATE = 0.1

    @property
    def error_rate(self) -> float:
        if self.total_operations == 0:
            return 0.0
        return self.failed_operations / self.total_operations

    @property
    def is_healthy(self) -> bool:
        return self.total_operations < self.MIN_SAMPLE or self.error_rate < self.MAX_ERROR_RATE

    def record_success(self) -> None:
        self.total_operations += 1
        self.successful_operations += 1

    def record_failure(self, error: BaseException) -> None:
        self.total_operations += 1
        self.failed_operations += 1
        self.last_error = f"{type(error).__name__}: {error}"
        self.last_error_time = utc_now()

    def absorb(self, other: "ErrorStatistics") -> None:
        """Add another operation's counts; the most recent error wins."""
        self.total_operations += other.total_operations
        self.successful_operations += other.successful_operations
        self.failed_operations += other.failed_operations
        if other.last_error_time is not None and (
            self.last_error_time is None or other.last_error_time > self.last_error_time
        ):
            self.last_error = other.last_error
            self.last_error_time = other.last_error_time


@dataclass
class MetricSummary:
    name: str
    count: int
    total_ms: float
    min_ms: float
    max_ms: float
    p95_ms: float

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0


class PerformanceMetrics:
    """Keeps the most recent durations per operation name."""

    def __init__(self, max_samples: int = 1000):
        self.max_samples = max_samples
        self._samples: Dict[str, Deque[float]] = {}

    def record(self, name: str, duration_ms: float) -> None:
        if name not in self._samples:
            self._samples[name] = deque(maxlen=self.max_samples)
        self._samples[name].append(duration_ms)

    @contextmanager
    def measure(self, name: str):
        """Time the enclosed block, recording it even when it raises."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record(name, (time.perf_counter() - start) * 1000)

    def percentile(self, name: str, pct: float) -> Optional[float]:
        """Nearest-rank percentile, or None if nothing was recorded."""
        samples = sorted(self._samples.get(name, ()))
        if not samples:
            return None
        rank = max(1, min(len(samples), math.ceil(pct / 100 * len(samples))))
        return samples[rank - 1]

    def summary(self, name: str) -> Optional[MetricSummary]:
        samples = self._samples.get(name)
        if not samples:
            return None
        return MetricSummary(
            name=name,
            count=len(samples),
            total_ms=sum(samples),
            min_ms=min(samples),
            max_ms=max(samples),
            p95_ms=self.percentile(name, 95),
        )

    def reset(self) -> None:
        self._samples.clear()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Debounce / throttle
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class Debouncer:
    """
    Runs only the last call of a burst for each key.

    Every call waits `delay` seconds; a newer call for the same key during
    that wait supersedes it and the older caller gets DebounceSuperseded.
    """

    def __init__(self, delay: float = 0.3):
        self.delay = delay
        self._pending: Dict[str, asyncio.Event] = {}

    async def run(self, key: str, operation: Operation) -> T:
        previous = self._pending.get(key)
        if previous is not None:
            previous.set()

        superseded = asyncio.Event()
        self._pending[key] = superseded
        try:
            await asyncio.wait_for(superseded.wait(), timeout=self.delay)
        except asyncio.TimeoutError:
            pass
        else:
            raise DebounceSuperseded(f"Debounced call '{key}' was cancelled or superseded")
        finally:
            if self._pending.get(key) is superseded:
                del self._pending[key]

        return await operation()

    def cancel(self, key: str) -> bool:
        """Call off the pending call for `key`; its caller gets DebounceSuperseded. False if none was pending."""
        pending = self._pending.pop(key, None)
        if pending is None:
            return False
        pending.set()
        logger.debug(f"Cancelled debounced call '{key}'")
        return True


class Throttler:
    """Drops calls for a key that arrive within `interval` seconds of the last accepted one."""

    def __init__(self, interval: float = 1.0, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self._clock = clock
        self._last: Dict[str, float] = {}

    async def run(self, key: str, operation: Operation) -> Optional[T]:
        now = self._clock()
        last = self._last.get(key)
        if last is not None and now - last < self.interval:
            logger.debug(f"Throttled call '{key}' ({now - last:.3f}s after the last one)")
            return None
        self._last[key] = now
        return await operation()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Runner
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ResilienceRunner:
    """
    Applies retry, fallback and circuit breaking to async operations.

    Notices go to the optional FeedbackBridge; every outcome is counted in
    per-operation ErrorStatistics. `sleep` and `clock` can be swapped out
    by tests.
    """

    def __init__(
        self,
        feedback: Optional[FeedbackBridge] = None,
        max_retries: int = 3,
        base_delay: float = 1.0,
        failure_threshold: int = 5,
        circuit_timeout: float = 30.0,
        debounce_delay: float = 0.3,
        throttle_interval: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.feedback = feedback
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.failure_threshold = failure_threshold
        self.circuit_timeout = circuit_timeout
        self._sleep = sleep
        self._clock = clock
        self.metrics = PerformanceMetrics()
        self.debouncer = Debouncer(debounce_delay)
        self.throttler = Throttler(throttle_interval, clock)
        self._circuits: Dict[str, CircuitBreaker] = {}
        self._stats: Dict[str, ErrorStatistics] = {}

    @classmethod
    def from_settings(cls, settings, feedback: Optional[FeedbackBridge] = None, **kwargs) -> "ResilienceRunner":
        return cls(
            feedback=feedback,
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay,
            failure_threshold=settings.circuit_failure_threshold,
            circuit_timeout=settings.circuit_timeout,
            debounce_delay=settings.debounce_ms / 1000,
            throttle_interval=settings.throttle_ms / 1000,
            **kwargs,
        )

    def backoff(self, attempt: int, base_delay: Optional[float] = None) -> float:
        """Delay before retry number `attempt` (1-based): base * 2^(attempt-1) plus up to 10% jitter."""
        base = self.base_delay if base_delay is None else base_delay
        delay = base * (2 ** (attempt - 1))
        return delay + delay * JITTER * random.random()

    # ── Statistics ──

    def _operation_stats(self, name: str) -> ErrorStatistics:
        if name not in self._stats:
            self._stats[name] = ErrorStatistics(name)
        return self._stats[name]

    def _record_success(self, name: str) -> None:
        self._operation_stats(name).record_success()

    def _record_failure(self, name: str, error: BaseException) -> None:
        self._operation_stats(name).record_failure(error)

    def error_statistics(self, name: Optional[str] = None) -> ErrorStatistics:
        """Statistics for one operation, or all operations added together when name is None."""
        if name is not None:
            return self._stats.get(name) or ErrorStatistics(name)
        total = ErrorStatistics(ALL_OPERATIONS)
        for stats in self._stats.values():
            total.absorb(stats)
        return total

    def is_operation_healthy(self, name: str) -> bool:
        stats = self._stats.get(name)
        return stats is None or stats.is_healthy

    def clear_error_statistics(self) -> None:
        self._stats.clear()

    # ── Retry ──

    async def retry(self, operation: Operation, name: str,
                    max_retries: Optional[int] = None, base_delay: Optional[float] = None) -> T:
        """
        Run `operation`, retrying failures with exponential backoff.

        Errors that describe a bad request (not found, validation, bad
        argument) are raised at once. After max_retries retries the last
        error is chained into OperationFailedError.
        """
        retries = self.max_retries if max_retries is None else max_retries
        attempts = retries + 1
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                with self.metrics.measure(name):
                    result = await operation()
            except NON_RETRYABLE as e:
                self._record_failure(name, e)
                raise
            except Exception as e:
                last_error = e
                self._record_failure(name, e)
                if attempt == attempts:
                    break
                delay = self.backoff(attempt, base_delay)
                logger.warning(
                    f"{name} failed (attempt {attempt}/{attempts}): {e}; retrying in {delay:.2f}s"
                )
                if self.feedback:
                    await self.feedback.warning(
                        f"{name} failed, retrying ({attempt}/{retries})...", RETRY_NOTICE_MS
                    )
                await self._sleep(delay)
            else:
                self._record_success(name)
                if attempt > 1:
                    logger.info(f"{name} succeeded after {attempt} attempt(s)")
                    if self.feedback:
                        await self.feedback.success(f"{name} succeeded after {attempt} attempt(s)!")
                return result

        logger.error(f"{name} failed after {attempts} attempt(s): {last_error}")
        if self.feedback:
            await self.feedback.error(f"{name} failed after {attempts} attempt(s)")
        raise OperationFailedError(
            f"Operation '{name}' failed after {attempts} attempt(s): {last_error}",
            operation=name,
            attempts=attempts,
        ) from last_error

    # ── Fallback ──

    async def with_fallback(self, operation: Operation, fallback: Operation, name: str) -> T:
        """Run `operation`; if it fails, return the result of `fallback` instead."""
        try:
            result = await operation()
        except Exception as e:
            self._record_failure(name, e)
            logger.warning(f"{name} failed, using fallback: {e}")
            if self.feedback:
                await self.feedback.warning(f"{name} failed, using fallback")
            try:
                return await fallback()
            except Exception as fallback_error:
                self._record_failure(f"{name}:fallback", fallback_error)
                if self.feedback:
                    await self.feedback.error(f"{name} and its fallback failed")
                raise OperationFailedError(
                    f"Operation '{name}' and its fallback failed: {fallback_error}",
                    operation=name,
                    attempts=2,
                ) from fallback_error
        self._record_success(name)
        return result

    # ── Circuit breaker ──

    def circuit(self, name: str) -> CircuitBreaker:
        if name not in self._circuits:
            self._circuits[name] = CircuitBreaker(
                name, self.failure_threshold, self.circuit_timeout, self._clock
            )
        return self._circuits[name]

    async def circuit_breaker(self, operation: Operation, name: str) -> T:
        """Run `operation` through the circuit `name`; raises CircuitOpenError while it is open."""
        breaker = self.circuit(name)
        if not breaker.allow():
            logger.warning(f"Rejected '{name}': circuit open")
            if self.feedback:
                await self.feedback.warning(
                    f"{name} is temporarily unavailable. Try again in a few moments."
                )
            raise CircuitOpenError(name)
        try:
            result = await operation()
        except Exception as e:
            breaker.record_failure()
            self._record_failure(name, e)
            if breaker.state is CircuitState.OPEN and self.feedback:
                await self.feedback.error(f"{name} is failing repeatedly and has been paused")
            raise
        breaker.record_success()
        self._record_success(name)
        return result

    # ── Debounce / throttle ──

    async def debounce(self, key: str, operation: Operation) -> T:
        return await self.debouncer.run(key, operation)

    def cancel_debounce(self, key: str) -> bool:
        return self.debouncer.cancel(key)

    async def throttle(self, key: str, operation: Operation) -> Optional[T]:
        return await self.throttler.run(key, operation)
