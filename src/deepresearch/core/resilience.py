"""
Resilience primitives for collaborator calls.

Provides timeouts, async retry with exponential backoff, and a circuit
breaker for the completion and search collaborators.

Example usage:

    from deepresearch.core.resilience import (
        CircuitBreaker,
        async_retry_with_backoff,
        run_with_timeout,
    )

    breaker = CircuitBreaker(name="search")
    results = await async_retry_with_backoff(
        lambda: client.search(query),
        max_attempts=3,
        retry_if=lambda exc: getattr(exc, "retryable", True),
    )
"""

from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar
import asyncio
import logging
import random
import time


logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------------------


class TimeoutException(Exception):
    """Operation timed out.

    Attributes:
        timeout_seconds: The timeout duration that was exceeded.
        operation: Name of the operation that timed out.
    """

    def __init__(
        self,
        message: str,
        timeout_seconds: Optional[float] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(message)
        self.timeout_seconds = timeout_seconds
        self.operation = operation


async def run_with_timeout(
    awaitable: Awaitable[T],
    seconds: Optional[float],
    operation: str = "operation",
) -> T:
    """Await with an optional deadline.

    Args:
        awaitable: Coroutine or future to await.
        seconds: Timeout in seconds; None or <= 0 disables the deadline.
        operation: Name used in the error message.

    Raises:
        TimeoutException: If the deadline passes first.
    """
    if not seconds or seconds <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError:
        raise TimeoutException(
            f"{operation} timed out after {seconds}s",
            timeout_seconds=seconds,
            operation=operation,
        )


# ---------------------------------------------------------------------------
# Retry with Backoff
# ---------------------------------------------------------------------------


def backoff_delay(
    attempt: int,
    *,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = False,
) -> float:
    """Delay before the retry that follows a failed attempt (0-based)."""
    delay = min(base_delay * (exponential_base**attempt), max_delay)
    if jitter:
        delay = delay * (0.5 + random.random())
    return delay


async def async_retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = False,
    retryable_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    retry_if: Optional[Callable[[BaseException], bool]] = None,
    operation: str = "operation",
) -> T:
    """Retry an async callable with exponential backoff.

    The delay after attempt ``n`` (0-based) is
    ``min(base_delay * exponential_base**n, max_delay)``, raised to the
    exception's ``retry_after`` attribute when it carries a longer one.

    Args:
        func: Zero-argument callable returning a fresh awaitable per attempt.
        max_attempts: Total attempts including the first call (default 3).
        base_delay: Initial delay in seconds (default 1.0).
        max_delay: Maximum delay cap in seconds (default 60.0).
        exponential_base: Multiplier for each retry (default 2.0).
        jitter: Randomize each delay by 50-150% (default False).
        retryable_exceptions: Exception types that are retried.
        retry_if: Extra predicate; returning False stops retrying at once.
        operation: Name used in log messages.

    Returns:
        Result of the first successful attempt.

    Raises:
        Exception: The last exception once attempts are exhausted, or the
            first exception that is not retryable.
    """
    last_exception: Optional[BaseException] = None

    for attempt in range(max(1, max_attempts)):
        try:
            return await func()
        except retryable_exceptions as e:
            last_exception = e
            if retry_if is not None and not retry_if(e):
                raise
            if attempt >= max_attempts - 1:
                break

            delay = backoff_delay(
                attempt,
                base_delay=base_delay,
                max_delay=max_delay,
                exponential_base=exponential_base,
                jitter=jitter,
            )
            retry_after = getattr(e, "retry_after", None)
            if isinstance(retry_after, (int, float)) and retry_after > delay:
                delay = min(float(retry_after), max_delay)

            logger.debug(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                operation,
                attempt + 1,
                max_attempts,
                e,
                delay,
            )
            if delay > 0:
                await asyncio.sleep(delay)

    if last_exception is not None:
        raise last_exception
    raise RuntimeError("async_retry_with_backoff: unexpected state")


# ---------------------------------------------------------------------------
# Circuit Breaker
# ---------------------------------------------------------------------------


class CircuitState(Enum):
    """Circuit breaker states.

    CLOSED: Normal operation, requests flow through.
    OPEN: Failures exceeded threshold, requests rejected.
    HALF_OPEN: Testing recovery, limited requests allowed.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """Circuit breaker for an external collaborator.

    Thread-safe, so one breaker can be shared by sessions running on
    different event loops.

    Attributes:
        name: Identifier for this circuit breaker.
        failure_threshold: Consecutive failures before opening (default 5).
        recovery_timeout: Seconds before testing recovery (default 30).
        half_open_max_calls: Trial calls allowed while half-open (default 1).
    """

    name: str = "default"
    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    half_open_max_calls: int = 1

    state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    failure_count: int = field(default=0, init=False)
    last_failure_time: float = field(default=0.0, init=False)
    half_open_calls: int = field(default=0, init=False)
    _lock: Lock = field(default_factory=Lock, init=False, repr=False)

    def can_execute(self) -> bool:
        """Check if a call should proceed."""
        with self._lock:
            if self.state == CircuitState.CLOSED:
                return True

            if self.state == CircuitState.OPEN:
                if time.time() - self.last_failure_time >= self.recovery_timeout:
                    self.state = CircuitState.HALF_OPEN
                    self.half_open_calls = 1
                    return True
                return False

            if self.half_open_calls < self.half_open_max_calls:
                self.half_open_calls += 1
                return True
            return False

    def record_success(self) -> None:
        """Record a successful call; a half-open breaker closes."""
        with self._lock:
            self.state = CircuitState.CLOSED
            self.failure_count = 0
            self.half_open_calls = 0

    def record_failure(self) -> None:
        """Record a failed call; opens the breaker past the threshold."""
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.time()

            if self.state == CircuitState.HALF_OPEN:
                self.state = CircuitState.OPEN
            elif self.failure_count >= self.failure_threshold:
                if self.state != CircuitState.OPEN:
                    logger.warning(
                        "Circuit %s opened after %d consecutive failures",
                        self.name,
                        self.failure_count,
                    )
                self.state = CircuitState.OPEN

    def reset(self) -> None:
        """Reset circuit breaker to closed state."""
        with self._lock:
            self.state = CircuitState.CLOSED
            self.failure_count = 0
            self.half_open_calls = 0
            self.last_failure_time = 0.0

    def get_status(self) -> Dict[str, Any]:
        """Get current circuit breaker status."""
        with self._lock:
            retry_after = None
            if self.state == CircuitState.OPEN:
                elapsed = time.time() - self.last_failure_time
                retry_after = max(0.0, self.recovery_timeout - elapsed)

            return {
                "name": self.name,
                "state": self.state.value,
                "failure_count": self.failure_count,
                "failure_threshold": self.failure_threshold,
                "retry_after_seconds": retry_after,
            }
