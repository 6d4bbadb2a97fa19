"""Execution primitives shared by the research engine: retries, limits, threads."""

from deepresearch.core.background_task import BackgroundTask, TaskStatus
from deepresearch.core.concurrency import ConcurrencyLimiter, GatherResult
from deepresearch.core.resilience import (
    CircuitBreaker,
    TimeoutException,
    async_retry_with_backoff,
    run_with_timeout,
)

__all__ = [
    "BackgroundTask",
    "CircuitBreaker",
    "ConcurrencyLimiter",
    "GatherResult",
    "TaskStatus",
    "TimeoutException",
    "async_retry_with_backoff",
    "run_with_timeout",
]
