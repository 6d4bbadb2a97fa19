"""
Concurrency utilities for deepresearch.

Provides a semaphore-based limiter whose gather() reports per-item outcomes
instead of failing fast, with an optional overall deadline after which
unfinished work is cancelled and reported as timed out.

Example:
    from deepresearch.core.concurrency import ConcurrencyLimiter

    limiter = ConcurrencyLimiter(max_concurrent=3, name="batch")
    outcome = await limiter.gather(
        [research(q) for q in batch],
        return_exceptions=True,
        deadline=300.0,
    )
    print(f"Completed {outcome.stats.succeeded}/{outcome.stats.total}")

asyncio primitives bind to the running loop, so create limiters inside the
coroutine that uses them.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Dict, List, Optional, TypeVar

from deepresearch.core.resilience import TimeoutException

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ConcurrencyStats:
    """Statistics from concurrent operation execution.

    Attributes:
        total: Total operations attempted
        succeeded: Operations completed successfully
        failed: Operations that raised exceptions (includes timeouts)
        cancelled: Operations that were cancelled
        timed_out: Operations that timed out
        elapsed_seconds: Total execution time
    """

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    timed_out: int = 0
    elapsed_seconds: float = 0.0


@dataclass
class GatherResult:
    """Result of a gather operation with detailed status.

    Attributes:
        results: Results in input order (None for failed operations)
        errors: Errors in input order (None for successful operations)
        stats: Execution statistics
    """

    results: List[Any] = field(default_factory=list)
    errors: List[Optional[BaseException]] = field(default_factory=list)
    stats: ConcurrencyStats = field(default_factory=ConcurrencyStats)

    @property
    def all_succeeded(self) -> bool:
        """Check if all operations succeeded."""
        return self.stats.failed == 0 and self.stats.cancelled == 0

    def successful_results(self) -> List[Any]:
        """Get only the successful results."""
        return [r for r, e in zip(self.results, self.errors) if e is None]

    def failed_results(self) -> List[tuple[int, BaseException]]:
        """Get failed results with their indices."""
        return [(i, e) for i, e in enumerate(self.errors) if e is not None]


class ConcurrencyLimiter:
    """Limit concurrent async operations using a semaphore.

    Example:
        >>> limiter = ConcurrencyLimiter(max_concurrent=5)
        >>> outcome = await limiter.gather([fetch(url) for url in urls])
        >>> async with limiter.acquire():
        ...     await slow_operation()
    """

    def __init__(
        self,
        max_concurrent: int = 10,
        *,
        name: str = "",
        timeout: Optional[float] = None,
    ):
        """Initialize concurrency limiter.

        Args:
            max_concurrent: Maximum number of concurrent operations (default: 10)
            name: Optional name for logging
            timeout: Optional timeout per operation in seconds
        """
        self.max_concurrent = max(1, max_concurrent)
        self.name = name
        self.timeout = timeout
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._active_count = 0
        self._total_count = 0

    @property
    def active_count(self) -> int:
        """Get current number of active operations."""
        return self._active_count

    @asynccontextmanager
    async def acquire(self):
        """Acquire a slot for concurrent execution."""
        async with self._semaphore:
            self._active_count += 1
            self._total_count += 1
            try:
                yield
            finally:
                self._active_count -= 1

    async def run(
        self,
        coro: Coroutine[Any, Any, T],
        *,
        timeout: Optional[float] = None,
    ) -> T:
        """Run a coroutine with concurrency limiting.

        Args:
            coro: The coroutine to run
            timeout: Optional timeout override (uses limiter default if not provided)

        Raises:
            asyncio.TimeoutError: If the operation times out
        """
        effective_timeout = timeout if timeout is not None else self.timeout

        async with self.acquire():
            if effective_timeout:
                return await asyncio.wait_for(coro, timeout=effective_timeout)
            return await coro

    async def gather(
        self,
        coros: List[Coroutine[Any, Any, T]],
        *,
        return_exceptions: bool = False,
        timeout: Optional[float] = None,
        deadline: Optional[float] = None,
    ) -> GatherResult:
        """Run multiple coroutines with concurrency limiting.

        Args:
            coros: Coroutines to execute
            return_exceptions: If True, exceptions are captured in the result;
                if False, the first exception cancels the rest and propagates
            timeout: Optional timeout per operation
            deadline: Optional bound in seconds on the whole gather; operations
                still running when it passes are cancelled and recorded as
                TimeoutException, finished ones are kept

        Returns:
            GatherResult with results, errors, and statistics
        """
        start = time.monotonic()
        stats = ConcurrencyStats(total=len(coros))
        results: List[Any] = [None] * len(coros)
        errors: List[Optional[BaseException]] = [None] * len(coros)

        async def run_one(index: int, coro: Coroutine[Any, Any, T]) -> None:
            try:
                results[index] = await self.run(coro, timeout=timeout)
                stats.succeeded += 1
            except asyncio.TimeoutError as e:
                errors[index] = e
                stats.timed_out += 1
                stats.failed += 1
                if not return_exceptions:
                    raise
            except Exception as e:
                errors[index] = e
                stats.failed += 1
                if not return_exceptions:
                    raise

        tasks = [asyncio.create_task(run_one(i, coro)) for i, coro in enumerate(coros)]
        if not tasks:
            return GatherResult(results=results, errors=errors, stats=stats)

        try:
            done, pending = await asyncio.wait(
                tasks,
                timeout=deadline,
                return_when=(
                    asyncio.ALL_COMPLETED if return_exceptions else asyncio.FIRST_EXCEPTION
                ),
            )
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()

            if pending:
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                for index, task in enumerate(tasks):
                    if task in pending and errors[index] is None and results[index] is None:
                        errors[index] = TimeoutException(
                            f"{self.name or 'gather'} item {index} exceeded {deadline}s",
                            timeout_seconds=deadline,
                            operation=self.name or "gather",
                        )
                        stats.timed_out += 1
                        stats.cancelled += 1
                        stats.failed += 1
                logger.warning(
                    "%s: %d of %d operations did not finish within %.1fs",
                    self.name or "gather",
                    len(pending),
                    len(tasks),
                    deadline or 0.0,
                )
        except BaseException:
            for task in tasks:
                if not task.done():
                    task.cancel()
            raise
        finally:
            stats.elapsed_seconds = time.monotonic() - start

        return GatherResult(results=results, errors=errors, stats=stats)

    async def map(
        self,
        func: Callable[[T], Coroutine[Any, Any, Any]],
        items: List[T],
        *,
        return_exceptions: bool = False,
        timeout: Optional[float] = None,
        deadline: Optional[float] = None,
    ) -> GatherResult:
        """Apply an async function to items with concurrency limiting."""
        return await self.gather(
            [func(item) for item in items],
            return_exceptions=return_exceptions,
            timeout=timeout,
            deadline=deadline,
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get current limiter statistics."""
        return {
            "max_concurrent": self.max_concurrent,
            "active_count": self._active_count,
            "total_processed": self._total_count,
            "name": self.name,
            "timeout": self.timeout,
        }
