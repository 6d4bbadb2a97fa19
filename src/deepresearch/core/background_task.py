"""Background session lifecycle management with cooperative cancellation.

A research session runs in a daemon thread that owns its own event loop.
The BackgroundTask tracks that thread, carries the cancellation flag the
engine polls at its checkpoints, and records the terminal status.

Status lifecycle: RUNNING -> COMPLETED/FAILED/CANCELLED/TIMEOUT
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    """Status of a background task.

    Attributes:
        RUNNING: Task currently executing.
        COMPLETED: Task finished successfully.
        FAILED: Task finished with error.
        CANCELLED: Task cancelled by caller.
        TIMEOUT: Task exceeded its processing deadline.
    """

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class BackgroundTask:
    """Tracks a thread-backed task with lifecycle and cancellation support.

    Attributes:
        task_id: Identifier of the session (or retry) the thread runs.
        thread: Thread running the work, attached before start.
        timeout: Optional processing deadline in seconds.
        status: Current task status.
        started_at: Unix timestamp when task was created.
        completed_at: Unix timestamp when task finished (None while running).
        error: Error message if task failed.
        result: Result object from task completion.
    """

    def __init__(
        self,
        task_id: str,
        thread: Optional[threading.Thread] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.task_id = task_id
        self.thread = thread
        self.timeout = timeout
        self.status = TaskStatus.RUNNING
        self.started_at = time.time()
        self.completed_at: Optional[float] = None
        self.error: Optional[str] = None
        self.result: Optional[Any] = None
        self.last_activity: float = time.time()

        self._cancel_event = threading.Event()
        self._done_event = threading.Event()

    @property
    def elapsed_ms(self) -> float:
        """Elapsed time since task start in milliseconds."""
        end = self.completed_at or time.time()
        return (end - self.started_at) * 1000

    @property
    def is_timed_out(self) -> bool:
        """True if a timeout is set and has been exceeded."""
        if self.status == TaskStatus.TIMEOUT:
            return True
        if self.completed_at is not None or self.timeout is None:
            return False
        return (time.time() - self.started_at) > self.timeout

    @property
    def is_cancelled(self) -> bool:
        """True once cancellation has been requested."""
        return self._cancel_event.is_set()

    @property
    def is_done(self) -> bool:
        """True once the task has reached a terminal status."""
        return self._done_event.is_set()

    def touch(self) -> None:
        """Record progress so the task is not considered stale."""
        self.last_activity = time.time()

    def is_stale(self, stale_threshold: float = 300.0) -> bool:
        """True if still running with no activity for longer than the threshold."""
        if self.status != TaskStatus.RUNNING:
            return False
        return (time.time() - self.last_activity) > stale_threshold

    def request_cancel(self) -> bool:
        """Signal cooperative cancellation without waiting.

        Returns:
            True if the request was recorded, False if the task already finished
            or cancellation was already requested.
        """
        if self.is_done or self._cancel_event.is_set():
            return False
        logger.debug("Cancellation requested for task %s", self.task_id)
        self._cancel_event.set()
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the task finishes.

        Returns:
            True if the task finished within the timeout.
        """
        return self._done_event.wait(timeout)

    def mark_completed(self, result: Any = None, error: Optional[str] = None) -> None:
        """Record terminal state; the status reflects cancellation or error."""
        self.result = result
        self.error = error
        if self.status == TaskStatus.RUNNING:
            if self._cancel_event.is_set():
                self.status = TaskStatus.CANCELLED
            elif error:
                self.status = TaskStatus.FAILED
            else:
                self.status = TaskStatus.COMPLETED
        self.completed_at = time.time()
        self._done_event.set()

    def mark_timeout(self, result: Any = None) -> None:
        """Record that the task stopped because its deadline passed."""
        self.status = TaskStatus.TIMEOUT
        self.result = result
        self.completed_at = time.time()
        self._done_event.set()

    def mark_failed(self, error: str) -> None:
        """Record an unexpected failure of the thread body."""
        self.status = TaskStatus.FAILED
        self.error = error
        self.completed_at = time.time()
        self._done_event.set()
