"""
Unit tests for deepresearch.core.background_task.

Tests the BackgroundTask lifecycle, cooperative cancellation flag and
terminal status recording.
"""

import threading
import time

from deepresearch.core.background_task import BackgroundTask, TaskStatus


class TestBackgroundTaskLifecycle:
    """Test status transitions."""

    def test_starts_running(self):
        task = BackgroundTask("deep-research-1")
        assert task.status == TaskStatus.RUNNING
        assert task.is_done is False
        assert task.completed_at is None

    def test_mark_completed(self):
        """A clean finish is COMPLETED and releases waiters."""
        task = BackgroundTask("s1")
        task.mark_completed(result="report")

        assert task.status == TaskStatus.COMPLETED
        assert task.result == "report"
        assert task.is_done is True
        assert task.wait(0) is True

    def test_mark_completed_with_error_is_failed(self):
        task = BackgroundTask("s1")
        task.mark_completed(error="boom")
        assert task.status == TaskStatus.FAILED
        assert task.error == "boom"

    def test_mark_completed_after_cancel_is_cancelled(self):
        """A session that stopped on request ends CANCELLED."""
        task = BackgroundTask("s1")
        task.request_cancel()
        task.mark_completed(result="partial")

        assert task.status == TaskStatus.CANCELLED
        assert task.result == "partial"

    def test_mark_timeout(self):
        task = BackgroundTask("s1", timeout=10)
        task.mark_timeout(result="partial")
        assert task.status == TaskStatus.TIMEOUT
        assert task.is_timed_out is True

    def test_mark_failed(self):
        task = BackgroundTask("s1")
        task.mark_failed("thread crashed")
        assert task.status == TaskStatus.FAILED
        assert task.is_done


class TestBackgroundTaskCancellation:
    """Test the cancellation flag."""

    def test_request_cancel_once(self):
        """Only the first request is recorded."""
        task = BackgroundTask("s1")
        assert task.request_cancel() is True
        assert task.is_cancelled is True
        assert task.request_cancel() is False

    def test_request_cancel_after_done(self):
        """Finished tasks cannot be cancelled."""
        task = BackgroundTask("s1")
        task.mark_completed()
        assert task.request_cancel() is False
        assert task.is_cancelled is False


class TestBackgroundTaskTiming:
    """Test deadline and staleness checks."""

    def test_not_timed_out_without_timeout(self):
        assert BackgroundTask("s1").is_timed_out is False

    def test_timed_out_after_deadline(self):
        task = BackgroundTask("s1", timeout=0.01)
        task.started_at = time.time() - 1
        assert task.is_timed_out is True

    def test_completed_task_not_timed_out(self):
        task = BackgroundTask("s1", timeout=0.01)
        task.started_at = time.time() - 1
        task.mark_completed()
        assert task.is_timed_out is False

    def test_is_stale(self):
        task = BackgroundTask("s1")
        task.last_activity = time.time() - 400
        assert task.is_stale(300.0) is True
        task.touch()
        assert task.is_stale(300.0) is False

    def test_elapsed_ms_frozen_after_completion(self):
        task = BackgroundTask("s1")
        task.mark_completed()
        first = task.elapsed_ms
        time.sleep(0.01)
        assert task.elapsed_ms == first

    def test_wait_from_other_thread(self):
        """wait() returns once another thread marks the task done."""
        task = BackgroundTask("s1")
        worker = threading.Thread(target=lambda: (time.sleep(0.02), task.mark_completed()))
        task.thread = worker
        worker.start()

        assert task.wait(timeout=2.0) is True
        worker.join()
