"""Progress tracking for a research session.

Percentage never decreases and phases only move forward one step at a time.
The single exception is ``finish(cancelled=True)``, which jumps straight to
DONE when a session is cancelled or runs out of time.
"""

import logging
import threading
from datetime import datetime, timezone

from deepresearch.research.models import Progress, ResearchPhase

logger = logging.getLogger(__name__)


class ProgressTracker:
    """Thread-safe phase, percentage and error state polled by callers."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self._lock = threading.Lock()
        self._phase = ResearchPhase.INITIAL_ANALYSIS
        self._percentage = 0
        self._activity = "Starting research"
        self._completed = False
        self._cancelled = False
        self._errors: list[str] = []
        self._start_time = datetime.now(timezone.utc)
        self._updated_at = self._start_time
        self._questions_total = 0
        self._questions_researched = 0

    @property
    def phase(self) -> ResearchPhase:
        with self._lock:
            return self._phase

    @property
    def percentage(self) -> int:
        with self._lock:
            return self._percentage

    @property
    def completed(self) -> bool:
        with self._lock:
            return self._completed

    def _set_percentage(self, value: float) -> None:
        target = int(min(100, max(0, value)))
        if target > self._percentage:
            self._percentage = target
        self._updated_at = datetime.now(timezone.utc)

    def start_phase(self, phase: ResearchPhase, activity: str) -> None:
        """Enter the next phase and move to its starting milestone.

        Raises:
            ValueError: If ``phase`` is not the immediate successor of the
                current phase (or the current phase itself).
        """
        with self._lock:
            if self._completed:
                raise ValueError(f"session {self.session_id} already finished")
            if phase != self._phase and phase != self._phase.next():
                raise ValueError(
                    f"illegal phase transition {self._phase.value} -> {phase.value}"
                )
            if phase != self._phase:
                logger.info("Phase %s -> %s", self._phase.value, phase.value)
            self._phase = phase
            self._activity = activity
            self._set_percentage(phase.start_percentage)

    def complete_phase(self, phase: ResearchPhase) -> None:
        """Move to the milestone of ``phase`` if it is still current."""
        with self._lock:
            if phase == self._phase and phase != ResearchPhase.REPORT_GENERATION:
                self._set_percentage(phase.milestone)

    def update_fraction(self, done: int, total: int, activity: str = "") -> None:
        """Interpolate between the current phase's start and milestone."""
        with self._lock:
            if total <= 0:
                return
            start = self._phase.start_percentage
            span = self._phase.milestone - start
            fraction = min(1.0, max(0.0, done / total))
            if self._phase != ResearchPhase.REPORT_GENERATION:
                self._set_percentage(start + span * fraction)
            if activity:
                self._activity = activity

    def update_activity(self, activity: str) -> None:
        with self._lock:
            self._activity = activity
            self._updated_at = datetime.now(timezone.utc)

    def set_question_counts(self, total: int, researched: int) -> None:
        with self._lock:
            self._questions_total = total
            self._questions_researched = researched

    def record_error(self, message: str) -> None:
        """Append a human-readable note about a partial failure."""
        with self._lock:
            self._errors.append(message)
            self._updated_at = datetime.now(timezone.utc)
        logger.warning("Recorded error: %s", message)

    @property
    def errors(self) -> list[str]:
        with self._lock:
            return list(self._errors)

    def finish(self, cancelled: bool = False, activity: str = "") -> None:
        """Mark the session complete at 100%."""
        with self._lock:
            if cancelled:
                self._cancelled = True
            self._phase = ResearchPhase.DONE
            self._percentage = 100
            self._completed = True
            self._activity = activity or (
                "Research stopped early" if self._cancelled else "Research complete"
            )
            self._updated_at = datetime.now(timezone.utc)

    def snapshot(self) -> Progress:
        with self._lock:
            return Progress(
                session_id=self.session_id,
                phase=self._phase,
                percentage=self._percentage,
                current_activity=self._activity,
                completed=self._completed,
                cancelled=self._cancelled,
                errors=list(self._errors),
                start_time=self._start_time,
                updated_at=self._updated_at,
                questions_total=self._questions_total,
                questions_researched=self._questions_researched,
            )
