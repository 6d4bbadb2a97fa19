"""
Unit tests for deepresearch.research.progress.

Tests phase ordering, monotonic percentage and snapshots.
"""

import pytest

from deepresearch.research.models import ResearchPhase
from deepresearch.research.progress import ProgressTracker


class TestPhaseTransitions:
    """Test start_phase ordering rules."""

    def test_forward_one_step(self):
        tracker = ProgressTracker("s1")
        tracker.start_phase(ResearchPhase.INITIAL_ANALYSIS, "Generating questions")
        tracker.start_phase(ResearchPhase.MULTI_DIMENSIONAL_RESEARCH, "Researching")

        assert tracker.phase == ResearchPhase.MULTI_DIMENSIONAL_RESEARCH
        assert tracker.percentage == 20

    def test_skip_rejected(self):
        tracker = ProgressTracker("s1")
        with pytest.raises(ValueError, match="illegal phase transition"):
            tracker.start_phase(ResearchPhase.SYNTHESIS, "Skipping ahead")

    def test_backward_rejected(self):
        tracker = ProgressTracker("s1")
        tracker.start_phase(ResearchPhase.MULTI_DIMENSIONAL_RESEARCH, "Researching")
        with pytest.raises(ValueError):
            tracker.start_phase(ResearchPhase.INITIAL_ANALYSIS, "Back again")

    def test_start_after_finish_rejected(self):
        tracker = ProgressTracker("s1")
        tracker.finish()
        with pytest.raises(ValueError, match="already finished"):
            tracker.start_phase(ResearchPhase.INITIAL_ANALYSIS, "Again")


class TestPercentage:
    """Test percentage updates."""

    def test_complete_phase_reaches_milestone(self):
        tracker = ProgressTracker("s1")
        tracker.complete_phase(ResearchPhase.INITIAL_ANALYSIS)
        assert tracker.percentage == 20

    def test_complete_phase_ignores_other_phase(self):
        tracker = ProgressTracker("s1")
        tracker.complete_phase(ResearchPhase.DEEP_DIVE)
        assert tracker.percentage == 0

    def test_update_fraction_interpolates(self):
        tracker = ProgressTracker("s1")
        tracker.start_phase(ResearchPhase.MULTI_DIMENSIONAL_RESEARCH, "Researching")
        tracker.update_fraction(1, 2, "Batch 1 of 2")

        snapshot = tracker.snapshot()
        assert snapshot.percentage == 35
        assert snapshot.current_activity == "Batch 1 of 2"

    def test_never_decreases(self):
        tracker = ProgressTracker("s1")
        tracker.start_phase(ResearchPhase.MULTI_DIMENSIONAL_RESEARCH, "Researching")
        tracker.update_fraction(2, 2)
        tracker.update_fraction(0, 2)
        assert tracker.percentage == 50

    def test_zero_total_ignored(self):
        tracker = ProgressTracker("s1")
        tracker.update_fraction(1, 0)
        assert tracker.percentage == 0


class TestFinish:
    """Test finishing and snapshots."""

    def test_finish_completed(self):
        tracker = ProgressTracker("s1")
        tracker.finish()
        snapshot = tracker.snapshot()

        assert snapshot.phase == ResearchPhase.DONE
        assert snapshot.percentage == 100
        assert snapshot.completed is True
        assert snapshot.cancelled is False
        assert snapshot.current_activity == "Research complete"

    def test_finish_cancelled_from_any_phase(self):
        tracker = ProgressTracker("s1")
        tracker.start_phase(ResearchPhase.MULTI_DIMENSIONAL_RESEARCH, "Researching")
        tracker.finish(cancelled=True)
        snapshot = tracker.snapshot()

        assert snapshot.phase == ResearchPhase.DONE
        assert snapshot.cancelled is True
        assert snapshot.current_activity == "Research stopped early"

    def test_errors_and_counts_in_snapshot(self):
        tracker = ProgressTracker("s1")
        tracker.record_error("search: provider down")
        tracker.set_question_counts(6, 2)
        snapshot = tracker.snapshot()

        assert snapshot.errors == ["search: provider down"]
        assert snapshot.questions_total == 6
        assert snapshot.questions_researched == 2
        assert snapshot.session_id == "s1"

    def test_snapshot_errors_are_copies(self):
        tracker = ProgressTracker("s1")
        tracker.snapshot().errors.append("mutated")
        assert tracker.errors == []
