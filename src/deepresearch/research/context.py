"""Per-session research state.

A SessionContext is owned by exactly one session. Several questions of one
batch write to it concurrently, and the session thread and API callers read
it, so every access goes through a reentrant lock. The context is additive:
questions, evidence and relationships accumulate and are never removed.
"""

import threading
import time
from datetime import datetime, timezone
from typing import Optional

from deepresearch.research.models import (
    CitationResult,
    ResearchConfig,
    ResearchQuestion,
    UserProfile,
)


class SessionContext:
    """Mutable, thread-safe state for one research session."""

    def __init__(
        self,
        session_id: str,
        original_query: str,
        user_profile: Optional[UserProfile] = None,
        config: Optional[ResearchConfig] = None,
    ) -> None:
        self.session_id = session_id
        self.original_query = original_query
        self.user_profile = user_profile or UserProfile()
        self.config = config or ResearchConfig()
        self.start_time = datetime.now(timezone.utc)
        self._started_monotonic = time.monotonic()

        self._lock = threading.RLock()
        self._questions: list[ResearchQuestion] = []
        self._question_keys: set[tuple[str, str]] = set()
        self._citations: dict[str, list[CitationResult]] = {}
        self._insights: dict[str, str] = {}
        self._relationships: dict[str, set[str]] = {}
        self._inconsistencies: list[str] = []

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._started_monotonic

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------

    def add_question(self, question: ResearchQuestion) -> bool:
        """Add a question unless one with the same (text, category) exists."""
        with self._lock:
            if question.dedup_key in self._question_keys:
                return False
            self._question_keys.add(question.dedup_key)
            self._questions.append(question)
            return True

    def add_questions(self, questions: list[ResearchQuestion]) -> list[ResearchQuestion]:
        """Add several questions; returns the ones actually added."""
        return [q for q in questions if self.add_question(q)]

    @property
    def questions(self) -> list[ResearchQuestion]:
        with self._lock:
            return list(self._questions)

    def get_question(self, question_id: str) -> Optional[ResearchQuestion]:
        with self._lock:
            for question in self._questions:
                if question.id == question_id:
                    return question
            return None

    def mark_researched(self, question_id: str) -> None:
        with self._lock:
            question = self.get_question(question_id)
            if question is not None:
                question.mark_researched()

    @property
    def researched_count(self) -> int:
        with self._lock:
            return sum(1 for q in self._questions if q.researched)

    # ------------------------------------------------------------------
    # Evidence and insights
    # ------------------------------------------------------------------

    def add_citations(self, question_id: str, citations: list[CitationResult]) -> int:
        """Merge evidence for a question, keeping the first copy of each URL.

        Returns:
            Number of citations newly stored.
        """
        with self._lock:
            stored = self._citations.setdefault(question_id, [])
            known = {c.url for c in stored}
            added = 0
            for citation in citations:
                if citation.url in known:
                    continue
                known.add(citation.url)
                stored.append(citation)
                added += 1
            stored.sort(key=lambda c: c.relevance_score, reverse=True)
            return added

    def citations_for(self, question_id: str) -> list[CitationResult]:
        with self._lock:
            return list(self._citations.get(question_id, []))

    def all_citations(self) -> list[CitationResult]:
        """Every stored citation, first copy of each URL, in insertion order."""
        with self._lock:
            seen: set[str] = set()
            result = []
            for question in self._questions:
                for citation in self._citations.get(question.id, []):
                    if citation.url not in seen:
                        seen.add(citation.url)
                        result.append(citation)
            return result

    def citations_snapshot(self) -> dict[str, list[CitationResult]]:
        with self._lock:
            return {qid: list(items) for qid, items in self._citations.items() if items}

    def set_insight(self, question_id: str, insight: str) -> None:
        with self._lock:
            self._insights[question_id] = insight

    def insight_for(self, question_id: str) -> Optional[str]:
        with self._lock:
            return self._insights.get(question_id)

    def insights_snapshot(self) -> dict[str, str]:
        with self._lock:
            return dict(self._insights)

    # ------------------------------------------------------------------
    # Cross references
    # ------------------------------------------------------------------

    def add_relationships(self, relationships: dict[str, set[str]]) -> None:
        with self._lock:
            for concept, related in relationships.items():
                self._relationships.setdefault(concept, set()).update(related)

    def relationships_snapshot(self) -> dict[str, list[str]]:
        with self._lock:
            return {k: sorted(v) for k, v in self._relationships.items()}

    def related_to(self, concept: str) -> list[str]:
        with self._lock:
            return sorted(self._relationships.get(concept, set()))

    def add_inconsistencies(self, items: list[str]) -> None:
        with self._lock:
            for item in items:
                if item not in self._inconsistencies:
                    self._inconsistencies.append(item)

    @property
    def inconsistencies(self) -> list[str]:
        with self._lock:
            return list(self._inconsistencies)
