"""Knowledge store shared across sessions, with optional result persistence.

The concept graph is additive: concepts, insights and relationships are only
ever added or refreshed, never removed. Finished results are kept in a
bounded in-memory cache (expired or oldest entries evicted first) and, when a
results directory is configured, written to disk as one JSON file per session
using file locking.
"""

import json
import logging
import re
import threading
import time
from collections import OrderedDict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Generic, Optional, TypeVar

from filelock import FileLock

from deepresearch.config import StorageSettings
from deepresearch.research.models import CitationResult, ResearchQuestion, ResearchResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

RELATIONSHIP_THRESHOLD = 0.3
MAX_RELATED_CONCEPTS = 10
LOCK_TIMEOUT = 10
DEFAULT_MAX_RESULTS = 100

_WORD_SPLIT = re.compile(r"\W+")


def jaccard_similarity(first: str, second: str) -> float:
    words1 = {w for w in _WORD_SPLIT.split(first.lower()) if w}
    words2 = {w for w in _WORD_SPLIT.split(second.lower()) if w}
    union = words1 | words2
    if not union:
        return 0.0
    return len(words1 & words2) / len(union)


class FileStorageBackend(Generic[T]):
    """File-based storage for pydantic models with locking and TTL support."""

    def __init__(
        self,
        storage_path: Path,
        model_class: type[T],
        ttl_hours: Optional[int] = 24,
    ) -> None:
        """Initialize storage backend.

        Args:
            storage_path: Directory to store files
            model_class: Pydantic model class for serialization
            ttl_hours: Time-to-live in hours (None for no expiry)
        """
        self.storage_path = storage_path
        self.model_class = model_class
        self.ttl_hours = ttl_hours
        self.storage_path.mkdir(parents=True, exist_ok=True)

    def _get_file_path(self, item_id: str) -> Path:
        # Sanitize ID to prevent path traversal
        safe_id = "".join(c for c in item_id if c.isalnum() or c in "-_")
        return self.storage_path / f"{safe_id}.json"

    def _get_lock_path(self, item_id: str) -> Path:
        return self._get_file_path(item_id).with_suffix(".lock")

    def _is_expired(self, file_path: Path) -> bool:
        if self.ttl_hours is None:
            return False
        try:
            mtime = datetime.fromtimestamp(file_path.stat().st_mtime)
        except OSError:
            return True
        return datetime.now() > mtime + timedelta(hours=self.ttl_hours)

    def save(self, item_id: str, item: T) -> None:
        file_path = self._get_file_path(item_id)
        with FileLock(self._get_lock_path(item_id), timeout=LOCK_TIMEOUT):
            data = item.model_dump(mode="json")
            file_path.write_text(json.dumps(data, indent=2, default=str))
        logger.debug("Saved %s to %s", item_id, file_path)

    def load(self, item_id: str) -> Optional[T]:
        """Load an item; None when missing, expired or unreadable."""
        file_path = self._get_file_path(item_id)
        if not file_path.exists():
            return None
        if self._is_expired(file_path):
            logger.debug("Item %s has expired, removing", item_id)
            self.delete(item_id)
            return None

        with FileLock(self._get_lock_path(item_id), timeout=LOCK_TIMEOUT):
            try:
                data = json.loads(file_path.read_text())
                return self.model_class.model_validate(data)
            except (json.JSONDecodeError, ValueError) as exc:
                logger.warning("Failed to load %s: %s", item_id, exc)
                return None

    def delete(self, item_id: str) -> bool:
        file_path = self._get_file_path(item_id)
        lock_path = self._get_lock_path(item_id)
        if not file_path.exists():
            return False

        with FileLock(lock_path, timeout=LOCK_TIMEOUT):
            try:
                file_path.unlink()
            except OSError as exc:
                logger.warning("Failed to delete %s: %s", item_id, exc)
                return False
        if lock_path.exists():
            lock_path.unlink()
        logger.debug("Deleted %s", item_id)
        return True

    def list_ids(self) -> list[str]:
        """IDs of stored, unexpired items."""
        if not self.storage_path.exists():
            return []
        return sorted(
            path.stem for path in self.storage_path.glob("*.json") if not self._is_expired(path)
        )

    def cleanup_expired(self) -> int:
        if self.ttl_hours is None:
            return 0
        removed = 0
        for file_path in self.storage_path.glob("*.json"):
            if self._is_expired(file_path) and self.delete(file_path.stem):
                removed += 1
        return removed


class InMemoryKnowledgeStore:
    """Thread-safe concept graph plus result history.

    Concepts are question texts. Two concepts are related when their insight
    texts have a Jaccard word similarity above 0.3.

    Finished results are cached for ``result_ttl_seconds`` (None keeps them
    until pushed out) and at most ``max_results`` are held; eviction happens
    on every store and lookup. Evicted results are still loaded from the
    storage backend when one is configured.
    """

    def __init__(
        self,
        storage: Optional[FileStorageBackend[ResearchResult]] = None,
        *,
        result_ttl_seconds: Optional[float] = None,
        max_results: int = DEFAULT_MAX_RESULTS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock = threading.RLock()
        self._knowledge: dict[str, str] = {}
        self._sources: dict[str, list[CitationResult]] = {}
        self._relationships: dict[str, dict[str, float]] = {}
        self._results: OrderedDict[str, tuple[float, ResearchResult]] = OrderedDict()
        self.storage = storage
        self.result_ttl_seconds = result_ttl_seconds
        self.max_results = max(1, max_results)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: StorageSettings) -> "InMemoryKnowledgeStore":
        """Store persisting results under ``settings`` when storage is enabled."""
        storage = None
        if settings.enabled:
            storage = FileStorageBackend(
                settings.get_results_dir(), ResearchResult, ttl_hours=settings.ttl_hours
            )
        ttl = settings.ttl_hours * 3600 if settings.ttl_hours is not None else None
        return cls(
            storage=storage,
            result_ttl_seconds=ttl,
            max_results=settings.max_cached_results,
        )

    def update_knowledge(
        self,
        question: ResearchQuestion,
        insight: str,
        evidence: list[CitationResult],
    ) -> None:
        concept = question.text
        with self._lock:
            self._knowledge[concept] = insight
            if evidence:
                self._sources[concept] = list(evidence)
            links = self._relationships.setdefault(concept, {})
            for other, other_insight in self._knowledge.items():
                if other == concept:
                    continue
                similarity = jaccard_similarity(insight, other_insight)
                if similarity > RELATIONSHIP_THRESHOLD:
                    links[other] = similarity
                    self._relationships.setdefault(other, {})[concept] = similarity
        logger.debug("Updated knowledge for %r", concept[:60])

    def find_related_concepts(self, text: str, min_score: float = RELATIONSHIP_THRESHOLD) -> list[str]:
        """Up to ten related concepts, most similar first.

        Known concepts use the recorded relationships; other text is compared
        against stored concepts and insights directly.
        """
        with self._lock:
            links = self._relationships.get(text)
            if links is None:
                links = {}
                for concept, insight in self._knowledge.items():
                    score = max(jaccard_similarity(text, concept), jaccard_similarity(text, insight))
                    if score > 0:
                        links[concept] = score
            ranked = sorted(
                ((c, s) for c, s in links.items() if s >= min_score),
                key=lambda item: item[1],
                reverse=True,
            )
        return [concept for concept, _ in ranked[:MAX_RELATED_CONCEPTS]]

    def get_knowledge(self, concept: str) -> Optional[str]:
        with self._lock:
            return self._knowledge.get(concept)

    def get_sources(self, concept: str) -> list[CitationResult]:
        with self._lock:
            return list(self._sources.get(concept, []))

    def _evict_results(self) -> int:
        """Drop expired results, then the oldest beyond ``max_results``. Caller holds the lock."""
        evicted = 0
        if self.result_ttl_seconds is not None:
            cutoff = self._clock() - self.result_ttl_seconds
            while self._results:
                session_id, (stored_at, _) = next(iter(self._results.items()))
                if stored_at > cutoff:
                    break
                del self._results[session_id]
                evicted += 1
        while len(self._results) > self.max_results:
            self._results.popitem(last=False)
            evicted += 1
        if evicted:
            logger.debug("Evicted %d cached results", evicted)
        return evicted

    def store_result(self, session_id: str, result: ResearchResult) -> None:
        with self._lock:
            self._results.pop(session_id, None)
            self._results[session_id] = (self._clock(), result)
            self._evict_results()
        if self.storage is not None:
            try:
                self.storage.save(session_id, result)
            except (OSError, TimeoutError, TypeError, ValueError) as exc:
                logger.warning("Failed to persist result %s: %s", session_id, exc)

    def get_result(self, session_id: str) -> Optional[ResearchResult]:
        """Result from memory, or from disk when persisted by an earlier process."""
        with self._lock:
            self._evict_results()
            entry = self._results.get(session_id)
        result = entry[1] if entry is not None else None
        if result is None and self.storage is not None:
            result = self.storage.load(session_id)
        return result

    def get_statistics(self) -> dict[str, int]:
        with self._lock:
            self._evict_results()
            return {
                "concepts": len(self._knowledge),
                "relationships": sum(len(v) for v in self._relationships.values()),
                "results": len(self._results),
            }
