"""
Unit tests for deepresearch.research.knowledge.

Tests the concept graph, related-concept lookup, result history and
file-backed persistence with TTL expiry.
"""

import os
import time
from unittest.mock import MagicMock

import pytest

from deepresearch.config import StorageSettings
from deepresearch.research.knowledge import (
    FileStorageBackend,
    InMemoryKnowledgeStore,
    jaccard_similarity,
)
from deepresearch.research.models import ResearchQuestion, ResearchResult


def _age(path, hours):
    stamp = time.time() - hours * 3600
    os.utime(path, (stamp, stamp))


# =============================================================================
# Concept Graph
# =============================================================================


class TestJaccard:
    def test_identical(self):
        assert jaccard_similarity("Event sourcing", "event SOURCING") == 1.0

    def test_partial(self):
        assert jaccard_similarity("a b c", "b c d") == pytest.approx(0.5)

    def test_empty(self):
        assert jaccard_similarity("", "") == 0.0


class TestConceptGraph:
    """Test update_knowledge and find_related_concepts."""

    def test_update_and_get(self, make_citation):
        store = InMemoryKnowledgeStore()
        question = ResearchQuestion(text="What is CQRS?")
        store.update_knowledge(question, "CQRS splits reads and writes", [make_citation()])

        assert store.get_knowledge("What is CQRS?") == "CQRS splits reads and writes"
        assert len(store.get_sources("What is CQRS?")) == 1
        assert store.get_sources("unknown") == []

    def test_similar_insights_linked_both_ways(self):
        store = InMemoryKnowledgeStore()
        store.update_knowledge(
            ResearchQuestion(text="What is CQRS?"), "separate read and write models", []
        )
        store.update_knowledge(
            ResearchQuestion(text="Why separate models?"), "separate read and write paths", []
        )
        store.update_knowledge(ResearchQuestion(text="Who wrote jazz?"), "Duke Ellington", [])

        assert store.find_related_concepts("What is CQRS?") == ["Why separate models?"]
        assert store.find_related_concepts("Why separate models?") == ["What is CQRS?"]
        assert store.find_related_concepts("Who wrote jazz?") == []

    def test_unknown_text_compared_directly(self):
        store = InMemoryKnowledgeStore()
        store.update_knowledge(
            ResearchQuestion(text="How do snapshots work?"), "snapshots bound replay", []
        )

        assert store.find_related_concepts("snapshots bound replay time") == [
            "How do snapshots work?"
        ]
        assert store.find_related_concepts("snapshots bound replay time", min_score=0.9) == []

    def test_refresh_keeps_concept(self):
        store = InMemoryKnowledgeStore()
        question = ResearchQuestion(text="What is CQRS?")
        store.update_knowledge(question, "first", [])
        store.update_knowledge(question, "second", [])

        assert store.get_knowledge("What is CQRS?") == "second"
        assert store.get_statistics()["concepts"] == 1

    def test_results_capped_at_ten(self):
        store = InMemoryKnowledgeStore()
        for i in range(15):
            store.update_knowledge(ResearchQuestion(text=f"Topic {i}?"), "shared insight words", [])

        assert len(store.find_related_concepts("Topic 0?")) == 10


# =============================================================================
# Result History
# =============================================================================


class TestResultHistory:
    """Test store_result and get_result."""

    def test_in_memory(self):
        store = InMemoryKnowledgeStore()
        result = ResearchResult(session_id="s1", query="event sourcing")
        store.store_result("s1", result)

        assert store.get_result("s1") is result
        assert store.get_result("missing") is None
        assert store.get_statistics()["results"] == 1

    def test_persisted_result_survives_new_store(self, tmp_path):
        settings = StorageSettings(enabled=True, results_dir=tmp_path)
        InMemoryKnowledgeStore.from_settings(settings).store_result(
            "deep-research-1", ResearchResult(session_id="deep-research-1", query="kafka", report="# R")
        )

        loaded = InMemoryKnowledgeStore.from_settings(settings).get_result("deep-research-1")

        assert loaded is not None
        assert loaded.report == "# R"

    def test_disabled_storage(self, tmp_path):
        store = InMemoryKnowledgeStore.from_settings(StorageSettings(results_dir=tmp_path))
        assert store.storage is None

    def test_persist_failure_logged_not_raised(self, caplog):
        storage = MagicMock()
        storage.save.side_effect = OSError("disk full")
        store = InMemoryKnowledgeStore(storage=storage)

        store.store_result("s1", ResearchResult(session_id="s1", query="q"))

        assert store.get_result("s1") is not None
        assert "Failed to persist result s1" in caplog.text

    def test_expired_results_evicted(self):
        now = [1000.0]
        store = InMemoryKnowledgeStore(result_ttl_seconds=60, clock=lambda: now[0])
        store.store_result("old", ResearchResult(session_id="old", query="q"))
        now[0] += 30
        store.store_result("new", ResearchResult(session_id="new", query="q"))

        now[0] += 45

        assert store.get_result("old") is None
        assert store.get_result("new") is not None
        assert store.get_statistics()["results"] == 1

    def test_oldest_results_evicted_beyond_cap(self):
        store = InMemoryKnowledgeStore(max_results=2)
        for session_id in ("s1", "s2", "s3"):
            store.store_result(session_id, ResearchResult(session_id=session_id, query="q"))

        assert store.get_result("s1") is None
        assert store.get_result("s2") is not None
        assert store.get_result("s3") is not None
        assert store.get_statistics()["results"] == 2

    def test_restoring_refreshes_position(self):
        store = InMemoryKnowledgeStore(max_results=2)
        store.store_result("s1", ResearchResult(session_id="s1", query="q"))
        store.store_result("s2", ResearchResult(session_id="s2", query="q"))
        store.store_result("s1", ResearchResult(session_id="s1", query="q", report="# v2"))
        store.store_result("s3", ResearchResult(session_id="s3", query="q"))

        assert store.get_result("s2") is None
        assert store.get_result("s1").report == "# v2"

    def test_evicted_result_loaded_from_disk(self, tmp_path):
        settings = StorageSettings(enabled=True, results_dir=tmp_path, max_cached_results=1)
        store = InMemoryKnowledgeStore.from_settings(settings)
        store.store_result("s1", ResearchResult(session_id="s1", query="q", report="# one"))
        store.store_result("s2", ResearchResult(session_id="s2", query="q"))

        assert store.get_statistics()["results"] == 1
        assert store.get_result("s1").report == "# one"

    def test_from_settings_bounds_cache(self):
        store = InMemoryKnowledgeStore.from_settings(
            StorageSettings(ttl_hours=2, max_cached_results=5)
        )
        assert store.result_ttl_seconds == 7200
        assert store.max_results == 5


# =============================================================================
# File Storage
# =============================================================================


class TestFileStorageBackend:
    """Test FileStorageBackend."""

    @pytest.fixture
    def backend(self, tmp_path):
        return FileStorageBackend(tmp_path / "results", ResearchResult, ttl_hours=1)

    def test_save_load_delete(self, backend):
        backend.save("s1", ResearchResult(session_id="s1", query="q"))

        assert backend.load("s1").session_id == "s1"
        assert backend.list_ids() == ["s1"]
        assert backend.delete("s1") is True
        assert backend.load("s1") is None
        assert backend.delete("s1") is False

    def test_ids_sanitized(self, backend):
        path = backend._get_file_path("../../etc/passwd")
        assert path.parent == backend.storage_path
        assert path.name == "etcpasswd.json"

    def test_expired_item_removed_on_load(self, backend):
        backend.save("old", ResearchResult(session_id="old", query="q"))
        _age(backend._get_file_path("old"), hours=2)

        assert backend.load("old") is None
        assert not backend._get_file_path("old").exists()

    def test_cleanup_expired(self, backend):
        backend.save("old", ResearchResult(session_id="old", query="q"))
        backend.save("new", ResearchResult(session_id="new", query="q"))
        _age(backend._get_file_path("old"), hours=2)

        assert backend.list_ids() == ["new"]
        assert backend.cleanup_expired() == 1
        assert backend.list_ids() == ["new"]

    def test_no_ttl_never_expires(self, tmp_path):
        backend = FileStorageBackend(tmp_path, ResearchResult, ttl_hours=None)
        backend.save("s1", ResearchResult(session_id="s1", query="q"))
        _age(backend._get_file_path("s1"), hours=1000)

        assert backend.load("s1") is not None
        assert backend.cleanup_expired() == 0

    def test_corrupt_file_returns_none(self, backend):
        backend._get_file_path("bad").write_text("{not json")
        assert backend.load("bad") is None
