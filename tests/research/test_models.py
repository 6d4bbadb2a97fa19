"""
Unit tests for deepresearch.research.models.

Tests question identity and derived properties, citation validation and
score clamping, depth and phase tables, and session config validation.
"""

import pytest
from pydantic import ValidationError

from deepresearch.errors import ConfigurationError
from deepresearch.research.models import (
    CitationResult,
    GapAnalysis,
    Priority,
    ResearchConfig,
    ResearchDepth,
    ResearchPhase,
    ResearchQuestion,
    ResearchResult,
    clamp_score,
    extract_domain,
    extract_keywords,
)


# =============================================================================
# Helper Functions
# =============================================================================


class TestHelpers:
    """Test keyword, domain and score helpers."""

    def test_extract_keywords_filters_short_and_stop_words(self):
        words = extract_keywords("What are the benefits of event sourcing with Kafka?")
        assert words == ["benefits", "event", "sourcing", "kafka"]

    def test_extract_keywords_empty(self):
        assert extract_keywords("") == []

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("https://www.Example.com/path", "example.com"),
            ("http://docs.python.org:8080/3/", "docs.python.org"),
            ("arxiv.org/abs/1234", "arxiv.org"),
        ],
    )
    def test_extract_domain(self, url, expected):
        assert extract_domain(url) == expected

    @pytest.mark.parametrize(
        "value,expected",
        [(1.5, 1.0), (-0.2, 0.0), (float("nan"), 0.0), ("0.4", 0.4), (None, 0.0)],
    )
    def test_clamp_score(self, value, expected):
        assert clamp_score(value) == expected


# =============================================================================
# Enum Tests
# =============================================================================


class TestEnums:
    """Test the lookup tables carried by the enums."""

    def test_priority_rank(self):
        assert [p.rank for p in (Priority.LOW, Priority.MEDIUM, Priority.HIGH)] == [1, 2, 3]

    @pytest.mark.parametrize(
        "text,expected",
        [("High", Priority.HIGH), ("low priority", Priority.LOW), ("urgent", Priority.MEDIUM)],
    )
    def test_priority_parse(self, text, expected):
        assert Priority.parse(text) == expected

    def test_depth_tables(self):
        assert [d.result_cap for d in ResearchDepth] == [8, 15, 25, 40]
        assert [d.min_evidence for d in ResearchDepth] == [10, 15, 20, 25]

    def test_phase_milestones(self):
        phases = list(ResearchPhase)[:-1]
        assert [p.milestone for p in phases] == [20, 50, 75, 85, 90, 100]
        assert ResearchPhase.INITIAL_ANALYSIS.start_percentage == 0
        assert ResearchPhase.DEEP_DIVE.start_percentage == 50

    def test_phase_next_stops_at_done(self):
        assert ResearchPhase.SYNTHESIS.next() == ResearchPhase.REPORT_GENERATION
        assert ResearchPhase.DONE.next() == ResearchPhase.DONE


# =============================================================================
# Question Tests
# =============================================================================


class TestResearchQuestion:
    """Test ResearchQuestion."""

    def test_equality_ignores_id(self):
        a = ResearchQuestion(text="What is CQRS?", category="architecture")
        b = ResearchQuestion(text="What is CQRS?", category="architecture")
        assert a.id != b.id
        assert a == b
        assert len({a, b}) == 1

    def test_priority_is_part_of_identity(self):
        a = ResearchQuestion(text="What is CQRS?", priority=Priority.HIGH)
        b = ResearchQuestion(text="What is CQRS?", priority=Priority.LOW)
        assert a != b

    def test_blank_text_rejected(self):
        with pytest.raises(ValidationError):
            ResearchQuestion(text="   ")

    def test_text_is_frozen(self):
        question = ResearchQuestion(text="What is CQRS?")
        with pytest.raises(ValidationError):
            question.text = "changed"

    def test_category_normalized(self):
        assert ResearchQuestion(text="x y", category="  Performance ").category == "performance"

    def test_complexity_and_deep_research(self):
        simple = ResearchQuestion(text="What is Kafka?", priority=Priority.LOW)
        analytical = ResearchQuestion(
            text="Compare and evaluate Kafka against Pulsar for event sourcing workloads",
            priority=Priority.MEDIUM,
        )
        assert simple.requires_deep_research is False
        assert analytical.complexity_score > 0.6
        assert analytical.requires_deep_research is True

    def test_search_queries_deterministic(self):
        question = ResearchQuestion(
            text="How does event sourcing handle schema evolution?",
            category="architecture",
            priority=Priority.HIGH,
        )
        first = question.search_queries()
        assert first == question.search_queries()
        assert first[0] == question.text
        assert "does event sourcing handle" in first
        assert f"{question.text} detailed analysis" in first

    def test_mark_researched(self):
        question = ResearchQuestion(text="What is CQRS?")
        question.mark_researched()
        assert question.researched is True
        assert question.researched_at is not None


# =============================================================================
# Citation Tests
# =============================================================================


class TestCitationResult:
    """Test CitationResult validation."""

    def test_url_required(self):
        with pytest.raises(ValidationError):
            CitationResult(url="  ")

    def test_domain_derived_from_url(self):
        citation = CitationResult(url="https://www.martinfowler.com/eaaDev/EventSourcing.html")
        assert citation.domain == "martinfowler.com"

    def test_score_clamped_on_assignment(self, make_citation):
        citation = make_citation(score=0.5)
        citation.relevance_score = 3.0
        assert citation.relevance_score == 1.0

    def test_is_valid_requires_content(self, make_citation):
        assert make_citation().is_valid() is True
        assert make_citation(content="short").is_valid() is False

    def test_with_score_copies(self, make_citation):
        original = make_citation(score=0.5)
        boosted = original.with_score(0.9, boosted=True)
        assert boosted.relevance_score == 0.9
        assert boosted.metadata["boosted"] is True
        assert original.relevance_score == 0.5
        assert "boosted" not in original.metadata


# =============================================================================
# Config and Result Tests
# =============================================================================


class TestResearchConfig:
    """Test ResearchConfig presets and validation."""

    def test_presets(self):
        assert ResearchConfig.basic().enable_deep_dive is False
        assert ResearchConfig.expert().depth == ResearchDepth.EXPERT
        assert ResearchConfig.standard(max_sources=5).max_sources == 5

    @pytest.mark.parametrize(
        "overrides,field",
        [
            ({"max_sources": 0}, "max_sources"),
            ({"max_questions": 0}, "max_questions"),
            ({"max_processing_time": 0}, "max_processing_time"),
            ({"min_relevance_score": 1.5}, "min_relevance_score"),
        ],
    )
    def test_validate_for_session_rejects(self, overrides, field):
        with pytest.raises(ConfigurationError) as exc_info:
            ResearchConfig(**overrides).validate_for_session()
        assert exc_info.value.field == field

    def test_deep_dive_question_cap(self):
        assert ResearchConfig(max_questions=12).deep_dive_question_cap == 6
        assert ResearchConfig(max_questions=1).deep_dive_question_cap == 1


class TestGapAnalysis:
    def test_should_continue(self):
        assert GapAnalysis(gaps=["missing"], coverage_score=0.5).should_continue is True
        assert GapAnalysis(gaps=["missing"], coverage_score=0.9).should_continue is False
        assert GapAnalysis(coverage_score=0.1).should_continue is False


class TestResearchResult:
    def test_all_citations_dedup_keeps_best(self, make_citation):
        result = ResearchResult(
            session_id="s1",
            query="event sourcing",
            citations={
                "q1": [make_citation(url="https://a.com", score=0.4)],
                "q2": [
                    make_citation(url="https://a.com", score=0.9),
                    make_citation(url="https://b.com", score=0.6),
                ],
            },
        )
        citations = result.all_citations()
        assert [c.url for c in citations] == ["https://a.com", "https://b.com"]
        assert citations[0].relevance_score == 0.9
