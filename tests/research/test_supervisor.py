"""
Unit tests for deepresearch.research.supervisor.

Tests query planning, rate-limited retrying search, screening,
refinement and the research entry point against fake collaborators.
"""

import itertools
from unittest.mock import AsyncMock, MagicMock

import pytest

from deepresearch.core.resilience import CircuitBreaker
from deepresearch.errors import AuthenticationError, ClientError, SearchError, SessionCancelled
from deepresearch.research.chunker import ContextAwareChunker
from deepresearch.research.context import SessionContext
from deepresearch.research.models import (
    OutputKind,
    Priority,
    ResearchConfig,
    ResearchQuery,
    ResearchQuestion,
)
from deepresearch.research.supervisor import (
    ResearchSupervisor,
    analyze_gaps,
    deduplicate,
    deep_dive_queries,
    fallback_queries,
    gap_filling_queries,
    is_acceptable_source,
    merge_results,
    prioritize_queries,
    reformulate_query,
    title_similarity,
)

QUESTION = ResearchQuestion(text="How does event sourcing handle snapshots?")

QUERY_PLAN = """
QUERY: event sourcing snapshots
TYPE: Technical
PRIORITY: High
QUERY: snapshot frequency tradeoffs
PRIORITY: Medium
QUERY: event store snapshot support
PRIORITY: Low
QUERY: aggregate replay performance
PRIORITY: High
"""


@pytest.fixture
def context():
    return SessionContext("deep-research-1", "event sourcing", config=ResearchConfig())


@pytest.fixture
def numbered_results(make_citation):
    """Search results function producing distinct sources per call."""
    counter = itertools.count()

    def _results(query):
        items = []
        for _ in range(3):
            n = next(counter)
            items.append(
                make_citation(
                    url=f"https://docs.site{n}.org/page",
                    title=f"Article {n}",
                    score=0.5 + (n % 5) / 10,
                )
            )
        return items

    return _results


def _supervisor(completion, search, fast_settings, **kwargs):
    return ResearchSupervisor(completion, search, settings=fast_settings.search, **kwargs)


# =============================================================================
# Pure Helpers
# =============================================================================


class TestHelpers:
    """Test the pure query and evidence helpers."""

    def test_reformulate_query(self):
        assert reformulate_query("event sourcing", 0) == "event sourcing tutorial"
        assert reformulate_query("event sourcing", 1) == "event sourcing guide"
        assert reformulate_query("event sourcing", 2) == "event AND sourcing"
        assert reformulate_query("event sourcing", 3) == "event sourcing"

    def test_title_similarity(self):
        assert title_similarity("Event Sourcing Basics", "event sourcing basics") == 1.0
        assert title_similarity("", "anything") == 0.0
        assert title_similarity("alpha beta", "gamma delta") == 0.0

    def test_deduplicate_by_url_and_title(self, make_citation):
        items = [
            make_citation(url="https://a.com", title="Event sourcing basics explained"),
            make_citation(url="https://a.com", title="Different"),
            make_citation(url="https://b.com", title="event sourcing basics explained"),
            make_citation(url="https://c.com", title="Snapshots in practice"),
        ]
        assert [c.url for c in deduplicate(items)] == ["https://a.com", "https://c.com"]

    def test_merge_results_sorted(self, make_citation):
        merged = merge_results(
            [make_citation(url="https://a.com", title="A", score=0.4)],
            [make_citation(url="https://b.com", title="B", score=0.9)],
        )
        assert [c.url for c in merged] == ["https://b.com", "https://a.com"]

    @pytest.mark.parametrize(
        "url,score,expected",
        [
            ("https://en.wikipedia.org/wiki/Event", 0.3, True),
            ("https://example.net/post", 0.7, True),
            ("https://example.net/post", 0.5, False),
            ("https://www.pinterest.com/pin/1", 0.9, False),
            ("https://www.reddit.com/r/programming/x", 0.9, False),
        ],
    )
    def test_is_acceptable_source(self, make_citation, url, score, expected):
        assert is_acceptable_source(make_citation(url=url, score=score)) is expected

    def test_prioritize_queries(self):
        queries = [
            ResearchQuery(text="b", priority=Priority.LOW),
            ResearchQuery(text="a", priority=Priority.HIGH),
            ResearchQuery(text="A ", priority=Priority.MEDIUM),
            ResearchQuery(text="c", priority=Priority.MEDIUM),
        ]
        assert [q.text for q in prioritize_queries(queries, 2)] == ["a", "c"]

    def test_fallback_queries(self):
        queries = fallback_queries(QUESTION)
        assert [q.query_type for q in queries] == ["Basic", "Tutorial", "Implementation"]
        assert queries[0].priority == Priority.HIGH

    def test_deep_dive_queries_include_advanced_pass(self):
        question = ResearchQuestion(text="Why snapshot?", priority=Priority.LOW)
        queries = deep_dive_queries(question, "event sourcing")
        assert [q.text for q in queries] == ["event sourcing Why snapshot? advanced analysis"]

    def test_deep_dive_queries_for_complex_question(self):
        question = ResearchQuestion(text="Compare snapshot strategies", priority=Priority.HIGH)
        queries = deep_dive_queries(question, "event sourcing")
        assert 2 <= len(queries) <= 6
        assert all(q.priority == Priority.HIGH for q in queries)


class TestGapAnalysis:
    """Test analyze_gaps and gap_filling_queries."""

    def test_empty_results_all_gaps(self):
        analysis = analyze_gaps([], QUESTION)
        assert analysis.coverage_score == 0.0
        assert analysis.needs_source_diversity is True
        assert len(analysis.gaps) == 5

    def test_covered_areas(self, make_citation):
        content = "overview examples analysis recommendations " * 5
        results = [make_citation(url=f"https://s{i}.com", content=content) for i in range(3)]

        analysis = analyze_gaps(results, QUESTION)

        assert analysis.coverage_score == 1.0
        assert analysis.gaps == []
        assert analysis.should_continue is False

    def test_category_specific_areas(self):
        question = ResearchQuestion(text="Tune replay speed", category="performance")
        assert "benchmarks" in analyze_gaps([], question).coverage

    def test_gap_filling_queries(self):
        question = ResearchQuestion(text="Tune replay speed", category="performance")
        queries = gap_filling_queries(analyze_gaps([], question), question)
        texts = [q.text for q in queries]
        assert "Tune replay speed performance benchmark comparison" in texts
        assert "Tune replay speed academic research paper" in texts
        assert all(q.query_type == "Gap-Fill" for q in queries)


# =============================================================================
# Query Planning
# =============================================================================


class TestPlanQueries:
    """Test plan_queries."""

    @pytest.mark.asyncio
    async def test_uses_model_plan(self, fake_completion, fake_search, fast_settings, context):
        completion = fake_completion({OutputKind.QUERY_PLAN: QUERY_PLAN})
        supervisor = _supervisor(completion, fake_search(), fast_settings)

        queries = await supervisor.plan_queries(QUESTION, context)

        assert [q.priority for q in queries] == [
            Priority.HIGH,
            Priority.HIGH,
            Priority.MEDIUM,
            Priority.LOW,
        ]
        assert queries[0].text == "event sourcing snapshots"

    @pytest.mark.asyncio
    async def test_falls_back_when_model_fails(
        self, fake_completion, fake_search, fast_settings, context
    ):
        completion = fake_completion({OutputKind.QUERY_PLAN: ClientError("offline")})
        supervisor = _supervisor(completion, fake_search(), fast_settings)

        queries = await supervisor.plan_queries(QUESTION, context)

        assert [q.text for q in queries] == [q.text for q in fallback_queries(QUESTION)]

    @pytest.mark.asyncio
    async def test_pads_short_plan(self, fake_completion, fake_search, fast_settings, context):
        completion = fake_completion({OutputKind.QUERY_PLAN: "QUERY: snapshot tuning\n"})
        supervisor = _supervisor(completion, fake_search(), fast_settings)

        queries = await supervisor.plan_queries(QUESTION, context)

        assert "snapshot tuning" in [q.text for q in queries]
        assert len(queries) == 4

    @pytest.mark.asyncio
    async def test_oversized_prompt_planned_per_window(
        self, fake_completion, fake_search, fast_settings
    ):
        """Each window is planned separately and the queries are merged without repeats."""
        counter = itertools.count()

        def plan(prompt):
            n = next(counter)
            return (
                f"QUERY: window query {n}\nPRIORITY: High\n"
                "QUERY: shared snapshot query\nPRIORITY: High\n"
            )

        completion = fake_completion({OutputKind.QUERY_PLAN: plan})
        chunker = ContextAwareChunker(context_limit=120, response_reserve=20)
        supervisor = _supervisor(completion, fake_search(), fast_settings, chunker=chunker)
        long_query = " ".join(f"Consider snapshot policy {i}." for i in range(20))
        context = SessionContext("deep-research-1", long_query, config=ResearchConfig())

        queries = await supervisor.plan_queries(QUESTION, context)

        calls = len(completion.calls_for(OutputKind.QUERY_PLAN))
        texts = [q.text for q in queries]
        assert calls > 1
        assert all(len(p) <= chunker.prompt_budget * 4 + 3
                   for p in completion.calls_for(OutputKind.QUERY_PLAN))
        assert texts.count("shared snapshot query") == 1
        assert "window query 0" in texts
        assert "window query 1" in texts

    @pytest.mark.asyncio
    async def test_failed_window_keeps_other_windows(
        self, fake_completion, fake_search, fast_settings
    ):
        calls = itertools.count()

        def plan(prompt):
            if next(calls) == 0:
                raise ClientError("window rejected")
            return "QUERY: surviving query\nPRIORITY: High\n"

        completion = fake_completion({OutputKind.QUERY_PLAN: plan})
        chunker = ContextAwareChunker(context_limit=120, response_reserve=20)
        supervisor = _supervisor(completion, fake_search(), fast_settings, chunker=chunker)
        long_query = " ".join(f"Consider snapshot policy {i}." for i in range(20))
        context = SessionContext("deep-research-1", long_query, config=ResearchConfig())

        queries = await supervisor.plan_queries(QUESTION, context)

        assert "surviving query" in [q.text for q in queries]


# =============================================================================
# Search Execution
# =============================================================================


class TestExecuteQuery:
    """Test execute_query."""

    @pytest.mark.asyncio
    async def test_screens_results(self, fake_completion, fast_settings, make_citation):
        search = MagicMock()
        search.search = AsyncMock(
            return_value=[
                make_citation(url="https://docs.python.org/a", title="A", score=0.4),
                make_citation(url="https://example.net/b", title="B", score=0.4),
                make_citation(url="https://docs.python.org/c", title="C", content="short"),
                make_citation(url="https://docs.python.org/d", title="D", score=0.1),
            ]
        )
        supervisor = _supervisor(fake_completion(), search, fast_settings)

        results = await supervisor.execute_query(ResearchQuery(text="q"), ResearchConfig())

        assert [c.url for c in results] == ["https://docs.python.org/a"]

    @pytest.mark.asyncio
    async def test_retries_transient_failure(self, fake_completion, fast_settings, make_citation):
        search = MagicMock()
        search.search = AsyncMock(
            side_effect=[SearchError("flaky"), [make_citation(url="https://docs.x.org")]]
        )
        supervisor = _supervisor(fake_completion(), search, fast_settings)

        results = await supervisor.execute_query(ResearchQuery(text="q"), ResearchConfig())

        assert len(results) == 1
        assert search.search.await_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_return_empty(
        self, fake_completion, failing_search, fast_settings
    ):
        supervisor = _supervisor(fake_completion(), failing_search, fast_settings)

        results = await supervisor.execute_query(ResearchQuery(text="q"), ResearchConfig())

        assert results == []
        assert failing_search.queries == ["q", "q"]
        assert supervisor.breaker.failure_count == 2

    @pytest.mark.asyncio
    async def test_authentication_not_retried(self, fake_completion, fake_search, fast_settings):
        search = fake_search(error=AuthenticationError(provider="fake"))
        supervisor = _supervisor(fake_completion(), search, fast_settings)

        assert await supervisor.execute_query(ResearchQuery(text="q"), ResearchConfig()) == []
        assert search.queries == ["q"]

    @pytest.mark.asyncio
    async def test_open_breaker_skips_search(self, fake_completion, fake_search, fast_settings):
        search = fake_search()
        breaker = CircuitBreaker(name="search", failure_threshold=1, recovery_timeout=60)
        breaker.record_failure()
        supervisor = _supervisor(fake_completion(), search, fast_settings, breaker=breaker)

        assert await supervisor.execute_query(ResearchQuery(text="q"), ResearchConfig()) == []
        assert search.queries == []

    @pytest.mark.asyncio
    async def test_explicit_breaker_records_failures(
        self, fake_completion, failing_search, fast_settings
    ):
        supervisor = _supervisor(fake_completion(), failing_search, fast_settings)
        breaker = supervisor.new_breaker("search:session-a")

        await supervisor.execute_query(ResearchQuery(text="q"), ResearchConfig(), breaker=breaker)

        assert breaker.failure_count == 2
        assert supervisor.breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_open_breaker_isolated_to_its_caller(
        self, fake_completion, fake_search, fast_settings, make_citation
    ):
        search = fake_search(lambda query: [make_citation(url="https://docs.x.org")])
        supervisor = _supervisor(fake_completion(), search, fast_settings)
        tripped = CircuitBreaker(name="search:a", failure_threshold=1, recovery_timeout=60)
        tripped.record_failure()

        skipped = await supervisor.execute_query(
            ResearchQuery(text="a"), ResearchConfig(), breaker=tripped
        )
        served = await supervisor.execute_query(
            ResearchQuery(text="b"), ResearchConfig(), breaker=supervisor.new_breaker()
        )

        assert skipped == []
        assert len(served) == 1
        assert search.queries == ["b"]

    @pytest.mark.asyncio
    async def test_empty_results_reformulated(self, fake_completion, fake_search, fast_settings):
        search = fake_search()
        supervisor = _supervisor(fake_completion(), search, fast_settings)

        await supervisor.execute_query(ResearchQuery(text="event sourcing"), ResearchConfig())

        assert search.queries == ["event sourcing", "event sourcing tutorial"]

    @pytest.mark.asyncio
    async def test_execute_queries_high_tier_first(
        self, fake_completion, fake_search, fast_settings, numbered_results
    ):
        search = fake_search(numbered_results)
        supervisor = _supervisor(fake_completion(), search, fast_settings)
        queries = [
            ResearchQuery(text="low", priority=Priority.LOW),
            ResearchQuery(text="high", priority=Priority.HIGH),
        ]

        results = await supervisor.execute_queries(queries, ResearchConfig())

        assert search.queries == ["high", "low"]
        scores = [c.relevance_score for c in results]
        assert scores == sorted(scores, reverse=True)

    @pytest.mark.asyncio
    async def test_execute_queries_stop_check(self, fake_completion, fake_search, fast_settings):
        search = fake_search()
        supervisor = _supervisor(fake_completion(), search, fast_settings)

        def stop():
            raise SessionCancelled("deep-research-1")

        with pytest.raises(SessionCancelled):
            await supervisor.execute_queries(
                [ResearchQuery(text="q")], ResearchConfig(), should_stop=stop
            )
        assert search.queries == []


# =============================================================================
# Research Entry Point
# =============================================================================


class TestResearch:
    """Test research()."""

    @pytest.mark.asyncio
    async def test_returns_ranked_evidence(
        self, fake_completion, fake_search, fast_settings, numbered_results, context
    ):
        completion = fake_completion({OutputKind.QUERY_PLAN: QUERY_PLAN})
        supervisor = _supervisor(completion, fake_search(numbered_results), fast_settings)

        results = await supervisor.research(QUESTION, context)

        assert results
        assert len(results) <= context.config.depth.result_cap
        scores = [c.relevance_score for c in results]
        assert scores == sorted(scores, reverse=True)
        assert len({c.url for c in results}) == len(results)

    @pytest.mark.asyncio
    async def test_refinement_bounded(
        self, fake_completion, fake_search, fast_settings, numbered_results, context
    ):
        completion = fake_completion({OutputKind.QUERY_PLAN: QUERY_PLAN})
        search = fake_search(numbered_results)
        supervisor = _supervisor(completion, search, fast_settings)

        await supervisor.research(QUESTION, context)

        # 4 planned queries plus at most 2 iterations of 5 gap queries
        assert len(search.queries) <= 4 + 2 * 5

    @pytest.mark.asyncio
    async def test_search_failure_yields_empty(
        self, fake_completion, failing_search, fast_settings, context
    ):
        completion = fake_completion({OutputKind.QUERY_PLAN: QUERY_PLAN})
        supervisor = _supervisor(completion, failing_search, fast_settings)

        assert await supervisor.research(QUESTION, context) == []

    @pytest.mark.asyncio
    async def test_deep_uses_deep_queries(
        self, fake_completion, fake_search, fast_settings, context
    ):
        search = fake_search()
        supervisor = _supervisor(fake_completion(), search, fast_settings)
        question = ResearchQuestion(text="Why snapshot?", priority=Priority.LOW)

        await supervisor.research(question, context, deep=True)

        assert search.queries[0] == "event sourcing Why snapshot? advanced analysis"
