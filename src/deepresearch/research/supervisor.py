"""Per-question research supervision.

The supervisor turns one ResearchQuestion into ranked, validated evidence:

1. plan 4-6 search queries with the completion collaborator (deterministic
   fallback queries when that fails),
2. run them concurrently, High priority first, each call rate limited and
   retried with exponential backoff,
3. refine with gap-filling queries until coverage is good enough, the
   evidence is sufficient, or the iteration cap is hit,
4. return the quality-filtered, deduplicated, score-sorted evidence.

One supervisor is shared by every question of every session. It keeps no
per-call state, so concurrent ``research()`` calls are safe. Search failure
handling is scoped by the caller: the engine passes one CircuitBreaker per
session (see ``new_breaker()``) so an outage seen by one session does not
short-circuit the searches of another.
"""

import asyncio
import logging
import re
from typing import Callable, Iterable, Optional

from deepresearch.config import SearchSettings
from deepresearch.core.concurrency import ConcurrencyLimiter
from deepresearch.core.resilience import CircuitBreaker, async_retry_with_backoff
from deepresearch.errors import CollaboratorError, SearchError, SessionCancelled
from deepresearch.research.chunker import ContextAwareChunker
from deepresearch.research.collaborators import CompletionClient, SearchClient, complete_text
from deepresearch.research.context import SessionContext
from deepresearch.research.models import (
    CitationResult,
    GapAnalysis,
    OutputKind,
    Priority,
    ResearchConfig,
    ResearchQuery,
    ResearchQuestion,
)
from deepresearch.research.parsing import parse_queries
from deepresearch.research.pipeline import attempt
from deepresearch.research.prompts import build_query_prompt
from deepresearch.research.quality import QualityAnalyzer

logger = logging.getLogger(__name__)

BLOCKED_SOURCE_MARKERS = (
    "ads",
    "spam",
    "clickbait",
    "pinterest",
    "instagram",
    "facebook",
    "twitter",
    "tiktok",
    "reddit.com/r/",
    "quora",
)
AUTHORITATIVE_MARKERS = (
    ".edu",
    ".gov",
    ".org",
    "wikipedia",
    "github",
    "stackoverflow",
    "medium",
    "docs.",
    "blog.",
    "research",
    "arxiv",
    "ieee",
)
NON_AUTHORITATIVE_MIN_SCORE = 0.6
PER_QUERY_RESULT_LIMIT = 15
TITLE_SIMILARITY_THRESHOLD = 0.8

AREA_COVERAGE_THRESHOLD = 0.5
MIN_SOURCE_DOMAINS = 3

EXPECTED_AREAS = {
    "implementation": ("code examples", "tutorials", "documentation", "best practices"),
    "performance": ("benchmarks", "optimization", "metrics", "comparison"),
    "case-study": ("real world examples", "success stories", "lessons learned", "applications"),
    "technical": ("specifications", "architecture", "design patterns", "technical details"),
}
DEFAULT_EXPECTED_AREAS = ("overview", "examples", "analysis", "recommendations")

# (marker found in the gap text, suffix appended to the question)
GAP_QUERY_SUFFIXES = (
    ("code examples", " code example implementation"),
    ("tutorials", " step by step tutorial"),
    ("benchmarks", " performance benchmark comparison"),
    ("real world examples", " case study real world application"),
    ("specifications", " technical specification documentation"),
    ("source diversity", " academic research paper"),
)
DEFAULT_GAP_SUFFIX = " comprehensive guide"

DEEP_DIVE_QUERY_LIMIT = 6

_WORD_SPLIT = re.compile(r"\W+")

StopCheck = Callable[[], None]


# =============================================================================
# Pure helpers
# =============================================================================


def reformulate_query(query: str, attempt_number: int) -> str:
    """Alternative phrasing used when a query comes back empty."""
    if attempt_number == 0:
        return f"{query} tutorial"
    if attempt_number == 1:
        return f"{query} guide"
    if attempt_number == 2:
        return query.replace(" ", " AND ")
    return query


def title_similarity(first: str, second: str) -> float:
    """Jaccard similarity of the word sets of two titles."""
    if not first or not second:
        return 0.0
    words1 = {w for w in _WORD_SPLIT.split(first.lower()) if w}
    words2 = {w for w in _WORD_SPLIT.split(second.lower()) if w}
    union = words1 | words2
    if not union:
        return 0.0
    return len(words1 & words2) / len(union)


def deduplicate(citations: Iterable[CitationResult]) -> list[CitationResult]:
    """Drop repeated URLs and near-identical titles, keeping the first copy."""
    unique: dict[str, CitationResult] = {}
    seen_titles: list[str] = []
    for citation in citations:
        if citation.url in unique:
            continue
        title = citation.title
        if title and any(
            title_similarity(title, seen) > TITLE_SIMILARITY_THRESHOLD for seen in seen_titles
        ):
            logger.debug("Skipping duplicate by title: %s", citation.url)
            continue
        unique[citation.url] = citation
        if title:
            seen_titles.append(title)
    return list(unique.values())


def merge_results(
    existing: list[CitationResult], new: list[CitationResult]
) -> list[CitationResult]:
    """Merge two evidence lists, dedupe, and sort by descending score."""
    merged = deduplicate([*existing, *new])
    merged.sort(key=lambda c: c.relevance_score, reverse=True)
    return merged


def is_acceptable_source(citation: CitationResult) -> bool:
    """Not blocklisted, and either authoritative or scored at least 0.6."""
    url = citation.url.lower()
    domain = citation.domain.lower()
    if any(marker in url or marker in domain for marker in BLOCKED_SOURCE_MARKERS):
        return False
    authoritative = any(marker in url or marker in domain for marker in AUTHORITATIVE_MARKERS)
    return authoritative or citation.relevance_score >= NON_AUTHORITATIVE_MIN_SCORE


def fallback_queries(question: ResearchQuestion) -> list[ResearchQuery]:
    text = question.text
    return [
        ResearchQuery(text=text, query_type="Basic", priority=Priority.HIGH,
                      rationale="Direct search for the question"),
        ResearchQuery(text=f"{text} guide", query_type="Tutorial", priority=Priority.MEDIUM,
                      rationale="Introductory and how-to material"),
        ResearchQuery(text=f"{text} implementation", query_type="Implementation",
                      priority=Priority.MEDIUM, rationale="Concrete implementations"),
    ]


def prioritize_queries(queries: Iterable[ResearchQuery], limit: int) -> list[ResearchQuery]:
    """Dedupe case-insensitively, order High > Medium > Low, and cap."""
    seen: set[str] = set()
    unique = []
    for query in queries:
        key = query.text.strip().lower()
        if key and key not in seen:
            seen.add(key)
            unique.append(query)
    unique.sort(key=lambda q: -q.priority.rank)
    return unique[:limit]


def deep_dive_queries(question: ResearchQuestion, original_query: str) -> list[ResearchQuery]:
    """Queries for a follow-up question: its own phrasings plus an advanced pass."""
    queries = []
    if question.requires_deep_research:
        queries = [
            ResearchQuery(text=text, query_type="Deep-Dive", priority=Priority.HIGH,
                          rationale="Deep dive analysis for complex question")
            for text in question.search_queries()
        ]
    queries.append(
        ResearchQuery(
            text=f"{original_query} {question.text} advanced analysis",
            query_type="Deep-Analysis",
            priority=Priority.HIGH,
        )
    )
    return prioritize_queries(queries, DEEP_DIVE_QUERY_LIMIT)


def analyze_gaps(results: list[CitationResult], question: ResearchQuestion) -> GapAnalysis:
    """Check evidence against the areas expected for the question's category."""
    areas = EXPECTED_AREAS.get(question.category, DEFAULT_EXPECTED_AREAS)
    coverage: dict[str, float] = {}
    gaps: list[str] = []
    for area in areas:
        if results:
            hits = sum(1 for c in results if area in c.text_for_matching)
            coverage[area] = hits / len(results)
        else:
            coverage[area] = 0.0
        if coverage[area] < AREA_COVERAGE_THRESHOLD:
            gaps.append(f"Insufficient coverage of {area}")

    domains = {c.domain for c in results}
    needs_diversity = len(domains) < MIN_SOURCE_DOMAINS
    if needs_diversity:
        gaps.append(f"Limited source diversity (only {len(domains)} domains)")

    overall = sum(coverage.values()) / len(coverage) if coverage else 0.0
    return GapAnalysis(
        gaps=gaps,
        coverage=coverage,
        coverage_score=overall,
        unique_domains=len(domains),
        needs_source_diversity=needs_diversity,
    )


def gap_filling_queries(analysis: GapAnalysis, question: ResearchQuestion) -> list[ResearchQuery]:
    queries = []
    for gap in analysis.gaps:
        suffix = next(
            (s for marker, s in GAP_QUERY_SUFFIXES if marker in gap), DEFAULT_GAP_SUFFIX
        )
        queries.append(
            ResearchQuery(
                text=question.text + suffix,
                query_type="Gap-Fill",
                priority=Priority.MEDIUM,
                rationale=f"Filling research gap: {gap}",
            )
        )
    return prioritize_queries(queries, len(queries))


# =============================================================================
# Supervisor
# =============================================================================


class ResearchSupervisor:
    """Gather evidence for single questions against the search collaborator."""

    def __init__(
        self,
        completion: CompletionClient,
        search: SearchClient,
        *,
        quality: Optional[QualityAnalyzer] = None,
        settings: Optional[SearchSettings] = None,
        breaker: Optional[CircuitBreaker] = None,
        chunker: Optional[ContextAwareChunker] = None,
        completion_timeout: Optional[float] = None,
    ) -> None:
        self.completion = completion
        self.search = search
        self.quality = quality or QualityAnalyzer()
        self.settings = settings or SearchSettings()
        self.breaker = breaker or self.new_breaker()
        self.chunker = chunker or ContextAwareChunker()
        self.completion_timeout = completion_timeout

    def new_breaker(self, name: str = "search") -> CircuitBreaker:
        """A fresh breaker configured from the search settings."""
        return CircuitBreaker(
            name=name,
            failure_threshold=self.settings.breaker_failure_threshold,
            recovery_timeout=self.settings.breaker_recovery_timeout,
        )

    # ------------------------------------------------------------------
    # Query planning
    # ------------------------------------------------------------------

    async def _plan_with_model(
        self, question: ResearchQuestion, context: SessionContext
    ) -> list[ResearchQuery]:
        prompt = build_query_prompt(
            question, context.original_query, context.user_profile, self.settings.max_queries
        )
        windows = self.chunker.chunk_prompt(prompt)
        if len(windows) > 1:
            logger.info("Query planning prompt split into %d windows", len(windows))

        queries: list[ResearchQuery] = []
        seen: set[str] = set()
        for window in windows:
            outcome = await attempt(
                complete_text(
                    self.completion,
                    self.chunker.fit_prompt(window.content),
                    OutputKind.QUERY_PLAN,
                    timeout=self.completion_timeout,
                    operation="query planning",
                ),
                stage="query planning",
            )
            if not outcome.ok:
                continue
            for query in parse_queries(outcome.value):
                key = query.text.lower()
                if key not in seen:
                    seen.add(key)
                    queries.append(query)
        if not queries:
            raise ValueError("no QUERY: directives in query planning output")
        return queries

    async def plan_queries(
        self, question: ResearchQuestion, context: SessionContext
    ) -> list[ResearchQuery]:
        """Search queries for a question, padded with fallbacks when too few."""
        outcome = await attempt(self._plan_with_model(question, context), stage="query planning")
        queries = outcome.unwrap_or([])
        if len(queries) < self.settings.min_queries:
            queries = [*queries, *fallback_queries(question)]
        return prioritize_queries(queries, self.settings.max_queries)

    # ------------------------------------------------------------------
    # Search execution
    # ------------------------------------------------------------------

    async def _call_search(
        self, query_text: str, breaker: CircuitBreaker
    ) -> list[CitationResult]:
        try:
            results = await self.search.search(query_text)
        except SearchError:
            breaker.record_failure()
            raise
        except Exception as exc:
            breaker.record_failure()
            raise SearchError(f"search failed: {exc}", original_error=exc) from exc
        breaker.record_success()
        return list(results or [])

    async def _search_with_retry(
        self, query_text: str, breaker: CircuitBreaker
    ) -> list[CitationResult]:
        return await async_retry_with_backoff(
            lambda: self._call_search(query_text, breaker),
            max_attempts=self.settings.max_attempts,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
            retryable_exceptions=(CollaboratorError,),
            retry_if=lambda exc: getattr(exc, "retryable", True) and breaker.can_execute(),
            operation=f"search {query_text[:50]!r}",
        )

    async def execute_query(
        self,
        query: ResearchQuery,
        config: ResearchConfig,
        *,
        deep: bool = False,
        breaker: Optional[CircuitBreaker] = None,
    ) -> list[CitationResult]:
        """Run one query; never raises, returns screened results or [].

        ``breaker`` defaults to the supervisor-wide breaker.
        """
        if breaker is None:
            breaker = self.breaker
        delay = self.settings.deep_rate_limit_delay if deep else self.settings.rate_limit_delay
        if delay > 0:
            await asyncio.sleep(delay)

        if not breaker.can_execute():
            logger.debug("Search breaker open, skipping query %r", query.text)
            return []

        try:
            results = await self._search_with_retry(query.text, breaker)
            if not results:
                reformulated = reformulate_query(query.text, 0)
                logger.debug("No results for %r, retrying as %r", query.text, reformulated)
                results = await self._search_with_retry(reformulated, breaker)
        except CollaboratorError as exc:
            logger.warning("All search attempts failed for %r: %s", query.text, exc)
            return []

        screened = [
            c
            for c in results
            if c.is_valid(self.quality.min_content_length)
            and c.relevance_score >= config.min_relevance_score
            and is_acceptable_source(c)
        ]
        logger.debug("Query %r: %d of %d results kept", query.text, len(screened), len(results))
        return screened[:PER_QUERY_RESULT_LIMIT]

    async def execute_queries(
        self,
        queries: list[ResearchQuery],
        config: ResearchConfig,
        *,
        deep: bool = False,
        should_stop: Optional[StopCheck] = None,
        breaker: Optional[CircuitBreaker] = None,
    ) -> list[CitationResult]:
        """Run queries concurrently, one priority tier at a time, High first."""
        limiter = ConcurrencyLimiter(self.settings.max_concurrent_searches, name="search")
        collected: list[CitationResult] = []
        for priority in (Priority.HIGH, Priority.MEDIUM, Priority.LOW):
            tier = [q for q in queries if q.priority == priority]
            if not tier:
                continue
            if should_stop is not None:
                should_stop()
            outcome = await limiter.map(
                lambda q: self.execute_query(q, config, deep=deep, breaker=breaker),
                tier,
                return_exceptions=True,
            )
            for results in outcome.successful_results():
                collected.extend(results)
        return merge_results([], collected)

    # ------------------------------------------------------------------
    # Refinement
    # ------------------------------------------------------------------

    async def refine(
        self,
        results: list[CitationResult],
        question: ResearchQuestion,
        config: ResearchConfig,
        *,
        should_stop: Optional[StopCheck] = None,
        breaker: Optional[CircuitBreaker] = None,
    ) -> list[CitationResult]:
        """Gap-filling loop, bounded by ``max_refinement_iterations``."""
        current = list(results)
        for iteration in range(self.settings.max_refinement_iterations):
            if should_stop is not None:
                should_stop()

            analysis = analyze_gaps(current, question)
            if not analysis.should_continue:
                logger.debug("Refinement done after %d iterations: coverage %.2f",
                             iteration, analysis.coverage_score)
                break

            queries = gap_filling_queries(analysis, question)
            if not queries:
                break

            new_results = await self.execute_queries(
                queries, config, should_stop=should_stop, breaker=breaker
            )
            if not new_results:
                logger.debug("No refinement results at iteration %d", iteration + 1)
                break

            current = merge_results(current, new_results)
            if self.quality.is_sufficient(current, question, config):
                logger.debug("Evidence sufficient at iteration %d", iteration + 1)
                break
        return current

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def research(
        self,
        question: ResearchQuestion,
        context: SessionContext,
        *,
        deep: bool = False,
        should_stop: Optional[StopCheck] = None,
        breaker: Optional[CircuitBreaker] = None,
    ) -> list[CitationResult]:
        """Gather ranked evidence for ``question``.

        Args:
            question: The question to research.
            context: Session state (query, profile and config).
            deep: Use deep-dive phrasings and the slower deep rate limit.
            should_stop: Cooperative cancellation check; raises
                SessionCancelled to abort between query tiers and iterations.
            breaker: Search failure handling for this call, normally one per
                session. Defaults to the supervisor-wide breaker.

        Returns:
            Evidence that passed the quality analyzer, best first. Search
            failures yield fewer (possibly zero) items, never an exception.

        Raises:
            SessionCancelled: When ``should_stop`` signals cancellation.
        """
        config = context.config
        if deep:
            queries = deep_dive_queries(question, context.original_query)
        else:
            queries = await self.plan_queries(question, context)
        logger.debug("Researching %r with %d queries", question.text[:60], len(queries))

        results = await self.execute_queries(
            queries, config, deep=deep, should_stop=should_stop, breaker=breaker
        )
        if not results and not deep:
            results = await self.execute_queries(
                fallback_queries(question)[:1], config, should_stop=should_stop, breaker=breaker
            )

        if results and config.enable_iterative_refinement:
            try:
                results = await self.refine(
                    results, question, config, should_stop=should_stop, breaker=breaker
                )
            except SessionCancelled:
                raise
            except CollaboratorError as exc:
                logger.warning("Iterative refinement failed for %r: %s", question.text[:60], exc)

        ranked = self.quality.filter_and_rank(results, question, config)
        logger.info(
            "Research for %r: %d candidates, %d kept", question.text[:60], len(results), len(ranked)
        )
        return ranked
