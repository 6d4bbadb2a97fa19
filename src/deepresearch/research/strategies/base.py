"""Base class for research strategies.

A strategy supplies the domain-specific heuristics and prompts the engine
uses after evidence has been gathered: citation enhancement, insights,
critical areas, follow-up questions, cross references, consistency checks,
synthesis and the final report.

Every collaborator-facing method has a deterministic fallback, and none of
them raise except for SessionCancelled.
"""

import logging
import re
from abc import ABC, abstractmethod
from itertools import combinations
from statistics import pvariance
from typing import Optional

from deepresearch.core.concurrency import ConcurrencyLimiter
from deepresearch.errors import SessionCancelled
from deepresearch.research.chunker import ContentChunk, ContextAwareChunker, estimate_tokens
from deepresearch.research.collaborators import CompletionClient, KnowledgeStore, complete_text
from deepresearch.research.context import SessionContext
from deepresearch.research.models import (
    CitationResult,
    OutputKind,
    ResearchQuestion,
)
from deepresearch.research.parsing import parse_question_blocks
from deepresearch.research.pipeline import attempt
from deepresearch.research.prompts import (
    build_deep_question_prompt,
    build_insight_prompt,
    build_report_prompt,
    build_report_section_prompt,
    build_synthesis_prompt,
)
from deepresearch.research.synthesizer import HierarchicalSynthesizer, group_heading

logger = logging.getLogger(__name__)

CONTRADICTION_PAIRS = (
    ("beneficial", "harmful"),
    ("increase", "decrease"),
    ("effective", "ineffective"),
    ("recommended", "discouraged"),
    ("secure", "insecure"),
    ("fast", "slow"),
)
SCORE_VARIANCE_THRESHOLD = 0.04
SHARED_WORDS_FOR_RELATION = 2
SHARED_SOURCES_FOR_RELATION = 2
INSIGHTS_PER_CATEGORY = 3
RELATED_CONCEPT_MIN_SCORE = 0.5
DEEP_QUESTIONS_PER_AREA = 3
REPORT_SECTION_CONCURRENCY = 4

_WORD_SPLIT = re.compile(r"\W+")


def _word_set(text: str) -> set[str]:
    return {w for w in _WORD_SPLIT.split(text.lower()) if w}


def _has_word(text: str, word: str) -> bool:
    return re.search(rf"\b{re.escape(word)}\b", text) is not None


def contains_contradiction(first: str, second: str) -> bool:
    """True when the texts use opposite words of one antonym pair.

    Words are matched on word boundaries so "secure" does not match inside
    "insecure".
    """
    a, b = first.lower(), second.lower()
    for positive, negative in CONTRADICTION_PAIRS:
        if (_has_word(a, positive) and _has_word(b, negative)) or (
            _has_word(a, negative) and _has_word(b, positive)
        ):
            return True
    return False


def questions_related(first: ResearchQuestion, second: ResearchQuestion) -> bool:
    """Same category, or at least two words in common."""
    if first.category == second.category:
        return True
    shared = _word_set(first.text) & _word_set(second.text)
    return len(shared) >= SHARED_WORDS_FOR_RELATION


def research_metrics(context: SessionContext) -> dict[str, str]:
    """Source diversity, average relevance and question coverage, formatted."""
    citations = context.all_citations()
    questions = context.questions
    domains = {c.domain for c in citations}
    average = (
        sum(c.relevance_score for c in citations) / len(citations) if citations else 0.0
    )
    coverage = context.researched_count / len(questions) if questions else 0.0
    return {
        "Source Diversity": str(len(domains)),
        "Average Relevance": f"{average:.2f}",
        "Question Coverage": f"{coverage * 100:.1f}%",
    }


def format_duration(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs}s" if minutes else f"{secs}s"


class ResearchStrategy(ABC):
    """Pluggable policy object supplying domain-specific heuristics and prompts.

    Subclasses implement the deterministic parts (citation enhancement,
    critical areas, template fallbacks). The collaborator-backed operations
    are shared here and always end in a subclass fallback on failure.

    Attributes:
        name: Registry key
        display_name: Human-readable name recorded on results
        technical: Selects the technical prompt variants
    """

    name: str = "base"
    display_name: str = "Research"
    technical: bool = False

    def __init__(
        self,
        completion: CompletionClient,
        *,
        knowledge: Optional[KnowledgeStore] = None,
        synthesizer: Optional[HierarchicalSynthesizer] = None,
        chunker: Optional[ContextAwareChunker] = None,
        completion_timeout: Optional[float] = None,
    ) -> None:
        self.completion = completion
        self.knowledge = knowledge
        self.chunker = chunker or ContextAwareChunker()
        self.synthesizer = synthesizer or HierarchicalSynthesizer(
            completion, chunker=self.chunker, completion_timeout=completion_timeout
        )
        self.completion_timeout = completion_timeout

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def enhance_citations(
        self,
        citations: list[CitationResult],
        question: ResearchQuestion,
        context: SessionContext,
    ) -> list[CitationResult]:
        """Re-score and trim evidence for this strategy's domain."""

    @abstractmethod
    def identify_critical_areas(self, context: SessionContext) -> list[str]:
        """Areas that deserve follow-up questions in the deep dive."""

    @abstractmethod
    def fallback_deep_questions(self, area: str, context: SessionContext) -> list[ResearchQuestion]:
        ...

    @abstractmethod
    def fallback_insights(self, question: ResearchQuestion, citations: list[CitationResult]) -> str:
        ...

    @abstractmethod
    def fallback_synthesis(self, context: SessionContext) -> str:
        ...

    @abstractmethod
    def fallback_report(self, context: SessionContext, synthesis: str) -> str:
        ...

    # ------------------------------------------------------------------
    # Collaborator-backed operations
    # ------------------------------------------------------------------

    async def _complete(self, prompt: str, operation: str) -> Optional[str]:
        outcome = await attempt(
            complete_text(
                self.completion,
                self.chunker.fit_prompt(prompt),
                OutputKind.MARKDOWN,
                timeout=self.completion_timeout,
                operation=operation,
            ),
            stage=operation,
        )
        return outcome.value if outcome.ok else None

    async def _complete_windows(self, prompt: str, operation: str) -> list[str]:
        """Replies for each context-sized window of ``prompt``.

        A prompt within the context limit is a single window, so this is one
        call. Windows whose call fails are skipped.
        """
        windows = self.chunker.chunk_prompt(prompt)
        if len(windows) > 1:
            logger.info("%s prompt of %d tokens split into %d windows",
                        operation, estimate_tokens(prompt), len(windows))
        replies = []
        for window in windows:
            reply = await self._complete(window.content, operation)
            if reply is not None:
                replies.append(reply)
        return replies

    def related_concepts(self, question: ResearchQuestion, context: SessionContext) -> list[str]:
        """Concepts linked to the question, from the knowledge store when present."""
        if self.knowledge is None:
            return context.related_to(question.text)
        try:
            return list(
                self.knowledge.find_related_concepts(question.text, RELATED_CONCEPT_MIN_SCORE)
            )
        except Exception as exc:
            logger.warning("Knowledge lookup failed for %r: %s", question.text[:60], exc)
            return []

    async def generate_insights(
        self,
        question: ResearchQuestion,
        citations: list[CitationResult],
        context: SessionContext,
    ) -> str:
        prompt = build_insight_prompt(
            question,
            citations,
            self.related_concepts(question, context),
            technical=self.technical,
        )
        drafts = await self._complete_windows(prompt, "insight generation")
        if not drafts:
            return self.fallback_insights(question, citations)
        if len(drafts) == 1:
            return drafts[0]
        merged = await self.synthesizer.synthesize_insights({question.text: drafts})
        return merged.get(question.text) or "\n\n".join(drafts)

    async def generate_deep_questions(
        self, area: str, context: SessionContext
    ) -> list[ResearchQuestion]:
        """Follow-up questions for one critical area, templates on failure."""
        text = await self._complete(
            build_deep_question_prompt(area, context.original_query, DEEP_QUESTIONS_PER_AREA),
            "deep question generation",
        )
        questions: list[ResearchQuestion] = []
        for block in parse_question_blocks(text or ""):
            try:
                questions.append(
                    ResearchQuestion(
                        text=block.text,
                        priority=block.priority,
                        category=block.category,
                        metadata={"area": area},
                    )
                )
            except ValueError as exc:
                logger.warning("Discarding malformed follow-up question %r: %s", block.text, exc)
        if not questions:
            questions = self.fallback_deep_questions(area, context)
        return questions[:DEEP_QUESTIONS_PER_AREA]

    def analyze_cross_references(self, context: SessionContext) -> dict[str, set[str]]:
        """Question-to-question adjacency keyed by question text.

        Two questions are linked when they are related (same category or two
        shared words) or when their evidence shares at least two URLs.
        """
        questions = context.questions
        relationships: dict[str, set[str]] = {}
        for first, second in combinations(questions, 2):
            if first.text == second.text:
                continue
            if questions_related(first, second):
                relationships.setdefault(first.text, set()).add(second.text)
                relationships.setdefault(second.text, set()).add(first.text)

        urls = {
            q.text: {c.url for c in context.citations_for(q.id)}
            for q in questions
            if context.citations_for(q.id)
        }
        for first, second in combinations(list(urls), 2):
            if len(urls[first] & urls[second]) >= SHARED_SOURCES_FOR_RELATION:
                relationships.setdefault(first, set()).add(second)
                relationships.setdefault(second, set()).add(first)
        return relationships

    def validate_consistency(self, context: SessionContext) -> list[str]:
        """Pairwise antonym scan over insights plus per-domain score variance."""
        issues: list[str] = []
        insights = context.insights_snapshot()
        with_insight = [q for q in context.questions if q.id in insights]
        for first, second in combinations(with_insight, 2):
            if not first.keywords & second.keywords:
                continue
            if contains_contradiction(insights[first.id], insights[second.id]):
                issues.append(
                    f"Potential contradiction between insights for "
                    f"'{first.text}' and '{second.text}'"
                )

        scores_by_domain: dict[str, list[float]] = {}
        for citation in context.all_citations():
            scores_by_domain.setdefault(citation.domain, []).append(citation.relevance_score)
        for domain, scores in scores_by_domain.items():
            if len(scores) > 1 and pvariance(scores) > SCORE_VARIANCE_THRESHOLD:
                issues.append(f"High variance in source quality for domain: {domain}")
        return issues

    def insights_by_category(self, context: SessionContext) -> dict[str, list[tuple[str, str]]]:
        insights = context.insights_snapshot()
        grouped: dict[str, list[tuple[str, str]]] = {}
        for question in context.questions:
            insight = insights.get(question.id)
            if insight:
                grouped.setdefault(question.category, []).append((question.text, insight))
        return grouped

    def concatenate_insights(self, context: SessionContext) -> str:
        """Every insight under a ``### <category>`` header, in question order.

        Used by the synthesis fallbacks, so it never calls a collaborator.
        """
        parts: list[str] = []
        for category, items in self.insights_by_category(context).items():
            parts.append(f"### {category}\n\n")
            for question_text, insight in items:
                parts.append(f"**{question_text}**\n\n{insight.strip()}\n\n")
        return "".join(parts)

    async def synthesize_knowledge(self, context: SessionContext) -> str:
        """Merge all insights into one synthesis.

        Small corpora go through one synthesis prompt; corpora larger than
        the prompt budget go through the hierarchical synthesizer.
        """
        grouped = self.insights_by_category(context)
        if not grouped:
            return self.fallback_synthesis(context)

        corpus_tokens = sum(
            estimate_tokens(insight) for items in grouped.values() for _, insight in items
        )
        if corpus_tokens > self.chunker.prompt_budget:
            logger.info("Insight corpus of %d tokens exceeds budget, synthesizing hierarchically",
                        corpus_tokens)
            sections = {text: insight for items in grouped.values() for text, insight in items}
            synthesis = await self.synthesizer.synthesize(sections, context.original_query)
            return synthesis or self.fallback_synthesis(context)

        trimmed = {cat: items[:INSIGHTS_PER_CATEGORY] for cat, items in grouped.items()}
        prompt = build_synthesis_prompt(
            context.original_query,
            trimmed,
            context.relationships_snapshot(),
            technical=self.technical,
        )
        synthesis = await self._complete(prompt, "knowledge synthesis")
        if synthesis is None:
            return self.fallback_synthesis(context)
        return synthesis

    async def generate_final_report(self, context: SessionContext, synthesis: str) -> str:
        """The long-form report; a skeleton around ``synthesis`` on failure.

        A report prompt that fits the prompt budget is one completion call.
        Longer syntheses are written section by section (see
        ``generate_sectioned_report``).
        """
        prompt = build_report_prompt(
            context.original_query,
            synthesis,
            context.config.depth,
            research_metrics(context),
            technical=self.technical,
        )
        if estimate_tokens(prompt) > self.chunker.prompt_budget:
            logger.info("Report prompt exceeds budget, writing report by section")
            report = await self.generate_sectioned_report(context, synthesis)
        else:
            report = await self._complete(prompt, "report generation")
        if report is None:
            return self.fallback_report(context, synthesis)
        return report

    async def _write_section_part(
        self, context: SessionContext, theme: str, chunk: ContentChunk, part: int, total: int
    ) -> Optional[str]:
        prompt = build_report_section_prompt(
            context.original_query, theme, chunk.content, part, total, technical=self.technical
        )
        return await self._complete(prompt, f"report section '{theme}'")

    async def generate_sectioned_report(
        self, context: SessionContext, synthesis: str
    ) -> Optional[str]:
        """Write the report one synthesis chunk at a time.

        The synthesis is cut into overlapping chunks, sized by how many
        ``## `` sections it has. Chunks are grouped by theme in first-seen
        order and each chunk becomes one section-writing call. A failed call
        keeps that chunk's own text.

        Returns:
            The assembled report, or None when every section call failed.
        """
        section_count = len(self.chunker.chunk_narrative(synthesis))
        chunks = self.chunker.chunk_content(synthesis, section_count)
        if not chunks:
            return None

        by_theme: dict[str, list[ContentChunk]] = {}
        for chunk in chunks:
            by_theme.setdefault(chunk.theme, []).append(chunk)
        jobs = [
            (theme, chunk, part, len(items))
            for theme, items in by_theme.items()
            for part, chunk in enumerate(items, 1)
        ]
        limiter = ConcurrencyLimiter(REPORT_SECTION_CONCURRENCY, name="report-sections")
        outcome = await limiter.gather(
            [self._write_section_part(context, *job) for job in jobs],
            return_exceptions=True,
        )
        for index, error in outcome.failed_results():
            if isinstance(error, SessionCancelled):
                raise error
            logger.warning("Section part %d failed: %s", index, error)

        written = {
            (theme, part): text
            for (theme, _, part, _), text in zip(jobs, outcome.results)
            if text is not None
        }
        if not written:
            return None
        logger.info("Report written from %d of %d chunks in %d sections",
                    len(written), len(jobs), len(by_theme))

        parts = [f"# {self.display_name} Report: {context.original_query}\n\n",
                 "## Research Overview\n\n"]
        parts.extend(f"- **{name}**: {value}\n" for name, value in research_metrics(context).items())
        parts.append("\n")
        for theme, items in by_theme.items():
            parts.append(f"{group_heading(theme)}\n\n")
            for part, chunk in enumerate(items, 1):
                text = written.get((theme, part), chunk.body)
                parts.append(f"{text.strip()}\n\n")
        return "".join(parts)
