"""General-purpose research strategy."""

import logging
import re
from collections import Counter

from deepresearch.research.context import SessionContext
from deepresearch.research.models import CitationResult, Priority, ResearchQuestion
from deepresearch.research.prompts import truncate
from deepresearch.research.strategies.base import ResearchStrategy, format_duration

logger = logging.getLogger(__name__)

MIN_CITATION_SCORE = 0.4
MIN_CITATION_CONTENT = 200
RARE_DOMAIN_MAX_COUNT = 2
RARE_DOMAIN_BOOST = 0.1
MAX_CITATIONS = 15
MAX_CRITICAL_AREAS = 5
MIN_CATEGORY_EVIDENCE = 5

THEME_STOP_WORDS = frozenset(
    {
        "this", "that", "with", "have", "will", "from", "they", "been",
        "said", "each", "which", "their", "time", "about", "using", "based",
    }
)

# area -> (template, priority, category); {q} is the original query
DEEP_QUESTION_TEMPLATES: dict[str, tuple[tuple[str, Priority, str], ...]] = {
    "implementation details": (
        ("What are the step-by-step implementation approaches for {q}?", Priority.HIGH, "implementation"),
        ("What are the technical requirements and dependencies for {q}?", Priority.HIGH, "technical"),
        ("What are common implementation pitfalls and how to avoid them with {q}?",
         Priority.MEDIUM, "best-practices"),
    ),
    "comparative analysis": (
        ("How does {q} compare to alternative approaches?", Priority.HIGH, "comparative"),
        ("What are the trade-offs between {q} and competing solutions?", Priority.MEDIUM, "analysis"),
    ),
    "best practices and guidelines": (
        ("What are industry best practices for {q}?", Priority.HIGH, "best-practices"),
        ("What guidelines should be followed when working with {q}?", Priority.MEDIUM, "best-practices"),
    ),
    "future trends and developments": (
        ("What are the emerging trends and future developments in {q}?", Priority.MEDIUM, "trends"),
        ("How is {q} expected to evolve in the next 2-3 years?", Priority.MEDIUM, "trends"),
    ),
    "challenges and limitations": (
        ("What are the main challenges and limitations of {q}?", Priority.HIGH, "analysis"),
        ("How can the limitations of {q} be addressed or mitigated?", Priority.MEDIUM, "analysis"),
    ),
}
DEFAULT_DEEP_QUESTION_TEMPLATES = (
    ("What specific aspects of {area} are most important for {q}?", Priority.MEDIUM, "analysis"),
    ("How does {area} impact the practical application of {q}?", Priority.MEDIUM, "practical"),
)

_WORD_SPLIT = re.compile(r"\W+")


def title_themes(citations: list[CitationResult], limit: int = 3) -> list[tuple[str, int]]:
    """Most repeated long words across citation titles."""
    counts: Counter = Counter()
    for citation in citations:
        for word in _WORD_SPLIT.split(citation.title.lower()):
            if len(word) > 4 and word not in THEME_STOP_WORDS:
                counts[word] += 1
    repeated = [(word, n) for word, n in counts.most_common() if n > 1]
    return repeated[:limit]


class ComprehensiveStrategy(ResearchStrategy):
    """Broad multi-perspective research; the default strategy."""

    name = "comprehensive"
    display_name = "Comprehensive Deep Research"

    def enhance_citations(
        self,
        citations: list[CitationResult],
        question: ResearchQuestion,
        context: SessionContext,
    ) -> list[CitationResult]:
        """Keep substantial evidence and favour domains seen at most twice."""
        kept = [
            c
            for c in citations
            if c.relevance_score >= MIN_CITATION_SCORE and len(c.content) > MIN_CITATION_CONTENT
        ]
        domain_counts = Counter(c.domain for c in kept)
        enhanced = [
            c.with_score(c.relevance_score + RARE_DOMAIN_BOOST, diversity_boost=True)
            if domain_counts[c.domain] <= RARE_DOMAIN_MAX_COUNT
            else c
            for c in kept
        ]
        enhanced.sort(key=lambda c: c.relevance_score, reverse=True)
        logger.debug("Enhanced %d citations to %d for %r", len(citations), len(enhanced),
                     question.text[:60])
        return enhanced[:MAX_CITATIONS]

    def identify_critical_areas(self, context: SessionContext) -> list[str]:
        """Under-covered categories plus two standing areas, at most five."""
        questions = context.questions
        category_counts = Counter(q.category for q in questions)
        areas: list[str] = []
        if category_counts["implementation"] < 2:
            areas.append("implementation details")
        if category_counts["comparative"] < 1:
            areas.append("comparative analysis")
        if category_counts["best-practices"] < 1:
            areas.append("best practices and guidelines")

        evidence_per_category: dict[str, int] = {}
        for question in questions:
            evidence_per_category[question.category] = (
                evidence_per_category.get(question.category, 0)
                + len(context.citations_for(question.id))
            )
        for category, count in evidence_per_category.items():
            if count < MIN_CATEGORY_EVIDENCE:
                areas.append(f"{category} evidence")

        areas.append("future trends and developments")
        areas.append("challenges and limitations")

        distinct = list(dict.fromkeys(areas))[:MAX_CRITICAL_AREAS]
        logger.info("Identified %d critical areas for deep dive", len(distinct))
        return distinct

    def fallback_deep_questions(self, area: str, context: SessionContext) -> list[ResearchQuestion]:
        templates = DEEP_QUESTION_TEMPLATES.get(area.lower(), DEFAULT_DEEP_QUESTION_TEMPLATES)
        return [
            ResearchQuestion(
                text=template.format(q=context.original_query, area=area),
                priority=priority,
                category=category,
                metadata={"area": area},
            )
            for template, priority, category in templates
        ]

    def fallback_insights(self, question: ResearchQuestion, citations: list[CitationResult]) -> str:
        lines = ["## Key Findings", f"Based on {len(citations)} sources:"]
        for word, count in title_themes(citations):
            lines.append(f"- {word} (mentioned {count} times)")
        lines.append("")
        lines.append("## Analysis & Synthesis")
        lines.append(f"The research reveals multiple perspectives on {question.text}.")
        for citation in citations[:3]:
            lines.append(f"- {citation.title}: {truncate(citation.snippet, 100)}")
        lines.append("")
        lines.append("## Implications & Significance")
        lines.append(
            "This research area shows significant depth and complexity requiring "
            "further investigation."
        )
        return "\n".join(lines) + "\n"

    def fallback_synthesis(self, context: SessionContext) -> str:
        questions = context.questions
        parts = [
            "## Executive Summary\n\n",
            f"This research examined {context.original_query} through {len(questions)} "
            f"research questions and {len(context.all_citations())} sources.\n\n",
            "## Key Findings\n\n",
        ]
        findings = self.concatenate_insights(context)
        if findings:
            parts.append(findings)
        else:
            by_category = Counter(q.category for q in questions)
            for category, count in by_category.items():
                parts.append(f"### {category}\nInvestigated {count} aspects of this category.\n\n")
        return "".join(parts)

    def fallback_report(self, context: SessionContext, synthesis: str) -> str:
        query = context.original_query
        return (
            f"# Comprehensive Research Report: {query}\n\n"
            "## Executive Summary\n\n"
            f"This comprehensive research investigated {query} using a multi-phase "
            "deep research methodology.\n\n"
            "## Research Overview\n\n"
            f"- **Total Sources Analyzed**: {len(context.all_citations())}\n"
            f"- **Research Questions**: {len(context.questions)}\n"
            f"- **Research Duration**: {format_duration(context.elapsed_seconds)}\n\n"
            "## Findings\n\n"
            f"{synthesis.strip()}\n\n"
            "## Conclusions\n\n"
            f"This research provides coverage of {query} with insights from multiple "
            "perspectives and sources.\n"
        )
