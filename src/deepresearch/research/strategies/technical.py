"""Technical research strategy.

Biased toward implementation material: evidence mentioning technical
vocabulary and evidence from documentation, code hosting and Q&A sites is
scored higher.
"""

import logging

from deepresearch.research.context import SessionContext
from deepresearch.research.models import CitationResult, Priority, ResearchQuestion
from deepresearch.research.strategies.base import ResearchStrategy, format_duration

logger = logging.getLogger(__name__)

TECHNICAL_KEYWORDS = (
    "implementation", "architecture", "design", "pattern", "framework",
    "library", "api", "code", "programming", "development", "software",
    "algorithm", "performance", "scalability", "security", "testing",
    "deployment", "configuration", "integration", "microservices", "database",
)
KEYWORD_BOOST_PER_MATCH = 0.02
MAX_KEYWORD_BOOST = 0.2
AUTHORITATIVE_HOSTS = ("docs.", "github.com", "stackoverflow.com", "readthedocs.io", "python.org")
AUTHORITATIVE_BOOST = 0.15
MIN_CITATION_SCORE = 0.3
MIN_CITATION_CONTENT = 50
MAX_CITATIONS = 10

DEFAULT_CRITICAL_AREAS = (
    "implementation architecture",
    "performance optimization",
    "security considerations",
)


def technical_boost(citation: CitationResult) -> float:
    """min(0.2, 0.02 per technical keyword present in title or content)."""
    text = citation.text_for_matching
    matches = sum(1 for keyword in TECHNICAL_KEYWORDS if keyword in text)
    return min(MAX_KEYWORD_BOOST, matches * KEYWORD_BOOST_PER_MATCH)


def is_authoritative_host(citation: CitationResult) -> bool:
    url = citation.url.lower()
    return any(host in url for host in AUTHORITATIVE_HOSTS)


class TechnicalStrategy(ResearchStrategy):
    """Implementation-focused research for software and engineering topics."""

    name = "technical"
    display_name = "Technical Deep Research"
    technical = True

    def enhance_citations(
        self,
        citations: list[CitationResult],
        question: ResearchQuestion,
        context: SessionContext,
    ) -> list[CitationResult]:
        enhanced = []
        for citation in citations:
            if not citation.url or citation.relevance_score < MIN_CITATION_SCORE:
                continue
            if len(citation.content) < MIN_CITATION_CONTENT:
                continue
            score = citation.relevance_score + technical_boost(citation)
            if is_authoritative_host(citation):
                score += AUTHORITATIVE_BOOST
            enhanced.append(citation.with_score(score, technical_boost=True))
        enhanced.sort(key=lambda c: c.relevance_score, reverse=True)
        return enhanced[:MAX_CITATIONS]

    def identify_critical_areas(self, context: SessionContext) -> list[str]:
        return list(DEFAULT_CRITICAL_AREAS)

    def fallback_deep_questions(self, area: str, context: SessionContext) -> list[ResearchQuestion]:
        return [
            ResearchQuestion(
                text=(
                    f"What are the technical implementation details for {area} "
                    f"with {context.original_query}?"
                ),
                priority=Priority.MEDIUM,
                category="technical",
                metadata={"area": area},
            )
        ]

    def fallback_insights(self, question: ResearchQuestion, citations: list[CitationResult]) -> str:
        return (
            "## Technical Analysis\n\n"
            f"Analysis of: {question.text}\n"
            f"Based on {len(citations)} technical sources.\n\n"
            "## Key Findings\n"
            "- Multiple implementation approaches identified\n"
            "- Various architectural patterns applicable\n"
            "- Several tool and library options available\n\n"
            "## Implementation Considerations\n"
            "- Consider scalability requirements\n"
            "- Evaluate security implications\n"
            "- Plan for maintainability and testing\n"
        )

    def fallback_synthesis(self, context: SessionContext) -> str:
        findings = self.concatenate_insights(context) or (
            "- Implementation patterns and strategies\n"
            "- Architectural considerations and trade-offs\n"
            "- Tool and technology recommendations\n"
        )
        return (
            "## Technical Research Synthesis\n\n"
            f"Analysis of: {context.original_query}\n\n"
            "## Research Overview\n"
            f"- {len(context.questions)} technical questions investigated\n"
            f"- {len(context.all_citations())} sources reviewed\n\n"
            "## Key Technical Insights\n\n"
            f"{findings}"
        )

    def fallback_report(self, context: SessionContext, synthesis: str) -> str:
        query = context.original_query
        return (
            f"# Technical Research Report: {query}\n\n"
            "## Executive Summary\n\n"
            f"Technical research conducted on {query}.\n\n"
            "## Research Overview\n\n"
            f"- **Sources Analyzed**: {len(context.all_citations())}\n"
            f"- **Research Questions**: {len(context.questions)}\n"
            f"- **Research Duration**: {format_duration(context.elapsed_seconds)}\n\n"
            "## Findings\n\n"
            f"{synthesis.strip()}\n\n"
            "## Conclusion\n\n"
            "The findings above summarize the technical guidance gathered for implementation.\n"
        )
