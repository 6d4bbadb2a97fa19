"""Evidence quality gating.

Pure functions over evidence lists: no I/O, no shared state. The same input
and configuration always produce the same output, and filtering an already
filtered list returns it unchanged.
"""

import re
from statistics import mean
from typing import Iterable

from deepresearch.research.models import (
    MIN_CONTENT_LENGTH,
    CitationResult,
    ResearchConfig,
    ResearchQuestion,
)

EXCLUDED_DOMAIN_MARKERS = ("ads", "spam", "pinterest", "instagram", "tiktok")
SUFFICIENT_MEAN_SCORE = 0.6
MIN_DIVERSE_ITEMS = 3

_WORD_SPLIT = re.compile(r"\W+")


def _question_terms(question_text: str) -> list[str]:
    return [w for w in _WORD_SPLIT.split(question_text.lower()) if w]


def is_relevant(citation: CitationResult, question_text: str) -> bool:
    """Keyword-overlap test between a citation and a question.

    Relevant when at least two question words longer than three characters
    appear in the citation's title or content. Questions of two words or
    fewer are too short to judge, so everything is relevant to them.
    """
    terms = _question_terms(question_text)
    if len(terms) <= 2:
        return True
    haystack = citation.text_for_matching
    matches = 0
    for term in {t for t in terms if len(t) > 3}:
        if term in haystack:
            matches += 1
            if matches >= 2:
                return True
    return False


def is_excluded_domain(domain: str) -> bool:
    lowered = (domain or "").lower()
    return any(marker in lowered for marker in EXCLUDED_DOMAIN_MARKERS)


class QualityAnalyzer:
    """Filter, rank and judge the sufficiency of evidence."""

    def __init__(self, min_content_length: int = MIN_CONTENT_LENGTH) -> None:
        self.min_content_length = min_content_length

    def filter_and_rank(
        self,
        evidence: Iterable[CitationResult],
        question: ResearchQuestion,
        config: ResearchConfig,
    ) -> list[CitationResult]:
        """Keep relevant, substantial, well-scored evidence, best first.

        Items are dropped when their score is below the configured floor,
        their content is shorter than the minimum, their domain is on the
        exclusion list, or they fail the keyword-overlap test. Survivors are
        sorted by descending score (stable, so ties keep input order) and
        truncated to the depth's cap.
        """
        kept = [
            c
            for c in evidence
            if c.relevance_score >= config.min_relevance_score
            and len(c.content) >= self.min_content_length
            and not is_excluded_domain(c.domain)
            and is_relevant(c, question.text)
        ]
        kept.sort(key=lambda c: c.relevance_score, reverse=True)
        return kept[: config.depth.result_cap]

    def is_sufficient(
        self,
        evidence: list[CitationResult],
        question: ResearchQuestion,
        config: ResearchConfig,
    ) -> bool:
        """True iff count, mean score and domain diversity all clear their bars.

        - count >= depth ordinal * 5 + 10
        - mean relevance >= 0.6
        - at least 3 items spread over min(3, count // 2) unique domains
        """
        count = len(evidence)
        if count < config.depth.min_evidence:
            return False
        if mean(c.relevance_score for c in evidence) < SUFFICIENT_MEAN_SCORE:
            return False
        if count < MIN_DIVERSE_ITEMS:
            return False
        unique_domains = len({c.domain for c in evidence})
        return unique_domains >= min(3, count // 2)

    def average_score(self, evidence: list[CitationResult]) -> float:
        if not evidence:
            return 0.0
        return mean(c.relevance_score for c in evidence)
