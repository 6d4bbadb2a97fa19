"""Initial research question generation.

Questions come from the completion collaborator when it cooperates and
from a fixed six-question template when it does not. Priority and category
are always assigned by keyword heuristics, so they do not depend on what
the model claims.
"""

import logging
from typing import Optional

from deepresearch.research.collaborators import CompletionClient, complete_text
from deepresearch.research.models import (
    OutputKind,
    Priority,
    ResearchConfig,
    ResearchQuestion,
    UserProfile,
)
from deepresearch.research.parsing import parse_questions
from deepresearch.research.pipeline import Outcome, attempt
from deepresearch.research.prompts import build_question_prompt

logger = logging.getLogger(__name__)

HIGH_PRIORITY_MARKERS = (
    "what is",
    "how does",
    "how to",
    "best practices",
    "implementation",
    "example",
)

# Checked in order; the first match wins
CATEGORY_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("what is", "define"), "fundamental"),
    (("how does", "how to"), "technical"),
    (("compare", "versus"), "comparative"),
    (("implement", "code"), "implementation"),
    (("best practice", "should"), "best-practices"),
    (("future", "trend"), "trends"),
)
DEFAULT_CATEGORY = "analysis"

FALLBACK_TEMPLATES: tuple[tuple[str, Priority, str], ...] = (
    ("What is {q}?", Priority.HIGH, "fundamental"),
    ("How does {q} work?", Priority.HIGH, "technical"),
    ("What are the benefits of {q}?", Priority.MEDIUM, "analysis"),
    ("What are the challenges with {q}?", Priority.MEDIUM, "analysis"),
    ("How to implement {q}?", Priority.HIGH, "implementation"),
    ("What are best practices for {q}?", Priority.MEDIUM, "best-practices"),
)


def classify_priority(question_text: str) -> Priority:
    """Definitional and how-to phrasing is HIGH, everything else MEDIUM."""
    lowered = question_text.lower()
    if any(marker in lowered for marker in HIGH_PRIORITY_MARKERS):
        return Priority.HIGH
    return Priority.MEDIUM


def classify_category(question_text: str) -> str:
    lowered = question_text.lower()
    for markers, category in CATEGORY_RULES:
        if any(marker in lowered for marker in markers):
            return category
    return DEFAULT_CATEGORY


def fallback_questions(query: str) -> list[ResearchQuestion]:
    """The deterministic six-question template for ``query``."""
    topic = query.strip()
    return [
        ResearchQuestion(text=template.format(q=topic), priority=priority, category=category)
        for template, priority, category in FALLBACK_TEMPLATES
    ]


def build_questions(texts: list[str], max_questions: int) -> list[ResearchQuestion]:
    """Turn parsed question texts into prioritized, categorized questions.

    Invalid texts are dropped. HIGH questions come first; order within a
    priority follows the model's order.
    """
    questions: list[ResearchQuestion] = []
    for text in texts:
        try:
            questions.append(
                ResearchQuestion(
                    text=text,
                    priority=classify_priority(text),
                    category=classify_category(text),
                )
            )
        except ValueError as exc:
            logger.warning("Discarding malformed question %r: %s", text, exc)
    questions.sort(key=lambda q: -q.priority.rank)
    return questions[:max_questions]


class QuestionGenerator:
    """Produce the initial question set for a session."""

    def __init__(self, completion: CompletionClient, completion_timeout: Optional[float] = None):
        self.completion = completion
        self.completion_timeout = completion_timeout

    async def _ask(self, query: str, profile: UserProfile, config: ResearchConfig) -> list[ResearchQuestion]:
        prompt = build_question_prompt(query, profile, config.depth)
        text = await complete_text(
            self.completion,
            prompt,
            OutputKind.QUESTION_LIST,
            timeout=self.completion_timeout,
            operation="question generation",
        )
        questions = build_questions(parse_questions(text), config.max_questions)
        if not questions:
            raise ValueError("no Q: lines in question generation output")
        return questions

    async def generate(
        self,
        query: str,
        profile: UserProfile,
        config: ResearchConfig,
    ) -> Outcome[list[ResearchQuestion]]:
        """Ask for questions; a failed outcome carries the reason for the fallback."""
        return await attempt(self._ask(query, profile, config), stage="question generation")

    async def generate_or_fallback(
        self,
        query: str,
        profile: UserProfile,
        config: ResearchConfig,
    ) -> tuple[list[ResearchQuestion], Optional[str]]:
        """Questions plus an error note when the template fallback was used."""
        outcome = await self.generate(query, profile, config)
        if outcome.ok:
            logger.info("Generated %d research questions", len(outcome.value))
            return outcome.value, None
        logger.warning("Using fallback questions for %r", query)
        return fallback_questions(query)[: config.max_questions], outcome.describe_error()
