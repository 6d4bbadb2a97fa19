"""Hierarchical synthesis of named sections.

Sections are bucketed by theme, each bucket is merged into one section
(a single collaborator call per multi-section bucket), and the buckets are
emitted in a fixed order under fixed headings. Long results get one extra
coherence pass. Every collaborator failure falls back to plain
concatenation, so synthesis always produces text.
"""

import logging
from typing import Mapping, Optional

from deepresearch.config import SynthesisSettings
from deepresearch.research.chunker import ContextAwareChunker, classify_theme
from deepresearch.research.collaborators import CompletionClient, complete_text
from deepresearch.research.models import OutputKind
from deepresearch.research.pipeline import attempt
from deepresearch.research.prompts import (
    build_insight_merge_prompt,
    build_merge_prompt,
    build_smoothing_prompt,
)

logger = logging.getLogger(__name__)

DEFAULT_GROUP = "overview"

GROUP_ORDER = (
    "overview",
    "architecture",
    "implementation",
    "examples",
    "performance",
    "security",
    "analysis",
)

GROUP_HEADINGS = {
    "overview": "## Research Overview and Context",
    "architecture": "## Architectural Foundations and Design Principles",
    "implementation": "## Implementation Strategies and Technical Approaches",
    "examples": "## Practical Applications and Case Studies",
    "performance": "## Performance Analysis and Optimization",
    "security": "## Security Considerations and Best Practices",
    "analysis": "## Comparative Analysis and Evaluation",
}


def classify_group(title: str) -> str:
    """Theme of a section title; untagged sections belong to the overview."""
    return classify_theme(title, default=DEFAULT_GROUP)


def group_heading(group: str) -> str:
    return GROUP_HEADINGS.get(group, f"## {group.capitalize()} Analysis")


def group_sections(sections: Mapping[str, str]) -> dict[str, list[tuple[str, str]]]:
    """Bucket (title, content) pairs by the theme of their title."""
    groups: dict[str, list[tuple[str, str]]] = {}
    for title, content in sections.items():
        groups.setdefault(classify_group(title), []).append((title, content))
    return groups


def ordered_groups(groups: Mapping[str, str]) -> list[str]:
    """Preferred groups first, in fixed order, then unknown groups as given."""
    known = [g for g in GROUP_ORDER if g in groups]
    return known + [g for g in groups if g not in GROUP_ORDER]


class HierarchicalSynthesizer:
    """Two-level merge that keeps every call inside the context budget.

    None of the public methods raise.
    """

    def __init__(
        self,
        completion: CompletionClient,
        *,
        chunker: Optional[ContextAwareChunker] = None,
        settings: Optional[SynthesisSettings] = None,
        completion_timeout: Optional[float] = None,
    ) -> None:
        self.completion = completion
        self.settings = settings or SynthesisSettings()
        self.chunker = chunker or ContextAwareChunker(
            self.settings.context_limit, self.settings.response_reserve
        )
        self.completion_timeout = completion_timeout

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

    async def synthesize_group(
        self, group: str, sections: list[tuple[str, str]], original_query: str
    ) -> str:
        """Merge the sections of one group; a lone section passes through."""
        if len(sections) == 1:
            return sections[0][1]
        merged = await self._complete(
            build_merge_prompt(group, sections, original_query), f"merge {group} sections"
        )
        if merged is None:
            return "\n\n".join(content for _, content in sections)
        return merged

    async def smooth(self, document: str, original_query: str) -> str:
        """One coherence pass over a long document; short ones pass through."""
        if len(document) < self.settings.smoothing_threshold:
            return document
        if len(document) > self.settings.smoothing_max_chars:
            logger.debug("Skipping coherence pass for %d-char document", len(document))
            return document
        smoothed = await self._complete(
            build_smoothing_prompt(document, original_query), "coherence pass"
        )
        return smoothed if smoothed is not None else document

    async def synthesize(self, sections: Mapping[str, str], original_query: str = "") -> str:
        """Group, merge and order ``sections`` into one markdown document."""
        if not sections:
            return ""
        groups = group_sections(sections)
        logger.info("Synthesizing %d sections in %d groups", len(sections), len(groups))

        merged: dict[str, str] = {}
        for group, items in groups.items():
            merged[group] = await self.synthesize_group(group, items, original_query)

        parts = []
        for group in ordered_groups(merged):
            parts.append(f"{group_heading(group)}\n\n{merged[group].strip()}\n\n")
        document = "".join(parts)
        return await self.smooth(document, original_query)

    async def synthesize_insights(
        self, drafts_by_question: Mapping[str, list[str]]
    ) -> dict[str, str]:
        """Merge several insight drafts per question into one each."""
        merged: dict[str, str] = {}
        for question_text, drafts in drafts_by_question.items():
            drafts = [d for d in drafts if d and d.strip()]
            if not drafts:
                continue
            if len(drafts) == 1:
                merged[question_text] = drafts[0]
                continue
            combined = await self._complete(
                build_insight_merge_prompt(question_text, drafts), "insight merge"
            )
            merged[question_text] = combined if combined is not None else " ".join(drafts)
        return merged
