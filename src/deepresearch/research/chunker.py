"""Context-window-aware chunking.

Keeps every completion call within a fixed prompt budget. All boundaries
are a pure function of the input text and the module constants, so the same
input always yields the same chunks.

Tokens are estimated as ``ceil(len(text) / 4)``.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

BASE_CHUNK_SIZE = 2000
RICH_CONTENT_BONUS = 500
MANY_SECTIONS_PENALTY = 200
MANY_SECTIONS_THRESHOLD = 6
MIN_CHUNK_SIZE = 1000
MAX_CHUNK_SIZE = 3000
OVERLAP_RATIO = 0.15
SENTENCE_BREAK_WINDOW = 200
CHARS_PER_TOKEN = 4

DEFAULT_CONTEXT_LIMIT = 32000
DEFAULT_RESPONSE_RESERVE = 500

# Shared by chunk labelling and synthesis grouping. Checked in order; the
# first match wins.
THEME_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("implementation", ("implement", "technical", "code", "develop")),
    ("performance", ("performance", "optimization", "benchmark", "speed")),
    ("examples", ("example", "case", "application")),
    ("architecture", ("architecture", "design", "pattern", "structure")),
    ("security", ("security", "secure", "safety", "privacy", "risk")),
    ("analysis", ("comparison", "analysis", "evaluation", "assessment")),
)
DEFAULT_THEME = "general"

_PARAGRAPH_BREAK = re.compile(r"\n\n+")
_SENTENCE_END = re.compile(r"(?<=\. )")
_NARRATIVE_SECTION = re.compile(r"(?m)^(?=## )")


def estimate_tokens(text: Optional[str]) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def classify_theme(text: str, default: str = DEFAULT_THEME) -> str:
    """Coarse theme label from keyword sniffing, ``default`` when none match."""
    lowered = text.lower()
    for theme, keywords in THEME_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return theme
    return default


def optimal_chunk_size(content: str, section_count: int = 0) -> int:
    """Chunk size in characters for ``content``.

    2000 by default, 500 more when the text carries code fences or links,
    200 less when the target document has more than six sections, clamped
    to [1000, 3000].
    """
    size = BASE_CHUNK_SIZE
    if "```" in content or "http" in content:
        size += RICH_CONTENT_BONUS
    if section_count > MANY_SECTIONS_THRESHOLD:
        size -= MANY_SECTIONS_PENALTY
    return max(MIN_CHUNK_SIZE, min(size, MAX_CHUNK_SIZE))


def extract_overlap(content: str, overlap_size: int) -> str:
    """Tail of ``content`` to repeat at the start of the next chunk.

    Looks at the last ``2 * overlap_size`` characters and starts right after
    the last sentence break if that break sits past ``overlap_size / 2``;
    otherwise takes the last ``overlap_size`` characters.
    """
    if overlap_size <= 0:
        return ""
    if len(content) <= overlap_size:
        return content
    suffix = content[max(0, len(content) - overlap_size * 2):]
    last_sentence = suffix.rfind(". ")
    if last_sentence > overlap_size / 2:
        return suffix[last_sentence + 2:]
    return content[len(content) - overlap_size:]


def find_sentence_break(text: str, position: int) -> int:
    """Index just past the last '.', '!' or '?' within 200 chars before ``position``."""
    i = min(position, len(text) - 1)
    while i > position - SENTENCE_BREAK_WINDOW and i > 0:
        if text[i] in ".!?":
            return i + 1
        i -= 1
    return position


def _split_keeping_separators(text: str, pattern: re.Pattern) -> list[str]:
    pieces = []
    start = 0
    for match in pattern.finditer(text):
        if match.end() > start:
            pieces.append(text[start:match.end()])
            start = match.end()
    if start < len(text):
        pieces.append(text[start:])
    return pieces


@dataclass(frozen=True)
class ContentChunk:
    """One segment of chunked content.

    ``content`` is the overlap from the previous chunk followed by this
    chunk's own text, which spans ``[start, end)`` of the original.
    """

    content: str
    theme: str
    start: int
    end: int
    overlap_length: int = 0

    @property
    def body(self) -> str:
        """The chunk's own text, without the repeated overlap."""
        return self.content[self.overlap_length:]

    @property
    def token_count(self) -> int:
        return estimate_tokens(self.content)


@dataclass(frozen=True)
class ContextChunk:
    """A prompt-sized window of text."""

    content: str
    token_count: int


def reassemble(chunks: list[ContentChunk]) -> str:
    """Rebuild the original content from chunks by dropping each overlap."""
    return "".join(chunk.body for chunk in chunks)


class ContextAwareChunker:
    """Split content and prompts to fit a fixed context budget."""

    def __init__(
        self,
        context_limit: int = DEFAULT_CONTEXT_LIMIT,
        response_reserve: int = DEFAULT_RESPONSE_RESERVE,
    ) -> None:
        self.context_limit = context_limit
        self.response_reserve = response_reserve

    @property
    def prompt_budget(self) -> int:
        """Tokens available to a prompt once the response reserve is held back."""
        return max(1, self.context_limit - self.response_reserve)

    def chunk_content(self, content: str, section_count: int = 0) -> list[ContentChunk]:
        """Split ``content`` on paragraph boundaries into overlapping chunks.

        Args:
            content: Text to split.
            section_count: Number of sections in the document the chunks
                feed; more than six shrinks the chunk size.

        Returns:
            Chunks whose bodies concatenate back to ``content`` exactly.
        """
        if not content:
            return []

        size = optimal_chunk_size(content, section_count)
        overlap_size = int(size * OVERLAP_RATIO)

        chunks: list[ContentChunk] = []
        overlap = ""
        body_start = 0
        body_length = 0
        for paragraph in _split_keeping_separators(content, _PARAGRAPH_BREAK):
            if body_length > 0 and len(overlap) + body_length + len(paragraph) > size:
                chunk = self._make_chunk(content, overlap, body_start, body_length)
                chunks.append(chunk)
                overlap = extract_overlap(chunk.content, overlap_size)
                body_start += body_length
                body_length = 0
            body_length += len(paragraph)

        if body_length > 0:
            chunks.append(self._make_chunk(content, overlap, body_start, body_length))

        logger.debug("Content of %d chars chunked into %d segments", len(content), len(chunks))
        return chunks

    @staticmethod
    def _make_chunk(content: str, overlap: str, start: int, length: int) -> ContentChunk:
        body = content[start:start + length]
        text = overlap + body
        return ContentChunk(
            content=text,
            theme=classify_theme(text),
            start=start,
            end=start + length,
            overlap_length=len(overlap),
        )

    def chunk_prompt(self, prompt: str) -> list[ContextChunk]:
        """Split an oversized prompt into sentence-aligned windows.

        A prompt that already fits the context limit comes back as a single
        chunk. Otherwise windows hold at most ``context_limit -
        response_reserve`` tokens; a single sentence longer than that stays
        whole in its own window.
        """
        tokens = estimate_tokens(prompt)
        if tokens <= self.context_limit:
            return [ContextChunk(prompt, tokens)]

        window = self.prompt_budget
        chunks: list[ContextChunk] = []
        current: list[str] = []
        current_tokens = 0
        for sentence in _split_keeping_separators(prompt, _SENTENCE_END):
            sentence_tokens = estimate_tokens(sentence)
            if current and current_tokens + sentence_tokens > window:
                text = "".join(current)
                chunks.append(ContextChunk(text, estimate_tokens(text)))
                current = []
                current_tokens = 0
            current.append(sentence)
            current_tokens += sentence_tokens
        if current:
            text = "".join(current)
            chunks.append(ContextChunk(text, estimate_tokens(text)))

        logger.debug("Prompt of %d tokens split into %d windows", tokens, len(chunks))
        return chunks

    def compress_prompt(self, prompt: str, target_tokens: int) -> str:
        """Truncate to about ``target_tokens`` at a sentence boundary, adding '...'."""
        if estimate_tokens(prompt) <= target_tokens:
            return prompt
        target_chars = target_tokens * CHARS_PER_TOKEN
        if len(prompt) <= target_chars:
            return prompt
        cut = find_sentence_break(prompt, target_chars)
        return prompt[:cut] + "..."

    def fit_prompt(self, prompt: str) -> str:
        """Compress ``prompt`` to the prompt budget if it does not fit."""
        return self.compress_prompt(prompt, self.prompt_budget)

    def chunk_narrative(self, narrative: str) -> list[ContextChunk]:
        """Split a markdown narrative into its ``## `` sections."""
        chunks = []
        for section in _NARRATIVE_SECTION.split(narrative or ""):
            section = section.strip()
            if section:
                chunks.append(ContextChunk(section, estimate_tokens(section)))
        return chunks
