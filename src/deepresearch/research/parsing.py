"""Line-oriented parsers for completion output.

Completion responses are plain text with one directive per line. Three
grammars are recognised; anything else on a line is ignored unless the
grammar says otherwise.

Question list::

    Q: <question text>

Question blocks (follow-up questions)::

    QUESTION: <question text>
    CATEGORY: <category>
    PRIORITY: High | Medium | Low

Query plan::

    QUERY: <search query>          starts a new query
    TYPE: <query type>              applies to the current query
    PRIORITY: High | Medium | Low   applies to the current query
    EXPECTED_SOURCES: <n or text>   applies to the current query
    RATIONALE: <text>               applies to the current query
    <any other non-empty line>      appended to the current rationale

Directive prefixes are matched case-insensitively after stripping list
markers ("1.", "-", "*") and markdown emphasis around the directive token,
so "**Q:** ..." and "2. QUERY: ..." parse like their plain forms. Values
keep their underscores and backticks.
"""

import re
from dataclasses import dataclass, field
from typing import Optional

from deepresearch.research.models import Priority, ResearchQuery

_LIST_MARKER = re.compile(r"^\s*(?:[-*+•]|\d+[.)])\s+")
_EMPHASIS = r"[*_`]*"
_DIRECTIVE = re.compile(
    rf"^{_EMPHASIS}([A-Za-z][A-Za-z_ ]{{0,19}}?){_EMPHASIS}:{_EMPHASIS}\s*(.*)$"
)
_DIGITS = re.compile(r"\d+")


@dataclass
class QuestionBlock:
    """A follow-up question parsed from QUESTION/CATEGORY/PRIORITY lines."""

    text: str
    category: str = "general"
    priority: Priority = Priority.MEDIUM
    rationale: str = ""


@dataclass
class _QueryDraft:
    text: str
    query_type: str = "Basic"
    priority: Priority = Priority.MEDIUM
    expected_sources: int = 5
    rationale: list[str] = field(default_factory=list)

    def build(self) -> ResearchQuery:
        return ResearchQuery(
            text=self.text,
            query_type=self.query_type,
            priority=self.priority,
            expected_sources=self.expected_sources,
            rationale=" ".join(self.rationale).strip(),
        )


def split_directive(line: str) -> tuple[Optional[str], str]:
    """Split one line into (DIRECTIVE, value).

    Returns (None, cleaned_line) when the line carries no directive.
    """
    cleaned = _LIST_MARKER.sub("", line.strip(), count=1)
    match = _DIRECTIVE.match(cleaned.strip())
    if match is None:
        return None, cleaned.strip()
    name = match.group(1).strip().upper().replace(" ", "_")
    return name, match.group(2).strip()


def parse_questions(text: str) -> list[str]:
    """Extract question texts from ``Q:`` lines, in order, without duplicates."""
    questions: list[str] = []
    seen: set[str] = set()
    for line in (text or "").splitlines():
        directive, value = split_directive(line)
        if directive != "Q" or not value:
            continue
        key = value.lower()
        if key not in seen:
            seen.add(key)
            questions.append(value)
    return questions


def parse_question_blocks(text: str) -> list[QuestionBlock]:
    """Extract follow-up questions from QUESTION/CATEGORY/PRIORITY blocks.

    A block starts at each QUESTION line; CATEGORY, PRIORITY and RATIONALE
    lines apply to the most recent question. ``Q:`` lines are accepted as
    QUESTION lines.
    """
    blocks: list[QuestionBlock] = []
    current: Optional[QuestionBlock] = None
    for line in (text or "").splitlines():
        directive, value = split_directive(line)
        if directive in ("QUESTION", "Q"):
            current = QuestionBlock(text=value) if value else None
            if current is not None:
                blocks.append(current)
        elif current is None:
            continue
        elif directive == "CATEGORY" and value:
            current.category = value.lower()
        elif directive == "PRIORITY":
            current.priority = Priority.parse(value)
        elif directive == "RATIONALE":
            current.rationale = value
    return blocks


def parse_queries(text: str) -> list[ResearchQuery]:
    """Parse a query plan into ResearchQuery objects, in order of appearance."""
    queries: list[ResearchQuery] = []
    current: Optional[_QueryDraft] = None

    for line in (text or "").splitlines():
        if not line.strip():
            continue
        directive, value = split_directive(line)

        if directive == "QUERY":
            if current is not None:
                queries.append(current.build())
            current = _QueryDraft(text=value) if value else None
            continue

        if current is None:
            continue

        if directive == "TYPE":
            current.query_type = value or current.query_type
        elif directive == "PRIORITY":
            current.priority = Priority.parse(value)
        elif directive == "EXPECTED_SOURCES":
            digits = _DIGITS.search(value)
            if digits:
                current.expected_sources = int(digits.group())
        elif directive == "RATIONALE":
            current.rationale.append(value)
        else:
            current.rationale.append(line.strip())

    if current is not None:
        queries.append(current.build())
    return queries
