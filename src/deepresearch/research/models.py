"""Pydantic models for deep research sessions.

These models define the questions, evidence, configuration, progress
snapshots and final results exchanged between the engine, its components
and external callers.
"""

import math
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from urllib.parse import urlparse
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from deepresearch.errors import ConfigurationError

MIN_CONTENT_LENGTH = 150

STOP_WORDS = frozenset(
    {
        "what", "how", "why", "when", "where", "who", "which", "that", "this",
        "these", "those", "the", "and", "for", "are", "but", "not", "you",
        "all", "can", "had", "her", "was", "one", "our", "out", "day", "get",
        "has", "him", "his", "its", "may", "new", "now", "old", "see", "two",
        "way", "boy", "did", "down", "each", "find", "good", "have", "like",
        "make", "said", "she", "they", "time", "very", "will", "with", "your",
    }
)

_NON_WORD = re.compile(r"[^a-z0-9\s]")
_ANALYTICAL_VERBS = ("compare", "analyze", "evaluate", "assess")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def extract_keywords(text: str) -> list[str]:
    """Lowercased words longer than 3 chars, minus stop words, in first-seen order."""
    cleaned = _NON_WORD.sub(" ", (text or "").lower())
    seen: dict[str, None] = {}
    for word in cleaned.split():
        if len(word) > 3 and word not in STOP_WORDS:
            seen.setdefault(word, None)
    return list(seen)


def extract_domain(url: str) -> str:
    """Host part of a URL, lowercased, without a leading ``www.``."""
    try:
        host = urlparse(url if "://" in url else f"//{url}").netloc
    except ValueError:
        return ""
    host = host.lower().split("@")[-1].split(":")[0]
    return host[4:] if host.startswith("www.") else host


def clamp_score(value: Any) -> float:
    """Coerce a relevance score into [0, 1]; NaN and garbage become 0."""
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(score):
        return 0.0
    return min(1.0, max(0.0, score))


# =============================================================================
# Enums
# =============================================================================


class Priority(str, Enum):
    """Research priority of a question or query."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        """Numeric weight: LOW=1, MEDIUM=2, HIGH=3."""
        return {"low": 1, "medium": 2, "high": 3}[self.value]

    @classmethod
    def parse(cls, value: Optional[str], default: Optional["Priority"] = None) -> "Priority":
        """Parse free text such as "High" or "medium priority"; unknown maps to default."""
        text = (value or "").strip().lower()
        for member in (cls.HIGH, cls.MEDIUM, cls.LOW):
            if text.startswith(member.value):
                return member
        return default or cls.MEDIUM


class ResearchDepth(str, Enum):
    """How deep a session digs. Ordinal drives sufficiency and result caps."""

    BASIC = "basic"
    STANDARD = "standard"
    COMPREHENSIVE = "comprehensive"
    EXPERT = "expert"

    @property
    def ordinal(self) -> int:
        return list(ResearchDepth).index(self)

    @property
    def result_cap(self) -> int:
        """Maximum evidence items kept per question."""
        return {"basic": 8, "standard": 15, "comprehensive": 25, "expert": 40}[self.value]

    @property
    def min_evidence(self) -> int:
        """Evidence count required before a question can be sufficient."""
        return self.ordinal * 5 + 10


class ResearchPhase(str, Enum):
    """Engine phases in strict forward order."""

    INITIAL_ANALYSIS = "initial_analysis"
    MULTI_DIMENSIONAL_RESEARCH = "multi_dimensional_research"
    DEEP_DIVE = "deep_dive"
    CROSS_REFERENCE = "cross_reference"
    SYNTHESIS = "synthesis"
    REPORT_GENERATION = "report_generation"
    DONE = "done"

    @property
    def order(self) -> int:
        return list(ResearchPhase).index(self)

    @property
    def milestone(self) -> int:
        """Percentage reached when this phase completes."""
        return _PHASE_MILESTONES[self]

    @property
    def start_percentage(self) -> int:
        """Percentage reported when this phase begins."""
        if self.order == 0:
            return 0
        return list(ResearchPhase)[self.order - 1].milestone

    def next(self) -> "ResearchPhase":
        phases = list(ResearchPhase)
        return phases[min(self.order + 1, len(phases) - 1)]


_PHASE_MILESTONES = {
    ResearchPhase.INITIAL_ANALYSIS: 20,
    ResearchPhase.MULTI_DIMENSIONAL_RESEARCH: 50,
    ResearchPhase.DEEP_DIVE: 75,
    ResearchPhase.CROSS_REFERENCE: 85,
    ResearchPhase.SYNTHESIS: 90,
    ResearchPhase.REPORT_GENERATION: 100,
    ResearchPhase.DONE: 100,
}


class OutputKind(str, Enum):
    """Shape of output requested from the completion collaborator."""

    TEXT = "text"
    QUESTION_LIST = "question_list"
    QUERY_PLAN = "query_plan"
    MARKDOWN = "markdown"


# =============================================================================
# Questions and Queries
# =============================================================================


class ResearchQuestion(BaseModel):
    """A research question. Equality is (text, category, priority)."""

    id: str = Field(default_factory=lambda: f"q-{uuid4().hex[:8]}")
    text: str = Field(..., frozen=True, description="Question text")
    priority: Priority = Field(default=Priority.MEDIUM, frozen=True)
    category: str = Field(default="general", frozen=True)
    researched: bool = Field(default=False)
    created_at: datetime = Field(default_factory=_utcnow)
    researched_at: Optional[datetime] = Field(default=None)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("text")
    @classmethod
    def _text_not_blank(cls, value: str) -> str:
        value = " ".join(value.split())
        if not value:
            raise ValueError("question text must not be empty")
        return value

    @field_validator("category")
    @classmethod
    def _normalize_category(cls, value: str) -> str:
        return value.strip().lower() or "general"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResearchQuestion):
            return NotImplemented
        return self.identity == other.identity

    def __hash__(self) -> int:
        return hash(self.identity)

    @property
    def identity(self) -> tuple[str, str, Priority]:
        return (self.text, self.category, self.priority)

    @property
    def dedup_key(self) -> tuple[str, str]:
        """Key used to keep the same question from being added twice."""
        return (self.text.lower(), self.category)

    @property
    def keyword_list(self) -> list[str]:
        return extract_keywords(self.text)

    @property
    def keywords(self) -> set[str]:
        """Stop-word-filtered tokens longer than three characters."""
        return set(self.keyword_list)

    @property
    def complexity_score(self) -> float:
        """Rough 0-1 difficulty from length, analytical phrasing and priority."""
        score = min(len(self.text.split()) / 15.0, 1.0) * 0.3
        lowered = self.text.lower()
        if any(verb in lowered for verb in _ANALYTICAL_VERBS):
            score += 0.4
        score += self.priority.rank / 3.0 * 0.3
        return min(score, 1.0)

    @property
    def requires_deep_research(self) -> bool:
        return self.complexity_score > 0.6 or self.priority == Priority.HIGH

    def search_queries(self) -> list[str]:
        """Deterministic search phrasings for this question."""
        queries = [self.text]
        keywords = self.keyword_list
        if len(keywords) >= 2:
            queries.append(" ".join(keywords[:4]))
        if self.category:
            queries.append(f"{self.text} {self.category}")
        if self.requires_deep_research:
            queries.append(f"{self.text} detailed analysis")
            queries.append(f"{self.text} comprehensive guide")
        return queries

    def mark_researched(self) -> None:
        self.researched = True
        self.researched_at = _utcnow()


class ResearchQuery(BaseModel):
    """One search query planned for a question."""

    text: str = Field(..., description="Query string sent to the search collaborator")
    query_type: str = Field(default="Basic")
    priority: Priority = Field(default=Priority.MEDIUM)
    expected_sources: int = Field(default=5, ge=0)
    rationale: str = Field(default="")


# =============================================================================
# Evidence
# =============================================================================


class CitationResult(BaseModel):
    """A scored, sourced piece of evidence returned by search."""

    model_config = ConfigDict(validate_assignment=True)

    title: str = Field(default="")
    snippet: str = Field(default="")
    content: str = Field(default="")
    url: str = Field(..., description="Source URL (required, non-empty)")
    relevance_score: float = Field(default=0.0)
    domain: str = Field(default="", validate_default=True)
    retrieved_at: datetime = Field(default_factory=_utcnow)
    language: str = Field(default="en")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("url")
    @classmethod
    def _url_required(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("citation url must not be empty")
        return value

    @field_validator("relevance_score", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return clamp_score(value)

    @field_validator("domain")
    @classmethod
    def _derive_domain(cls, value: str, info: ValidationInfo) -> str:
        if value:
            return value.lower()
        return extract_domain(info.data.get("url", ""))

    def is_valid(self, min_content_length: int = MIN_CONTENT_LENGTH) -> bool:
        """Valid iff it has a URL and enough content to reason over."""
        return bool(self.url) and len(self.content) >= min_content_length

    def with_score(self, score: float, **metadata: Any) -> "CitationResult":
        """Copy with a new (clamped) score and extra metadata."""
        merged = {**self.metadata, **metadata}
        return self.model_copy(update={"relevance_score": clamp_score(score), "metadata": merged})

    @property
    def text_for_matching(self) -> str:
        return f"{self.title} {self.content}".lower()


class GapAnalysis(BaseModel):
    """Outcome of checking gathered evidence for missing coverage."""

    gaps: list[str] = Field(default_factory=list)
    coverage: dict[str, float] = Field(default_factory=dict)
    coverage_score: float = Field(default=0.0)
    unique_domains: int = Field(default=0)
    needs_source_diversity: bool = Field(default=False)

    @property
    def has_gaps(self) -> bool:
        return bool(self.gaps)

    @property
    def should_continue(self) -> bool:
        """Refinement stops once there are no gaps or coverage is above 0.8."""
        return self.has_gaps and self.coverage_score <= 0.8


# =============================================================================
# Session Inputs
# =============================================================================


class UserProfile(BaseModel):
    """Who the research is for. Read-only once a session starts."""

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(default="anonymous")
    domain: str = Field(default="general")
    expertise_level: str = Field(default="intermediate")
    preferences: dict[str, Any] = Field(default_factory=dict)


class ResearchConfig(BaseModel):
    """Per-session research configuration passed in by the caller."""

    depth: ResearchDepth = Field(default=ResearchDepth.STANDARD)
    max_sources: int = Field(default=30)
    max_questions: int = Field(default=12)
    max_processing_time: float = Field(
        default=1800.0, description="Seconds before the session stops researching"
    )
    enable_cross_validation: bool = Field(default=True)
    preferred_domains: list[str] = Field(default_factory=list)
    min_relevance_score: float = Field(default=0.3)
    enable_deep_dive: bool = Field(default=True)
    enable_iterative_refinement: bool = Field(default=True)

    @classmethod
    def basic(cls, **overrides: Any) -> "ResearchConfig":
        return cls(**{"depth": ResearchDepth.BASIC, "max_sources": 15, "max_questions": 8,
                      "max_processing_time": 900.0, "enable_deep_dive": False, **overrides})

    @classmethod
    def standard(cls, **overrides: Any) -> "ResearchConfig":
        return cls(**{"depth": ResearchDepth.STANDARD, "max_sources": 30, "max_questions": 12,
                      "max_processing_time": 1800.0, **overrides})

    @classmethod
    def comprehensive(cls, **overrides: Any) -> "ResearchConfig":
        return cls(**{"depth": ResearchDepth.COMPREHENSIVE, "max_sources": 50, "max_questions": 18,
                      "max_processing_time": 2700.0, **overrides})

    @classmethod
    def expert(cls, **overrides: Any) -> "ResearchConfig":
        return cls(**{"depth": ResearchDepth.EXPERT, "max_sources": 75, "max_questions": 24,
                      "max_processing_time": 3600.0, **overrides})

    def validate_for_session(self) -> None:
        """Reject configurations a session cannot run with.

        Raises:
            ConfigurationError: On the first invalid field found
        """
        if self.max_sources < 1:
            raise ConfigurationError("max_sources must be >= 1", field="max_sources")
        if self.max_questions < 1:
            raise ConfigurationError("max_questions must be >= 1", field="max_questions")
        if not self.max_processing_time > 0:
            raise ConfigurationError(
                "max_processing_time must be > 0", field="max_processing_time"
            )
        if not 0.0 <= self.min_relevance_score <= 1.0:
            raise ConfigurationError(
                "min_relevance_score must be within [0, 1]", field="min_relevance_score"
            )

    @property
    def deep_dive_question_cap(self) -> int:
        return max(1, self.max_questions // 2)


# =============================================================================
# Session Outputs
# =============================================================================


class Progress(BaseModel):
    """Point-in-time snapshot of a session's progress."""

    session_id: str
    phase: ResearchPhase = Field(default=ResearchPhase.INITIAL_ANALYSIS)
    percentage: int = Field(default=0, ge=0, le=100)
    current_activity: str = Field(default="")
    completed: bool = Field(default=False)
    cancelled: bool = Field(default=False)
    errors: list[str] = Field(default_factory=list)
    start_time: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    questions_total: int = Field(default=0)
    questions_researched: int = Field(default=0)


class ResearchMetrics(BaseModel):
    """Summary statistics attached to a result."""

    total_questions: int = 0
    researched_questions: int = 0
    total_citations: int = 0
    unique_domains: int = 0
    average_relevance: float = 0.0
    question_coverage: float = 0.0
    processing_seconds: float = 0.0


class ResearchResult(BaseModel):
    """Final outcome of a session. Always produced, possibly from fallbacks."""

    session_id: str
    query: str
    report: str = Field(default="")
    synthesis: str = Field(default="")
    questions: list[ResearchQuestion] = Field(default_factory=list)
    citations: dict[str, list[CitationResult]] = Field(
        default_factory=dict, description="Evidence keyed by question id"
    )
    insights: dict[str, str] = Field(
        default_factory=dict, description="Insight text keyed by question id"
    )
    relationships: dict[str, list[str]] = Field(default_factory=dict)
    inconsistencies: list[str] = Field(default_factory=list)
    strategy_name: str = Field(default="")
    errors: list[str] = Field(default_factory=list)
    cancelled: bool = Field(default=False)
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime = Field(default_factory=_utcnow)
    metrics: ResearchMetrics = Field(default_factory=ResearchMetrics)

    def all_citations(self) -> list[CitationResult]:
        """Every citation, deduplicated by URL, highest score first."""
        best: dict[str, CitationResult] = {}
        for items in self.citations.values():
            for citation in items:
                current = best.get(citation.url)
                if current is None or citation.relevance_score > current.relevance_score:
                    best[citation.url] = citation
        return sorted(best.values(), key=lambda c: c.relevance_score, reverse=True)
