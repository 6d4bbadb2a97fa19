"""
Root pytest configuration and shared fixtures.

Provides fake completion and search collaborators, a citation factory and
engine settings with every delay set to zero.
"""

from typing import Callable, Optional, Union

import pytest

from deepresearch.config import EngineSettings, SearchSettings, SessionSettings
from deepresearch.errors import ClientError, SearchError
from deepresearch.research.collaborators import CompletionResponse
from deepresearch.research.models import CitationResult, OutputKind

LONG_CONTENT = (
    "Event sourcing stores every change to application state as an immutable event. "
    "Projections rebuild read models from the event log, and snapshots keep replay fast. "
    "Teams adopt the pattern for auditability and temporal queries."
)

Reply = Union[str, Callable[[str], str], BaseException]


class FakeCompletion:
    """Completion client answering per OutputKind.

    A reply may be a string, a callable taking the prompt, or an exception
    instance to raise. Kinds without a reply raise ClientError.
    """

    def __init__(self, replies: Optional[dict[OutputKind, Reply]] = None):
        self.replies = dict(replies or {})
        self.calls: list[tuple[OutputKind, str]] = []

    async def complete(self, prompt: str, output_kind: OutputKind) -> CompletionResponse:
        self.calls.append((output_kind, prompt))
        reply = self.replies.get(output_kind)
        if reply is None:
            raise ClientError(f"no reply configured for {output_kind.value}")
        if isinstance(reply, BaseException):
            raise reply
        text = reply(prompt) if callable(reply) else reply
        return CompletionResponse(text=text)

    def calls_for(self, kind: OutputKind) -> list[str]:
        return [prompt for k, prompt in self.calls if k == kind]


class FakeSearch:
    """Search client returning results from a function of the query.

    With ``error`` set every call raises it.
    """

    def __init__(
        self,
        results: Optional[Callable[[str], list[CitationResult]]] = None,
        error: Optional[BaseException] = None,
    ):
        self.results = results or (lambda query: [])
        self.error = error
        self.queries: list[str] = []

    async def search(self, query: str) -> list[CitationResult]:
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return self.results(query)


@pytest.fixture
def make_citation():
    """Factory for CitationResult with sensible, long-enough defaults."""

    def _make(
        url: str = "https://example.com/article",
        score: float = 0.8,
        title: str = "Event sourcing explained",
        content: str = LONG_CONTENT,
        **kwargs,
    ) -> CitationResult:
        return CitationResult(
            url=url,
            title=title,
            snippet=content[:120],
            content=content,
            relevance_score=score,
            **kwargs,
        )

    return _make


@pytest.fixture
def fake_completion():
    """FakeCompletion class, instantiated by the test with its replies."""
    return FakeCompletion


@pytest.fixture
def fake_search():
    """FakeSearch class, instantiated by the test with its results."""
    return FakeSearch


@pytest.fixture
def failing_search():
    """Search client whose every call fails with a retryable SearchError."""
    return FakeSearch(error=SearchError("provider down", provider="fake"))


@pytest.fixture
def fast_settings() -> EngineSettings:
    """Engine settings with no rate-limit or backoff delays."""
    return EngineSettings(
        search=SearchSettings(
            rate_limit_delay=0.0,
            deep_rate_limit_delay=0.0,
            max_attempts=2,
            retry_base_delay=0.0,
            retry_max_delay=0.0,
            max_refinement_iterations=2,
        ),
        session=SessionSettings(
            batch_size=3,
            batch_timeout=5.0,
            completion_timeout=5.0,
            retention_seconds=60.0,
            cancel_grace_seconds=1.0,
        ),
    )
