"""Interfaces of the external collaborators the engine drives.

The engine only depends on these protocols. Concrete LLM clients, search
adapters and knowledge stores live outside the core (see
``deepresearch.research.providers`` and ``deepresearch.research.knowledge``
for the reference implementations).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from deepresearch.core.resilience import TimeoutException, run_with_timeout
from deepresearch.errors import ClientError, DeepResearchError
from deepresearch.research.models import CitationResult, OutputKind, ResearchQuestion

logger = logging.getLogger(__name__)


@dataclass
class CompletionResponse:
    """Text returned by the completion collaborator."""

    text: str
    model: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class CompletionClient(Protocol):
    """Text completion service.

    Implementations raise ClientError (or any exception, which the engine
    wraps) on transport or provider failure.
    """

    async def complete(self, prompt: str, output_kind: OutputKind) -> CompletionResponse:
        ...


@runtime_checkable
class SearchClient(Protocol):
    """Web search service.

    Implementations return an empty list when nothing matched and raise
    SearchError on failure.
    """

    async def search(self, query: str) -> list[CitationResult]:
        ...


@runtime_checkable
class KnowledgeStore(Protocol):
    """Additive store shared across sessions. Must be thread-safe."""

    def update_knowledge(
        self,
        question: ResearchQuestion,
        insight: str,
        evidence: list[CitationResult],
    ) -> None:
        ...

    def find_related_concepts(self, text: str, min_score: float = 0.3) -> list[str]:
        ...

    def store_result(self, session_id: str, result: Any) -> None:
        ...

    def get_result(self, session_id: str) -> Optional[Any]:
        """A stored result, or None when unknown or no longer kept.

        Optional: the engine treats stores without it as keeping no history.
        """
        ...


async def complete_text(
    client: CompletionClient,
    prompt: str,
    output_kind: OutputKind = OutputKind.TEXT,
    *,
    timeout: Optional[float] = None,
    operation: str = "completion",
) -> str:
    """Call the completion collaborator and return non-blank text.

    Raises:
        ClientError: On any failure, timeout, or blank output.
    """
    try:
        response = await run_with_timeout(
            client.complete(prompt, output_kind), timeout, operation=operation
        )
    except DeepResearchError:
        raise
    except TimeoutException as exc:
        raise ClientError(str(exc), original_error=exc) from exc
    except Exception as exc:
        raise ClientError(f"{operation} failed: {exc}", original_error=exc) from exc

    text = getattr(response, "text", None)
    if not isinstance(text, str) or not text.strip():
        raise ClientError(f"{operation} returned empty output", retryable=False)
    logger.debug("%s returned %d chars", operation, len(text))
    return text.strip()
