"""Explicit success/failure values for collaborator-facing stages.

Each stage that talks to the completion or search collaborator is run
through ``attempt()``, which returns an ``Outcome`` instead of raising.
Callers map a failed outcome to the stage's precomputed default:

    outcome = await attempt(generate_questions(query), stage="questions")
    questions = outcome.unwrap_or_else(lambda err: fallback_questions(query))
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from deepresearch.core.resilience import TimeoutException
from deepresearch.errors import ClientError, CollaboratorError, DeepResearchError, SessionCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of one pipeline stage: either a value or an error, never both."""

    value: Optional[T] = None
    error: Optional[DeepResearchError] = None
    stage: str = ""

    @classmethod
    def success(cls, value: T, stage: str = "") -> "Outcome[T]":
        return cls(value=value, stage=stage)

    @classmethod
    def failure(cls, error: DeepResearchError, stage: str = "") -> "Outcome[T]":
        return cls(error=error, stage=stage)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap_or(self, default: T) -> T:
        return self.value if self.error is None else default

    def unwrap_or_else(self, fallback: Callable[[DeepResearchError], T]) -> T:
        if self.error is None:
            return self.value
        return fallback(self.error)

    def map(self, func: Callable[[T], Any]) -> "Outcome[Any]":
        """Transform the value; an exception in ``func`` becomes a failure."""
        if self.error is not None:
            return self
        try:
            return Outcome.success(func(self.value), self.stage)
        except (DeepResearchError, ValueError) as exc:
            return Outcome.failure(_as_collaborator_error(exc), self.stage)

    def describe_error(self) -> str:
        """Human-readable note for Progress.errors."""
        if self.error is None:
            return ""
        prefix = f"{self.stage}: " if self.stage else ""
        return f"{prefix}{self.error}"


def _as_collaborator_error(exc: BaseException) -> DeepResearchError:
    if isinstance(exc, DeepResearchError):
        return exc
    if isinstance(exc, TimeoutException):
        return ClientError(str(exc), original_error=exc)
    return CollaboratorError(
        f"{type(exc).__name__}: {exc}",
        retryable=False,
        original_error=exc,
    )


async def attempt(awaitable: Awaitable[T], *, stage: str = "") -> Outcome[T]:
    """Await a stage and capture any failure as an Outcome.

    SessionCancelled is re-raised so cancellation keeps unwinding; every
    other exception, including unexpected ones from collaborator code, is
    converted into a failed outcome and logged at WARNING.
    """
    try:
        return Outcome.success(await awaitable, stage)
    except SessionCancelled:
        raise
    except Exception as exc:
        error = _as_collaborator_error(exc)
        logger.warning("Stage %s failed: %s", stage or "<unnamed>", error)
        return Outcome.failure(error, stage)


def attempt_sync(func: Callable[[], T], *, stage: str = "") -> Outcome[T]:
    """Synchronous counterpart of ``attempt`` for pure local stages."""
    try:
        return Outcome.success(func(), stage)
    except SessionCancelled:
        raise
    except Exception as exc:
        error = _as_collaborator_error(exc)
        logger.warning("Stage %s failed: %s", stage or "<unnamed>", error)
        return Outcome.failure(error, stage)
