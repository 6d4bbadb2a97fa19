"""Exception hierarchy for the deep research engine.

Collaborator failures (completion or search) are always recoverable: callers
retry where appropriate and then substitute a deterministic fallback. Only
ConfigurationError is allowed to stop a session before it starts.
"""

from typing import Optional


class DeepResearchError(Exception):
    """Base exception for all deep research errors."""


# =============================================================================
# Collaborator Errors
# =============================================================================


class CollaboratorError(DeepResearchError):
    """An external collaborator call failed or timed out.

    Attributes:
        message: Human-readable error description
        collaborator: Name of the collaborator ("completion", "search", ...)
        retryable: Whether the call can be retried
        original_error: Underlying exception, if any
    """

    def __init__(
        self,
        message: str,
        *,
        collaborator: Optional[str] = None,
        retryable: bool = True,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.collaborator = collaborator
        self.retryable = retryable
        self.original_error = original_error


class ClientError(CollaboratorError):
    """Completion service failure (transport, provider, or empty output)."""

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(
            message,
            collaborator="completion",
            retryable=retryable,
            original_error=original_error,
        )


class SearchError(CollaboratorError):
    """Search service failure."""

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        retryable: bool = True,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(
            message,
            collaborator="search",
            retryable=retryable,
            original_error=original_error,
        )
        self.provider = provider


class RateLimitError(SearchError):
    """Search provider rate limit exceeded.

    Attributes:
        retry_after: Seconds to wait before retrying, if the provider said
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        provider: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, provider=provider, retryable=True)
        self.retry_after = retry_after


class AuthenticationError(SearchError):
    """Search provider rejected the credentials. Never retried."""

    def __init__(
        self,
        message: str = "Authentication failed",
        *,
        provider: Optional[str] = None,
    ):
        super().__init__(message, provider=provider, retryable=False)


# =============================================================================
# Session Errors
# =============================================================================


class ConfigurationError(DeepResearchError):
    """Missing or invalid configuration; fatal at session start.

    Attributes:
        field: Name of the offending setting, if known
    """

    def __init__(self, message: str, *, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class ValidationError(DeepResearchError, ValueError):
    """Malformed question or citation. Discarded and logged, never fatal."""


class SessionCancelled(DeepResearchError):
    """Raised at a cooperative checkpoint once a session is cancelled or out of time.

    Attributes:
        reason: "cancelled" or "deadline"
    """

    def __init__(self, session_id: str, reason: str = "cancelled"):
        super().__init__(f"Session {session_id} stopped: {reason}")
        self.session_id = session_id
        self.reason = reason
