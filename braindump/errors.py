"""
Error taxonomy
---------------
Every failure the completion client can produce is resolved into exactly one
CompletionError subclass.  Pipeline stages catch CompletionError and fall back
to heuristics; nothing else is allowed to escape the client.

The `retryable` flag drives the shared retry policy (see completion/retry.py):

    RateLimitedError        retryable after the backend (or self-imposed) delay
    CompletionTimeoutError  retryable
    TransientServerError    retryable with exponential backoff (5xx / network)
    MalformedResponseError  retryable a small number of times
    ModelUnavailableError   not retried -- the client rotates to the next model
    AuthFailureError        surfaced immediately
    RequestRejectedError    any other 4xx, surfaced immediately

AnalysisCancelled is not a CompletionError: stage fallbacks never catch it.
"""
from __future__ import annotations

from typing import Optional


class CompletionError(Exception):
    """Base class for every typed failure of the completion client."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        model: Optional[str] = None,
        attempts: int = 0,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.model = model
        self.attempts = attempts
        if retryable is not None:
            self.retryable = retryable

    def __str__(self) -> str:
        suffix = f" (model={self.model})" if self.model else ""
        return f"{self.message}{suffix}"


class RateLimitedError(CompletionError):
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        retry_after: float = 0.0,
        self_imposed: bool = False,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after       # seconds until the limit lifts
        self.self_imposed = self_imposed     # True for the client's own cooldown


class CompletionTimeoutError(CompletionError):
    retryable = True


class TransientServerError(CompletionError):
    retryable = True

    def __init__(self, message: str, *, status_code: Optional[int] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code       # None for connection-level failures


class ModelUnavailableError(CompletionError):
    retryable = False


class AuthFailureError(CompletionError):
    retryable = False


class RequestRejectedError(CompletionError):
    retryable = False

    def __init__(self, message: str, *, status_code: Optional[int] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code


class MalformedResponseError(CompletionError):
    retryable = True


class AnalysisCancelled(Exception):
    """Raised when the caller's cancellation event is set mid-run."""


class EmptyInputError(ValueError):
    """Raised when every source of a document is empty or whitespace."""


class ConfigError(ValueError):
    """Raised when settings cannot be loaded or fail validation."""
