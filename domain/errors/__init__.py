"""Error taxonomy of the retrieval engine."""
from __future__ import annotations

from domain.entities import DegradationLevel


class ContextFusionError(Exception):
    """Base class for all errors raised by the engine."""


class BackendError(ContextFusionError):
    """A retrieval backend (keyword, vector, web, embedding) failed."""

    def __init__(self, backend: str, message: str = "", *, retryable: bool = True) -> None:
        self.backend = backend
        self.retryable = retryable
        super().__init__(message or f"{backend} backend failed")


class BackendTimeout(BackendError):
    """The backend did not answer within its deadline."""


class BackendUnavailable(BackendError):
    """The backend refused the call or its circuit is open."""


class RateLimited(BackendError):
    """The backend throttled the caller."""

    def __init__(self, backend: str, message: str = "", retry_after: float | None = None) -> None:
        super().__init__(backend, message or f"{backend} backend rate limited")
        self.retry_after = retry_after


class InvalidQuery(ContextFusionError, ValueError):
    """The query or the requested options cannot be served."""


class CacheError(ContextFusionError):
    """Cache read or write failed. Never surfaced to callers of the engine."""


class BudgetExhausted(ContextFusionError):
    """No tokens are left for the context; minimum limits apply."""


class RetrievalFailed(ContextFusionError):
    """Every enabled retrieval backend failed for this request."""

    def __init__(self, reason: str, failed_backends: list[str] | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.level = DegradationLevel.CRITICAL
        self.failed_backends = list(failed_backends or [])

    def to_dict(self) -> dict[str, object]:
        return {
            "error": "retrieval_failed",
            "level": self.level.value,
            "reason": self.reason,
            "failed_backends": self.failed_backends,
        }


__all__ = [
    "ContextFusionError",
    "BackendError",
    "BackendTimeout",
    "BackendUnavailable",
    "RateLimited",
    "InvalidQuery",
    "CacheError",
    "BudgetExhausted",
    "RetrievalFailed",
]
