"""Sync error taxonomy.

Every failure inside the sync engine is expressed as one of these classes so
the executor can turn it into a state transition and the retry scheduler can
decide whether (and when) to try again.
"""

from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base exception for sync errors."""

    kind = "sync_error"
    retryable = False


class ConfigurationError(SyncError):
    """Raised at startup when required sync configuration is missing or inconsistent."""

    kind = "configuration"


class AuthenticationFailure(SyncError):
    """Raised when an inbound webhook fails signature/token verification."""

    kind = "authentication"


class ValidationFailure(SyncError):
    """Raised when a property value cannot be mapped or is rejected by the remote API."""

    kind = "validation"

    def __init__(self, message: str, details: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.details = details or []


class TransientError(SyncError):
    """Raised for network errors, timeouts and 5xx responses."""

    kind = "transient"
    retryable = True


class RateLimitedError(TransientError):
    """Raised when the remote API throttles us; carries its retry-after hint."""

    kind = "rate_limited"

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class StaleWriteError(TransientError):
    """Raised when a compare-and-set write loses a race with a concurrent writer."""

    kind = "stale_write"


class PermanentError(SyncError):
    """Raised for non-retryable remote failures (4xx other than validation)."""

    kind = "permanent"


class NotFoundError(PermanentError):
    """Raised when the remote document no longer exists."""

    kind = "not_found"


class InvalidTransitionError(SyncError):
    """Raised when a sync status change is not allowed by the state machine."""

    kind = "invalid_transition"


class EntityNotFoundError(SyncError):
    """Raised when the local entity does not exist."""

    kind = "entity_not_found"
