"""Exceptions raised by the sync engine.

ValidationError lives in validation.py and is re-exported here so callers
can import the whole taxonomy from one place.
"""

from __future__ import annotations

from typing import Optional

from .validation import ValidationError

__all__ = [
    "SyncError",
    "OfflineError",
    "ConcurrencyLimitError",
    "InvalidTransitionError",
    "ConflictNotFoundError",
    "ConfigurationError",
    "RetryExhaustedError",
    "RemoteError",
    "ValidationError",
]


class SyncError(Exception):
    """Base class for sync engine errors."""


class OfflineError(SyncError):
    """A sync pass was requested while the network is unreachable."""

    def __init__(self, message: str = "Cannot sync while offline") -> None:
        super().__init__(message)


class ConcurrencyLimitError(SyncError):
    """Too many sync passes are already running."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Maximum concurrent syncs reached ({limit})")


class InvalidTransitionError(SyncError):
    """A state transition that the state machine does not allow."""

    def __init__(self, kind: str, current: str, target: str) -> None:
        self.kind = kind
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {kind} from '{current}' to '{target}'")


class ConflictNotFoundError(SyncError):
    """No conflict record exists with the given ID."""

    def __init__(self, conflict_id: str) -> None:
        self.conflict_id = conflict_id
        super().__init__(f"Conflict not found: {conflict_id}")


class ConfigurationError(SyncError):
    """The engine cannot be built from the given configuration."""


class RetryExhaustedError(SyncError):
    """An operation failed on every retry attempt without a captured error."""


class RemoteError(SyncError):
    """Failure reported by (or while reaching) the remote system of record.

    Attributes:
        status_code: HTTP-style status code, None for transport failures
        retryable: Whether a later attempt may succeed
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        if retryable is None:
            # Transport failures without a status are transient
            retryable = status_code is None or status_code >= 500 or status_code == 429
        self.retryable = retryable
