"""Central error types used across the application."""

from __future__ import annotations


class RideStopsError(RuntimeError):
    """Base error for the ride stop tracker."""


class ValidationError(RideStopsError, ValueError):
    """Raised when an entity is constructed with an out-of-range field."""


class PermissionOrServiceError(RideStopsError):
    """Raised by a fix source when location permission or the GPS service is lost."""


class InvariantViolation(RideStopsError):
    """Raised when persisted state contradicts an invariant (indicates a bug)."""


class StorageError(RideStopsError):
    """Raised when the repository fails to read or write."""


class NotFoundError(RideStopsError, LookupError):
    """Raised when a session or cluster id does not exist."""


class SessionStateError(RideStopsError):
    """Base error for operations not allowed in the session's current state."""


class SessionAlreadyActiveError(SessionStateError):
    """Raised when starting a session while another one is still active."""


class SessionNotActiveError(SessionStateError):
    """Raised when fixes are delivered to a session that is not accepting them."""


__all__ = [
    "RideStopsError",
    "ValidationError",
    "PermissionOrServiceError",
    "InvariantViolation",
    "StorageError",
    "NotFoundError",
    "SessionStateError",
    "SessionAlreadyActiveError",
    "SessionNotActiveError",
]
