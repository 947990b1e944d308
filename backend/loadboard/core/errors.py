"""Error taxonomy for lifecycle operations.

Every error carries the HTTP status the adapter should answer with, so the
engine can raise domain errors without knowing about FastAPI.
"""
from __future__ import annotations


class LifecycleError(Exception):
    """Base class for expected lifecycle failures."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(LifecycleError):
    """Missing or malformed input."""

    status_code = 400


class NotFoundError(LifecycleError):
    """Referenced account, load, bid, or tracking record does not exist."""

    status_code = 404


class ForbiddenError(LifecycleError):
    """Caller does not own or is not authorized for the resource."""

    status_code = 403


class InvalidStateError(LifecycleError):
    """Operation is not legal in the current status."""

    status_code = 400


class ConflictError(LifecycleError):
    """Duplicate bid, non-biddable load, or a lost compare-and-set."""

    status_code = 400


class InternalError(LifecycleError):
    """Unexpected store or collaborator failure."""

    status_code = 500
