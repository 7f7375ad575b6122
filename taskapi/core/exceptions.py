"""
Domain Exceptions
=================

Framework-free error types shared by the service, repository, cache and
rate limiter. The HTTP layer (``taskapi.core.errors``) maps them to status
codes; nothing in here knows about FastAPI.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Error taxonomy exposed by the service layer."""
    INVALID_ARGUMENT = "invalid-argument"
    NOT_FOUND = "not-found"
    CONFLICT = "conflict"  # reserved
    UNAVAILABLE = "unavailable"
    INTERNAL = "internal"


# =============================================================================
# Service errors
# =============================================================================

class ServiceError(Exception):
    """Base class for errors surfaced by the task service."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        **details: Any,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.details = details


class InvalidArgumentError(ServiceError):
    """Client supplied an invalid value."""

    kind = ErrorKind.INVALID_ARGUMENT


class NotFoundError(ServiceError):
    """Requested entity does not exist (or was soft-deleted)."""

    kind = ErrorKind.NOT_FOUND


class ConflictError(ServiceError):
    kind = ErrorKind.CONFLICT


class UnavailableError(ServiceError):
    """A hard dependency (K/V store, database) could not be reached."""

    kind = ErrorKind.UNAVAILABLE


class InternalError(ServiceError):
    kind = ErrorKind.INTERNAL


class CursorError(InvalidArgumentError):
    """Malformed pagination cursor or invalid codec options."""

    def __init__(self, message: str, **details: Any):
        super().__init__(message, field="cursor", **details)


# =============================================================================
# Infrastructure errors
# =============================================================================

class RepositoryError(Exception):
    """Persistence failure (driver error, timeout, bad state)."""


class TaskNotFoundError(RepositoryError):
    """No live task with the given id."""

    def __init__(self, task_id: int):
        super().__init__(f"task not found: {task_id}")
        self.task_id = task_id


class CacheError(Exception):
    """Cache backend failure. A miss is never a ``CacheError``."""
