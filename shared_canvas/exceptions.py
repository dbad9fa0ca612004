"""
Custom exceptions for the shared canvas.

All components raise these exceptions so the HTTP layer and the
background workers can classify failures consistently.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import AppendReport


class CanvasError(Exception):
    """Base exception for all shared canvas errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(CanvasError):
    """Raised when request data or stored data fails validation."""

    def __init__(self, field: str, reason: str, value: str | None = None):
        details = {"field": field, "reason": reason}
        if value is not None:
            details["value"] = value
        super().__init__(f"Validation failed for {field}: {reason}", details)
        self.field = field
        self.reason = reason
        self.value = value


class OutOfBoundsError(ValidationError):
    """Raised when a pixel coordinate falls outside the board."""

    def __init__(self, x: int, y: int, width: int, height: int):
        super().__init__(
            "pixel",
            f"({x}, {y}) is outside the {width}x{height} board",
            value=f"{x},{y}",
        )
        self.x = x
        self.y = y
        self.width = width
        self.height = height


class MalformedBoardError(ValidationError):
    """Raised when a packed board blob has the wrong length."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            "board",
            f"expected {expected} packed bytes, got {actual}",
            value=str(actual),
        )
        self.expected = expected
        self.actual = actual


class AuthenticationError(CanvasError):
    """Raised when caller identity is missing or store credentials are rejected."""

    def __init__(self, reason: str, endpoint: str | None = None):
        details = {"reason": reason}
        if endpoint:
            details["endpoint"] = endpoint
        message = f"Authentication failed: {reason}"
        if endpoint:
            message = f"Authentication failed for {endpoint}: {reason}"
        super().__init__(message, details)
        self.reason = reason
        self.endpoint = endpoint


class ThrottleRejection(CanvasError):
    """Raised when a pixel batch is refused by admission control."""

    def __init__(self, message: str, user_id: str, retry_at: datetime | None = None):
        details: dict = {"user_id": user_id}
        if retry_at is not None:
            details["retry_at"] = retry_at.isoformat()
        super().__init__(message, details)
        self.user_id = user_id
        self.retry_at = retry_at


class RateLimitedError(ThrottleRejection):
    """The user submitted again before the cooldown elapsed."""

    def __init__(self, user_id: str, retry_at: datetime | None = None):
        super().__init__(f"Too many pixel inserts for user {user_id}", user_id, retry_at)


class BatchTooLargeError(ThrottleRejection):
    """A non-admin user submitted more than one pixel at once."""

    def __init__(self, user_id: str, batch_size: int):
        super().__init__(
            f"User {user_id} can only insert 1 pixel at a time (got {batch_size})",
            user_id,
        )
        self.details["batch_size"] = batch_size
        self.batch_size = batch_size


class StoreErrorKind(Enum):
    """Classification of an ordered-log store failure."""

    NOT_FOUND = "not_found"
    READ_SESSION_NOT_AVAILABLE = "read_session_not_available"
    GONE = "gone"
    TOO_MANY_REQUESTS = "too_many_requests"
    SERVICE_UNAVAILABLE = "service_unavailable"
    PAGE_TOO_LARGE = "page_too_large"
    OTHER = "other"


class StoreError(CanvasError):
    """Raised by a store client when a call fails.

    ``retry_after`` is the server-suggested wait in seconds, when the
    store supplied one.
    """

    def __init__(
        self,
        kind: StoreErrorKind,
        message: str | None = None,
        retry_after: float | None = None,
        sub_status: int | None = None,
        cause: Exception | None = None,
    ):
        details: dict = {"kind": kind.value}
        if retry_after is not None:
            details["retry_after"] = retry_after
        if sub_status is not None:
            details["sub_status"] = sub_status
        if cause is not None:
            details["cause"] = str(cause)
        super().__init__(message or f"Store operation failed ({kind.value})", details)
        self.kind = kind
        self.retry_after = retry_after
        self.sub_status = sub_status
        self.cause = cause


class TransientStoreError(StoreError):
    """Overload, temporary unavailability or partition movement."""


class FatalStoreError(StoreError):
    """The log or collection is gone; not recoverable by retrying."""


class ConcurrencyConflictError(CanvasError):
    """Raised when an optimistic write loses against a concurrent writer."""

    def __init__(self, resource_id: str):
        super().__init__(
            f"Concurrent modification of {resource_id}", {"resource_id": resource_id}
        )
        self.resource_id = resource_id


class PartialAppendError(CanvasError):
    """Raised when a chunked append fails after some chunks were written.

    Earlier chunks are not rolled back; ``report`` says how far it got.
    """

    def __init__(self, report: AppendReport, cause: Exception | None = None):
        details = {
            "chunks_total": report.chunks_total,
            "chunks_succeeded": report.chunks_succeeded,
            "items_written": report.items_written,
        }
        if cause is not None:
            details["cause"] = str(cause)
        super().__init__(
            f"Append failed after {report.chunks_succeeded}/{report.chunks_total} chunks",
            details,
        )
        self.report = report
        self.cause = cause


class BlobNotFoundError(CanvasError):
    """Raised when a blob does not exist."""

    def __init__(self, container: str, name: str):
        super().__init__(
            f"Blob not found: {container}/{name}", {"container": container, "name": name}
        )
        self.container = container
        self.name = name


class BlobIOError(CanvasError):
    """Reading or writing a blob file failed at the filesystem level."""

    def __init__(self, operation: str, path: str, cause: Exception):
        super().__init__(
            f"Could not {operation.replace('_', ' ')} {path}: {cause}",
            {"operation": operation, "path": path},
        )
        self.operation = operation
        self.path = path
        self.cause = cause


class ServiceUnreachableError(CanvasError):
    """A remote dependency (the Cosmos account, the canvas HTTP API) did not answer usefully."""

    def __init__(self, target: str, cause: BaseException | None = None):
        details = {"target": target}
        if cause is not None:
            details["cause"] = repr(cause)
        super().__init__(f"Cannot reach {target}", details)
        self.target = target
        self.cause = cause


class ConfigurationError(CanvasError):
    """Raised at startup when required configuration is missing or invalid."""

    def __init__(self, setting: str, reason: str):
        super().__init__(
            f"Invalid configuration for {setting}: {reason}",
            {"setting": setting, "reason": reason},
        )
        self.setting = setting
        self.reason = reason
