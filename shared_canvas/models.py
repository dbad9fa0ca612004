"""
Core data types for the shared canvas.

Wire and document forms use camelCase keys; the Python attributes use
snake_case. Every type round-trips through ``to_dict`` / ``from_dict``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from .exceptions import ValidationError

# New users are created this far in the past so their first insert is always admitted
NEW_USER_LAST_INSERT_AGE = timedelta(days=1)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (or pass through a datetime) as aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as e:
            raise ValidationError("timestamp", "not an ISO-8601 timestamp", value) from e
    else:
        raise ValidationError("timestamp", f"unsupported type {type(value).__name__}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _require_int(data: dict[str, Any], key: str) -> int:
    value = data.get(key)
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(key, "required integer field", None if value is None else str(value))
    return value


@dataclass
class Pixel:
    """A single colored-pixel write.

    ``user_id`` and ``last_updated`` are stamped by the write coordinator;
    pixels arriving from clients carry only coordinates and color.
    """

    x: int
    y: int
    color: int
    user_id: str | None = None
    last_updated: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the camelCase wire form."""
        data: dict[str, Any] = {"x": self.x, "y": self.y, "color": self.color}
        if self.user_id is not None:
            data["userId"] = self.user_id
        if self.last_updated is not None:
            data["lastUpdated"] = self.last_updated.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Pixel:
        """Create from the wire form; x, y and color are required."""
        if not isinstance(data, dict):
            raise ValidationError("pixel", "expected an object")
        return cls(
            x=_require_int(data, "x"),
            y=_require_int(data, "y"),
            color=_require_int(data, "color"),
            user_id=data.get("userId"),
            last_updated=parse_timestamp(data.get("lastUpdated")),
        )

    def stamped(self, user_id: str, when: datetime) -> Pixel:
        """Return a copy tagged with the submitting user and acceptance time."""
        return Pixel(x=self.x, y=self.y, color=self.color, user_id=user_id, last_updated=when)


@dataclass
class ChangeLogEntry:
    """One document of the ordered change log: a batch of pixel writes."""

    sequence_number: int
    items: list[Pixel] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [pixel.to_dict() for pixel in self.items],
            "sequenceNumber": self.sequence_number,
        }


@dataclass
class FeedPage:
    """A page of change log entries and the cursor that follows it."""

    entries: list[ChangeLogEntry]
    continuation: str | None


@dataclass
class UserState:
    """Per-user admission state.

    ``etag`` is the store's optimistic-concurrency token for the
    document this state was read from; it is never serialized.
    """

    id: str
    last_insert: datetime
    is_admin: bool = False
    is_blocked: bool = False
    etag: str | None = None

    @classmethod
    def new(cls, user_id: str, now: datetime | None = None) -> UserState:
        """Create state for a first-time user, eligible immediately."""
        now = now or datetime.now(UTC)
        return cls(id=user_id, last_insert=now - NEW_USER_LAST_INSERT_AGE)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "lastInsert": self.last_insert.isoformat(),
            "isAdmin": self.is_admin,
            "isBlocked": self.is_blocked,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UserState:
        last_insert = parse_timestamp(data.get("lastInsert"))
        return cls(
            id=data["id"],
            last_insert=last_insert or datetime.now(UTC) - NEW_USER_LAST_INSERT_AGE,
            is_admin=bool(data.get("isAdmin", False)),
            is_blocked=bool(data.get("isBlocked", False)),
            etag=data.get("_etag"),
        )


class ThrottleReason(Enum):
    """Why a batch was admitted or rejected."""

    OK = "ok"
    RATE_LIMITED = "rate_limited"
    BATCH_TOO_LARGE = "batch_too_large"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class ThrottleDecision:
    """Outcome of an admission check. Transient; never persisted."""

    allow: bool
    reason: ThrottleReason
    retry_at: datetime | None = None


@dataclass
class AppendReport:
    """Progress of a chunked log append."""

    chunks_total: int
    chunks_succeeded: int = 0
    items_written: int = 0

    @property
    def complete(self) -> bool:
        return self.chunks_succeeded == self.chunks_total


@dataclass
class SubmitResult:
    """What the write coordinator reports back to the HTTP layer.

    A blocked user's submission is ``accepted`` with reason BLOCKED and
    no ``report``: it looks like success to the caller but nothing was written.
    """

    accepted: bool
    timestamp: datetime
    reason: ThrottleReason = ThrottleReason.OK
    retry_at: datetime | None = None
    report: AppendReport | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat()}
