"""
Data model for the sync engine.

Sources, synced events, audit entries, tombstones and recurring todos.
Records round-trip through ``to_dict``/``from_dict`` so the storage layer can
persist them as plain rows.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .timezone_utils import format_iso, parse_iso


class SourceType(Enum):
    """Origin of an event."""
    ICS = "ics"
    CALDAV = "caldav"
    LOCAL = "local"


class WritePolicy(Enum):
    NONE = "none"
    WRITE = "write"


class EventStatus(Enum):
    """Lifecycle status of a persisted event."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class AuditOp(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SYNC = "sync"
    SOURCE_UPDATE = "source_update"


class Actor(Enum):
    USER = "user"
    SYSTEM = "system"


@dataclass
class CalendarSource:
    """A configured origin of events (ICS feed or CalDAV account)."""
    id: str
    type: SourceType
    name: str
    url: str
    color: str = "#4285f4"
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    calendar_name: Optional[str] = None
    write_policy: WritePolicy = WritePolicy.NONE

    # Sync metadata
    last_sync_at: Optional[datetime] = None
    last_error_at: Optional[datetime] = None
    last_error: Optional[str] = None
    error_count: int = 0
    needs_reauth: bool = False
    etag: Optional[str] = None
    ctag: Optional[str] = None
    sync_token: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def writable(self) -> bool:
        return self.write_policy == WritePolicy.WRITE

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "url": self.url,
            "color": self.color,
            "username": self.username,
            "password": self.password,
            "calendar_name": self.calendar_name,
            "write_policy": self.write_policy.value,
            "last_sync_at": format_iso(self.last_sync_at),
            "last_error_at": format_iso(self.last_error_at),
            "last_error": self.last_error,
            "error_count": self.error_count,
            "needs_reauth": int(self.needs_reauth),
            "etag": self.etag,
            "ctag": self.ctag,
            "sync_token": self.sync_token,
            "created_at": format_iso(self.created_at),
            "updated_at": format_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'CalendarSource':
        return cls(
            id=data["id"],
            type=SourceType(data["type"]),
            name=data["name"],
            url=data["url"],
            color=data.get("color") or "#4285f4",
            username=data.get("username"),
            password=data.get("password"),
            calendar_name=data.get("calendar_name"),
            write_policy=WritePolicy(data.get("write_policy") or "none"),
            last_sync_at=parse_iso(data.get("last_sync_at")),
            last_error_at=parse_iso(data.get("last_error_at")),
            last_error=data.get("last_error"),
            error_count=data.get("error_count") or 0,
            needs_reauth=bool(data.get("needs_reauth")),
            etag=data.get("etag"),
            ctag=data.get("ctag"),
            sync_token=data.get("sync_token"),
            created_at=parse_iso(data.get("created_at")),
            updated_at=parse_iso(data.get("updated_at")),
        )


# Fields compared by the sync upsert to decide whether a row changed
CONTENT_FIELDS = ("title", "description", "location", "start", "end", "all_day", "status")


@dataclass
class CalendarEvent:
    """
    A materialized event occurrence.

    ``source_id`` is None for locally-originated events. The tuple
    (source_id, uid, recurrence_id, start, end) identifies one logical event.
    """
    uid: str
    title: str
    start: datetime
    end: datetime
    source_id: Optional[str] = None
    recurrence_id: Optional[str] = None
    description: str = ""
    location: str = ""
    all_day: bool = False
    status: EventStatus = EventStatus.CONFIRMED
    version: int = 1
    etag: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def identity(self) -> tuple:
        return (self.source_id, self.uid, self.recurrence_id or "", self.start, self.end)

    def content(self) -> tuple:
        return tuple(getattr(self, name) for name in CONTENT_FIELDS)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "uid": self.uid,
            "recurrence_id": self.recurrence_id or "",
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "start": format_iso(self.start),
            "end": format_iso(self.end),
            "all_day": int(self.all_day),
            "status": self.status.value,
            "version": self.version,
            "etag": self.etag,
            "created_at": format_iso(self.created_at),
            "updated_at": format_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'CalendarEvent':
        return cls(
            id=data.get("id"),
            source_id=data.get("source_id"),
            uid=data["uid"],
            recurrence_id=data.get("recurrence_id") or None,
            title=data["title"],
            description=data.get("description") or "",
            location=data.get("location") or "",
            start=parse_iso(data["start"]),
            end=parse_iso(data["end"]),
            all_day=bool(data.get("all_day")),
            status=EventStatus(data.get("status") or "confirmed"),
            version=data.get("version") or 1,
            etag=data.get("etag"),
            created_at=parse_iso(data.get("created_at")),
            updated_at=parse_iso(data.get("updated_at")),
        )


@dataclass
class CalendarAudit:
    """Append-only audit entry."""
    operation: AuditOp
    actor: Actor
    event_id: Optional[int] = None
    source_id: Optional[str] = None
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class CalendarTombstone:
    event_id: int
    source_id: Optional[str]
    uid: str
    deleted_at: datetime
    id: Optional[int] = None


@dataclass
class Todo:
    """A task; recurring when ``rrule`` is set."""
    title: str
    description: str = ""
    due_date: Optional[datetime] = None
    completed: bool = False
    rrule: Optional[str] = None
    recurring_group_id: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    @property
    def is_recurring(self) -> bool:
        return bool(self.rrule and self.recurring_group_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "due_date": format_iso(self.due_date),
            "completed": int(self.completed),
            "rrule": self.rrule,
            "recurring_group_id": self.recurring_group_id,
            "created_at": format_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Todo':
        return cls(
            id=data.get("id"),
            title=data["title"],
            description=data.get("description") or "",
            due_date=parse_iso(data.get("due_date")),
            completed=bool(data.get("completed")),
            rrule=data.get("rrule"),
            recurring_group_id=data.get("recurring_group_id"),
            created_at=parse_iso(data.get("created_at")),
        )


@dataclass
class StoreResult:
    """Outcome of one store_events batch."""
    new: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: list[str] = field(default_factory=list)


@dataclass
class SyncResult:
    """Outcome of one sync cycle for one source."""
    source_id: str
    success: bool
    events_count: int = 0
    new_events: int = 0
    updated_events: int = 0
    errors: list[str] = field(default_factory=list)
    duration: float = 0.0
