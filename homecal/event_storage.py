"""
Persistent storage for sources, synced and local events, audit entries,
tombstones and todos.

Abstract base class plus a SQLite implementation. Timestamps are stored as
canonical ISO-8601 strings (UTC for event times, naive local for todo due
dates) so identity keys compare as plain text.
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from .errors import NotFoundError
from .models import (
    Actor,
    AuditOp,
    CalendarAudit,
    CalendarEvent,
    CalendarSource,
    CalendarTombstone,
    EventStatus,
    Todo,
)
from .timezone_utils import format_iso, parse_iso, utc_now

logger = logging.getLogger(__name__)


class EventStorageBackend(ABC):
    """
    Abstract base class for storage backends.

    Every read-compare-write sequence must run inside ``transaction()``.
    """

    @abstractmethod
    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group operations atomically; nested use joins the outer transaction."""
        pass

    # Sources
    @abstractmethod
    def save_source(self, source: CalendarSource) -> None:
        """Insert or replace a source row."""
        pass

    @abstractmethod
    def get_source(self, source_id: str) -> Optional[CalendarSource]:
        pass

    @abstractmethod
    def list_sources(self) -> list[CalendarSource]:
        pass

    @abstractmethod
    def update_source_fields(self, source_id: str, **fields) -> None:
        pass

    # Events
    @abstractmethod
    def find_event(self, source_id: Optional[str], uid: str, recurrence_id: Optional[str],
                   start: datetime, end: datetime) -> Optional[CalendarEvent]:
        """Look up an event by its identity key."""
        pass

    @abstractmethod
    def get_event(self, event_id: int) -> Optional[CalendarEvent]:
        pass

    @abstractmethod
    def insert_event(self, event: CalendarEvent) -> int:
        pass

    @abstractmethod
    def update_event(self, event: CalendarEvent) -> None:
        pass

    @abstractmethod
    def list_events(self, source_id: Optional[str] = None, start: Optional[datetime] = None,
                    end: Optional[datetime] = None, local: bool = False,
                    include_cancelled: bool = True) -> list[CalendarEvent]:
        pass

    # Audit / tombstones
    @abstractmethod
    def append_audit(self, entry: CalendarAudit) -> int:
        pass

    @abstractmethod
    def list_audit(self, source_id: Optional[str] = None,
                   event_id: Optional[int] = None) -> list[CalendarAudit]:
        pass

    @abstractmethod
    def add_tombstone(self, tombstone: CalendarTombstone) -> int:
        pass

    @abstractmethod
    def list_tombstones(self) -> list[CalendarTombstone]:
        pass

    # Todos
    @abstractmethod
    def insert_todo(self, todo: Todo) -> int:
        pass

    @abstractmethod
    def get_todo(self, todo_id: int) -> Optional[Todo]:
        pass

    @abstractmethod
    def update_todo(self, todo: Todo) -> None:
        pass

    @abstractmethod
    def delete_todo(self, todo_id: int) -> None:
        pass

    @abstractmethod
    def list_todos(self, group_id: Optional[str] = None,
                   completed: Optional[bool] = None) -> list[Todo]:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


SCHEMA = """
CREATE TABLE IF NOT EXISTS calendar_sources (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    name TEXT NOT NULL,
    url TEXT NOT NULL,
    color TEXT NOT NULL,
    username TEXT,
    password TEXT,
    calendar_name TEXT,
    write_policy TEXT NOT NULL DEFAULT 'none',
    last_sync_at TEXT,
    last_error_at TEXT,
    last_error TEXT,
    error_count INTEGER NOT NULL DEFAULT 0,
    needs_reauth INTEGER NOT NULL DEFAULT 0,
    etag TEXT,
    ctag TEXT,
    sync_token TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS calendar_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id TEXT REFERENCES calendar_sources(id),
    uid TEXT NOT NULL,
    recurrence_id TEXT NOT NULL DEFAULT '',
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    location TEXT NOT NULL DEFAULT '',
    start TEXT NOT NULL,
    "end" TEXT NOT NULL,
    all_day INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    etag TEXT,
    created_at TEXT,
    updated_at TEXT,
    UNIQUE(source_id, uid, recurrence_id, start, "end")
);

CREATE INDEX IF NOT EXISTS idx_events_window ON calendar_events(start, "end");

CREATE TABLE IF NOT EXISTS calendar_audit (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id INTEGER,
    source_id TEXT,
    operation TEXT NOT NULL,
    actor TEXT NOT NULL,
    before TEXT,
    after TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS calendar_tombstones (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id INTEGER NOT NULL,
    source_id TEXT,
    uid TEXT NOT NULL,
    deleted_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS todos (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    due_date TEXT,
    completed INTEGER NOT NULL DEFAULT 0,
    rrule TEXT,
    recurring_group_id TEXT,
    created_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_todos_group ON todos(recurring_group_id);
"""

SOURCE_COLUMNS = (
    "id", "type", "name", "url", "color", "username", "password", "calendar_name",
    "write_policy", "last_sync_at", "last_error_at", "last_error", "error_count",
    "needs_reauth", "etag", "ctag", "sync_token", "created_at", "updated_at",
)

EVENT_COLUMNS = (
    "source_id", "uid", "recurrence_id", "title", "description", "location",
    "start", "end", "all_day", "status", "version", "etag", "created_at", "updated_at",
)

_DATETIME_SOURCE_FIELDS = ("last_sync_at", "last_error_at", "created_at", "updated_at")


def _quote(column: str) -> str:
    return f'"{column}"'


class SQLiteEventStorage(EventStorageBackend):
    """
    SQLite-backed storage.

    One connection per storage object, shared between the scheduler thread
    and callers and serialized by a re-entrant lock.
    """

    def __init__(self, db_path):
        self.db_path = Path(db_path) if db_path != ":memory:" else db_path
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._depth = 0

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self) -> None:
        """Open the database and create the schema if needed."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False,
                                    isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.executescript(SCHEMA)
        logger.debug("Opened storage at %s", self.db_path)

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def _db(self) -> sqlite3.Connection:
        if self.conn is None:
            self.connect()
        return self.conn

    @contextmanager
    def transaction(self):
        with self._lock:
            db = self._db()
            outermost = self._depth == 0
            if outermost:
                db.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield
            except BaseException:
                self._depth -= 1
                if outermost:
                    db.execute("ROLLBACK")
                raise
            self._depth -= 1
            if outermost:
                db.execute("COMMIT")

    def _execute(self, sql: str, params=()) -> sqlite3.Cursor:
        with self._lock:
            return self._db().execute(sql, params)

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def save_source(self, source: CalendarSource) -> None:
        now = utc_now()
        if source.created_at is None:
            source.created_at = now
        source.updated_at = now
        row = source.to_dict()
        columns = ", ".join(SOURCE_COLUMNS)
        placeholders = ", ".join("?" for _ in SOURCE_COLUMNS)
        updates = ", ".join(
            f"{c} = excluded.{c}" for c in SOURCE_COLUMNS if c not in ("id", "created_at")
        )
        self._execute(
            f"INSERT INTO calendar_sources ({columns}) VALUES ({placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}",
            [row[c] for c in SOURCE_COLUMNS],
        )

    def get_source(self, source_id: str) -> Optional[CalendarSource]:
        row = self._execute("SELECT * FROM calendar_sources WHERE id = ?", (source_id,)).fetchone()
        return CalendarSource.from_dict(dict(row)) if row else None

    def list_sources(self) -> list[CalendarSource]:
        rows = self._execute("SELECT * FROM calendar_sources ORDER BY name, id").fetchall()
        return [CalendarSource.from_dict(dict(row)) for row in rows]

    def update_source_fields(self, source_id: str, **fields) -> None:
        if "id" in fields or not set(fields) <= set(SOURCE_COLUMNS):
            raise ValueError(f"Cannot update source fields: {sorted(fields)}")
        fields["updated_at"] = utc_now()
        values = []
        for name, value in fields.items():
            if name in _DATETIME_SOURCE_FIELDS:
                value = format_iso(value)
            elif hasattr(value, "value"):
                value = value.value
            elif isinstance(value, bool):
                value = int(value)
            values.append(value)
        assignments = ", ".join(f"{name} = ?" for name in fields)
        cursor = self._execute(
            f"UPDATE calendar_sources SET {assignments} WHERE id = ?", [*values, source_id]
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Unknown source: {source_id}")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def find_event(self, source_id, uid, recurrence_id, start, end) -> Optional[CalendarEvent]:
        if source_id is None:
            source_clause = "source_id IS NULL"
            params = []
        else:
            source_clause = "source_id = ?"
            params = [source_id]
        row = self._execute(
            f'SELECT * FROM calendar_events WHERE {source_clause} AND uid = ? '
            f'AND recurrence_id = ? AND start = ? AND "end" = ?',
            [*params, uid, recurrence_id or "", format_iso(start), format_iso(end)],
        ).fetchone()
        return CalendarEvent.from_dict(dict(row)) if row else None

    def get_event(self, event_id: int) -> Optional[CalendarEvent]:
        row = self._execute("SELECT * FROM calendar_events WHERE id = ?", (event_id,)).fetchone()
        return CalendarEvent.from_dict(dict(row)) if row else None

    def insert_event(self, event: CalendarEvent) -> int:
        now = utc_now()
        event.created_at = event.created_at or now
        event.updated_at = now
        row = event.to_dict()
        columns = ", ".join(_quote(c) for c in EVENT_COLUMNS)
        placeholders = ", ".join("?" for _ in EVENT_COLUMNS)
        cursor = self._execute(
            f"INSERT INTO calendar_events ({columns}) VALUES ({placeholders})",
            [row[c] for c in EVENT_COLUMNS],
        )
        event.id = cursor.lastrowid
        return event.id

    def update_event(self, event: CalendarEvent) -> None:
        if event.id is None:
            raise ValueError("Cannot update an event without id")
        event.updated_at = utc_now()
        row = event.to_dict()
        columns = [c for c in EVENT_COLUMNS if c != "created_at"]
        assignments = ", ".join(f"{_quote(c)} = ?" for c in columns)
        cursor = self._execute(
            f"UPDATE calendar_events SET {assignments} WHERE id = ?",
            [*(row[c] for c in columns), event.id],
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Unknown event: {event.id}")

    def list_events(self, source_id=None, start=None, end=None, local=False,
                    include_cancelled=True) -> list[CalendarEvent]:
        clauses = []
        params: list = []
        if local:
            clauses.append("source_id IS NULL")
        elif source_id is not None:
            clauses.append("source_id = ?")
            params.append(source_id)
        else:
            clauses.append("source_id IS NOT NULL")
        if start is not None:
            clauses.append('"end" >= ?')
            params.append(format_iso(start))
        if end is not None:
            clauses.append("start <= ?")
            params.append(format_iso(end))
        if not include_cancelled:
            clauses.append("status != ?")
            params.append(EventStatus.CANCELLED.value)
            clauses.append("id NOT IN (SELECT event_id FROM calendar_tombstones)")
        rows = self._execute(
            f"SELECT * FROM calendar_events WHERE {' AND '.join(clauses)} ORDER BY start, id",
            params,
        ).fetchall()
        return [CalendarEvent.from_dict(dict(row)) for row in rows]

    # ------------------------------------------------------------------
    # Audit and tombstones
    # ------------------------------------------------------------------

    def append_audit(self, entry: CalendarAudit) -> int:
        entry.created_at = entry.created_at or utc_now()
        cursor = self._execute(
            "INSERT INTO calendar_audit (event_id, source_id, operation, actor, before, after, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                entry.event_id,
                entry.source_id,
                entry.operation.value,
                entry.actor.value,
                json.dumps(entry.before) if entry.before is not None else None,
                json.dumps(entry.after) if entry.after is not None else None,
                format_iso(entry.created_at),
            ),
        )
        entry.id = cursor.lastrowid
        return entry.id

    def list_audit(self, source_id=None, event_id=None) -> list[CalendarAudit]:
        clauses = ["1 = 1"]
        params: list = []
        if source_id is not None:
            clauses.append("source_id = ?")
            params.append(source_id)
        if event_id is not None:
            clauses.append("event_id = ?")
            params.append(event_id)
        rows = self._execute(
            f"SELECT * FROM calendar_audit WHERE {' AND '.join(clauses)} ORDER BY id", params
        ).fetchall()
        return [
            CalendarAudit(
                id=row["id"],
                event_id=row["event_id"],
                source_id=row["source_id"],
                operation=AuditOp(row["operation"]),
                actor=Actor(row["actor"]),
                before=json.loads(row["before"]) if row["before"] else None,
                after=json.loads(row["after"]) if row["after"] else None,
                created_at=parse_iso(row["created_at"]),
            )
            for row in rows
        ]

    def add_tombstone(self, tombstone: CalendarTombstone) -> int:
        cursor = self._execute(
            "INSERT INTO calendar_tombstones (event_id, source_id, uid, deleted_at) VALUES (?, ?, ?, ?)",
            (tombstone.event_id, tombstone.source_id, tombstone.uid, format_iso(tombstone.deleted_at)),
        )
        tombstone.id = cursor.lastrowid
        return tombstone.id

    def list_tombstones(self) -> list[CalendarTombstone]:
        rows = self._execute("SELECT * FROM calendar_tombstones ORDER BY id").fetchall()
        return [
            CalendarTombstone(
                id=row["id"],
                event_id=row["event_id"],
                source_id=row["source_id"],
                uid=row["uid"],
                deleted_at=parse_iso(row["deleted_at"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Todos
    # ------------------------------------------------------------------

    def insert_todo(self, todo: Todo) -> int:
        todo.created_at = todo.created_at or utc_now()
        row = todo.to_dict()
        cursor = self._execute(
            "INSERT INTO todos (title, description, due_date, completed, rrule, recurring_group_id, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (row["title"], row["description"], row["due_date"], row["completed"],
             row["rrule"], row["recurring_group_id"], row["created_at"]),
        )
        todo.id = cursor.lastrowid
        return todo.id

    def get_todo(self, todo_id: int) -> Optional[Todo]:
        row = self._execute("SELECT * FROM todos WHERE id = ?", (todo_id,)).fetchone()
        return Todo.from_dict(dict(row)) if row else None

    def update_todo(self, todo: Todo) -> None:
        row = todo.to_dict()
        cursor = self._execute(
            "UPDATE todos SET title = ?, description = ?, due_date = ?, completed = ?, "
            "rrule = ?, recurring_group_id = ? WHERE id = ?",
            (row["title"], row["description"], row["due_date"], row["completed"],
             row["rrule"], row["recurring_group_id"], todo.id),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Unknown todo: {todo.id}")

    def delete_todo(self, todo_id: int) -> None:
        cursor = self._execute("DELETE FROM todos WHERE id = ?", (todo_id,))
        if cursor.rowcount == 0:
            raise NotFoundError(f"Unknown todo: {todo_id}")

    def list_todos(self, group_id=None, completed=None) -> list[Todo]:
        clauses = ["1 = 1"]
        params: list = []
        if group_id is not None:
            clauses.append("recurring_group_id = ?")
            params.append(group_id)
        if completed is not None:
            clauses.append("completed = ?")
            params.append(int(completed))
        rows = self._execute(
            f"SELECT * FROM todos WHERE {' AND '.join(clauses)} ORDER BY due_date, id", params
        ).fetchall()
        return [Todo.from_dict(dict(row)) for row in rows]


def create_storage_backend(db_path=None) -> EventStorageBackend:
    """Factory: open the SQLite store at db_path (default from Config)."""
    if db_path is None:
        from .config import Config
        db_path = Config.get_default_database_path()
    storage = SQLiteEventStorage(db_path)
    storage.connect()
    return storage
