"""
Homecal calendar sync engine

This package aggregates remote calendars into one local event store:
- Configuration parsing (config.py)
- Recurrence rules and next-due computation (recurrence.py)
- ICS feed and CalDAV adapters (ics_subscription.py, caldav_client.py)
- Per-source write quota and retry policy (quota_manager.py, retry.py)
- SQLite persistence (event_storage.py)
- Source catalog, sync service and scheduler (source_manager.py, sync_service.py)
- Merged timeline, admin writes and recurring todos (event_merger.py, admin.py, todos.py)
"""

from .config import Config
from .errors import (
    CalendarError,
    ConflictError,
    FetchError,
    NotFoundError,
    QuotaExceededError,
    RemoteWriteError,
    ValidationError,
    WriteNotAllowedError,
)
from .models import (
    CalendarEvent,
    CalendarSource,
    EventStatus,
    SourceType,
    Todo,
    WritePolicy,
)
from .recurrence import Rule, expand, next_due_date, parse_rule
from .ics_subscription import ICSAdapter
from .caldav_client import CalDAVAdapter
from .quota_manager import QuotaManager
from .retry import RetryExecutor
from .event_storage import SQLiteEventStorage, create_storage_backend
from .source_manager import SourceManager
from .sync_service import PersistentSyncService, SyncScheduler
from .event_merger import EventMerger, MergedEvent
from .admin import AdminService
from .todos import TodoService

__version__ = "0.1.0"

__all__ = [
    'Config',
    'CalendarError',
    'ConflictError',
    'FetchError',
    'NotFoundError',
    'QuotaExceededError',
    'RemoteWriteError',
    'ValidationError',
    'WriteNotAllowedError',
    'CalendarEvent',
    'CalendarSource',
    'EventStatus',
    'SourceType',
    'Todo',
    'WritePolicy',
    'Rule',
    'expand',
    'next_due_date',
    'parse_rule',
    'ICSAdapter',
    'CalDAVAdapter',
    'QuotaManager',
    'RetryExecutor',
    'SQLiteEventStorage',
    'create_storage_backend',
    'SourceManager',
    'PersistentSyncService',
    'SyncScheduler',
    'EventMerger',
    'MergedEvent',
    'AdminService',
    'TodoService',
]
