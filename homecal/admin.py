"""
Administrative write API and health reporting.

Every mutation follows the same pipeline: validate, check the write gate,
check the quota, persist locally, append an audit entry, then (for
CalDAV-backed events) push the change through the retry executor. Local
state always reflects the user's intent; a failed remote write marks the
event ``failed`` instead of rolling back.
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from .adapter import build_adapters, mask_credential
from .caldav_client import WriteResult
from .config import Config
from .errors import (
    ConflictError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
    WriteNotAllowedError,
)
from .event_storage import EventStorageBackend
from .models import (
    Actor,
    AuditOp,
    CalendarAudit,
    CalendarEvent,
    CalendarSource,
    CalendarTombstone,
    EventStatus,
    SourceType,
)
from .quota_manager import QuotaManager
from .retry import RetryExecutor
from .source_manager import SourceManager
from .timezone_utils import format_iso, to_utc, utc_now

logger = logging.getLogger(__name__)

LOCAL_QUOTA_KEY = "local"

EDITABLE_FIELDS = ("title", "description", "location", "start", "end", "all_day")


def source_snapshot(source: CalendarSource) -> dict:
    """Source as a dict suitable for audit entries (no credentials)."""
    data = source.to_dict()
    data.pop("password", None)
    data["username"] = mask_credential(source.username) if source.username else None
    return data


class AdminService:

    def __init__(
        self,
        storage: EventStorageBackend,
        config: Config,
        adapters: Optional[dict] = None,
        quota: Optional[QuotaManager] = None,
        retry: Optional[RetryExecutor] = None,
        source_manager: Optional[SourceManager] = None,
        merger=None,
        now: Callable[[], datetime] = utc_now,
    ):
        self.storage = storage
        self.config = config
        self.adapters = adapters if adapters is not None else build_adapters(config)
        self.quota = quota if quota is not None else QuotaManager(
            capacity=config.quota.capacity,
            refill_rate=config.quota.refill_rate,
            max_idle=config.quota.max_idle,
        )
        self.retry = retry if retry is not None else RetryExecutor(
            max_attempts=config.quota.max_attempts,
            base_delay=config.quota.base_delay,
            max_delay=config.quota.max_delay,
        )
        self.source_manager = source_manager if source_manager is not None else SourceManager(storage)
        self.merger = merger
        self._now = now

    @property
    def caldav(self):
        return self.adapters[SourceType.CALDAV]

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def _source_for(self, source_id: Optional[str]) -> Optional[CalendarSource]:
        if source_id is None:
            return None
        return self.source_manager.require_source(source_id)

    def _check_gate(self, source: Optional[CalendarSource]) -> None:
        if source is None:
            return
        if source.type == SourceType.ICS:
            raise WriteNotAllowedError(f"ICS source '{source.name}' is read-only")
        self.caldav.check_write_allowed(source)

    def _check_quota(self, source: Optional[CalendarSource]) -> None:
        key = source.id if source is not None else LOCAL_QUOTA_KEY
        if not self.quota.can_write(key):
            raise QuotaExceededError(key, self.quota.remaining_tokens(key))

    def _audit(self, operation: AuditOp, actor: Actor, event: Optional[CalendarEvent] = None,
               source_id: Optional[str] = None, before: Optional[dict] = None,
               after: Optional[dict] = None) -> None:
        self.storage.append_audit(CalendarAudit(
            operation=operation,
            actor=actor,
            event_id=event.id if event is not None else None,
            source_id=source_id if source_id is not None else (event.source_id if event else None),
            before=before,
            after=after,
        ))

    def _invalidate(self) -> None:
        if self.merger is not None:
            self.merger.clear_cache()

    # ------------------------------------------------------------------
    # Remote push
    # ------------------------------------------------------------------

    def _push(
        self,
        source: CalendarSource,
        event: CalendarEvent,
        operation: AuditOp,
        call: Callable[[], WriteResult],
        before: Optional[dict],
        success_status: EventStatus,
        failure_status: EventStatus,
    ) -> CalendarEvent:
        """
        Consume a token and run the remote write; record the outcome on the event.

        The outcome is applied to a fresh read of the row, so a sync that
        updated it while the request was in flight keeps its changes.
        """
        try:
            if not self.quota.consume_token(source.id):
                raise QuotaExceededError(source.id)
            result = self.retry.execute_with_retry(call, f"{operation.value}Event", source.id)
        except Exception as e:
            logger.error("Remote %s of '%s' on '%s' failed: %s",
                         operation.value, event.title, source.name, e)
            with self.storage.transaction():
                event = self._record_outcome(event, failure_status)
                self._audit(operation, Actor.SYSTEM, event, before=before,
                            after={"error": str(e), "status": failure_status.value})
            self._invalidate()
            if isinstance(e, (ConflictError, QuotaExceededError)):
                raise
            return event

        with self.storage.transaction():
            event = self._record_outcome(event, success_status, result.etag)
        logger.info("Remote %s of '%s' on '%s' succeeded%s", operation.value, event.title,
                    source.name, " (dry run)" if result.dry_run else "")
        return event

    def _record_outcome(self, event: CalendarEvent, status: EventStatus,
                        etag: Optional[str] = None) -> CalendarEvent:
        current = self.storage.get_event(event.id) or event
        current.status = status
        if etag:
            current.etag = etag
        self.storage.update_event(current)
        return current

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def create_event(
        self,
        title: str,
        start: datetime,
        end: datetime,
        source_id: Optional[str] = None,
        description: str = "",
        location: str = "",
        all_day: bool = False,
    ) -> CalendarEvent:
        """
        Create an event, locally or on a CalDAV source.

        Raises:
            ValidationError, WriteNotAllowedError, QuotaExceededError,
            ConflictError
        """
        _validate_event_fields(title, start, end)
        source = self._source_for(source_id)
        self._check_gate(source)
        self._check_quota(source)

        remote = source is not None
        event = CalendarEvent(
            uid=str(uuid.uuid4()),
            source_id=source_id,
            title=title.strip(),
            description=description,
            location=location,
            start=to_utc(start),
            end=to_utc(end),
            all_day=all_day,
            status=EventStatus.PENDING if remote else EventStatus.CONFIRMED,
        )
        with self.storage.transaction():
            self.storage.insert_event(event)
            self._audit(AuditOp.CREATE, Actor.USER, event, after=event.to_dict())

        if remote:
            event = self._push(source, event, AuditOp.CREATE,
                               lambda: self.caldav.create_event(source, event),
                               before=None,
                               success_status=EventStatus.CONFIRMED,
                               failure_status=EventStatus.FAILED)
        self._invalidate()
        return event

    def update_event(self, event_id: int, **changes) -> CalendarEvent:
        """Apply field changes (title, description, location, start, end, all_day)."""
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {sorted(unknown)}")
        if not changes:
            raise ValidationError("No changes given")

        event = self._require_event(event_id)
        source = self._source_for(event.source_id)
        self._check_gate(source)
        self._check_quota(source)

        before = event.to_dict()
        for name, value in changes.items():
            if name in ("start", "end"):
                value = to_utc(value)
            setattr(event, name, value)
        _validate_event_fields(event.title, event.start, event.end)
        event.version += 1
        if source is not None:
            event.status = EventStatus.PENDING

        with self.storage.transaction():
            self.storage.update_event(event)
            self._audit(AuditOp.UPDATE, Actor.USER, event, before=before, after=event.to_dict())

        if source is not None:
            attempted = {k: format_iso(v) if isinstance(v, datetime) else v for k, v in changes.items()}
            event = self._push(source, event, AuditOp.UPDATE,
                               lambda: self.caldav.update_event(source, event, before=before, changes=attempted),
                               before=before,
                               success_status=EventStatus.CONFIRMED,
                               failure_status=EventStatus.FAILED)
        self._invalidate()
        return event

    def delete_event(self, event_id: int) -> CalendarEvent:
        """Soft delete: status ``cancelled`` plus a tombstone."""
        event = self._require_event(event_id)
        source = self._source_for(event.source_id)
        self._check_gate(source)
        self._check_quota(source)

        before = event.to_dict()
        deleted_at = self._now()
        with self.storage.transaction():
            event.status = EventStatus.CANCELLED
            self.storage.update_event(event)
            self.storage.add_tombstone(CalendarTombstone(
                event_id=event.id, source_id=event.source_id, uid=event.uid, deleted_at=deleted_at,
            ))
            self._audit(AuditOp.DELETE, Actor.USER, event, before=before,
                        after={"status": EventStatus.CANCELLED.value, "deleted_at": format_iso(deleted_at)})

        if source is not None:
            # The local delete stands even when the server refuses
            event = self._push(source, event, AuditOp.DELETE,
                               lambda: self.caldav.delete_event(source, event),
                               before=before,
                               success_status=EventStatus.CANCELLED,
                               failure_status=EventStatus.CANCELLED)
        self._invalidate()
        return event

    def _require_event(self, event_id: int) -> CalendarEvent:
        event = self.storage.get_event(event_id)
        if event is None:
            raise NotFoundError(f"Unknown event: {event_id}")
        return event

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def update_source(self, source_id: str, name: Optional[str] = None,
                      color: Optional[str] = None, write_policy=None) -> CalendarSource:
        """Change a source's name, color or write policy."""
        source = self.source_manager.require_source(source_id)
        self._check_quota(source)
        before, after = self.source_manager.update_source(
            source_id, name=name, color=color, write_policy=write_policy
        )
        self._audit(AuditOp.SOURCE_UPDATE, Actor.USER, source_id=source_id,
                    before=source_snapshot(before), after=source_snapshot(after))
        self._invalidate()
        return after

    def health_check(self, source_id: str) -> dict:
        """
        Connectivity and sync health of one source.

        Returns a dict with ``ok``, ``last_sync_at``, ``error_count`` and
        ``needs_reauth``, plus ``server`` details for CalDAV sources or a
        ``hint`` when the probe failed.
        """
        source = self.source_manager.require_source(source_id)
        report = {
            "source_id": source.id,
            "name": source.name,
            "type": source.type.value,
            "ok": True,
            "last_sync_at": format_iso(source.last_sync_at),
            "last_error_at": format_iso(source.last_error_at),
            "error_count": source.error_count,
            "needs_reauth": source.needs_reauth,
        }

        adapter = self.adapters.get(source.type)
        try:
            if source.type == SourceType.CALDAV:
                report["server"] = adapter.health_check(source)
            elif not adapter.validate_source(source):
                report["ok"] = False
                report["hint"] = adapter.validation_error(source.id) or "feed is unreachable"
        except Exception as e:
            report["ok"] = False
            report["hint"] = str(e)

        if source.needs_reauth:
            report["ok"] = False
            report.setdefault("hint", "source needs re-authorization")
        return report


def _validate_event_fields(title: str, start: datetime, end: datetime) -> None:
    if not title or not title.strip():
        raise ValidationError("Event title must not be empty")
    if not isinstance(start, datetime) or not isinstance(end, datetime):
        raise ValidationError("Event start and end must be datetimes")
    if to_utc(end) <= to_utc(start):
        raise ValidationError("Event end must be after its start")
