"""
Persistent sync service.

Runs one cycle per source: validate, fetch, reconcile against stored rows,
record metadata and an audit entry. ``SyncScheduler`` repeats the cycle on a
fixed interval in a background thread.
"""

import hashlib
import logging
import threading
import time
from datetime import datetime
from typing import Callable, Optional

from .adapter import CalendarAdapter, build_adapters
from .config import Config
from .errors import ValidationError, is_auth_error, is_auth_message
from .event_storage import EventStorageBackend
from .models import (
    CONTENT_FIELDS,
    Actor,
    AuditOp,
    CalendarAudit,
    CalendarEvent,
    CalendarSource,
    StoreResult,
    SyncResult,
)
from .quota_manager import QuotaManager
from .source_manager import SourceManager
from .timezone_utils import format_iso, utc_now

logger = logging.getLogger(__name__)


def synthetic_uid(event: CalendarEvent) -> str:
    """Stable content hash for events that arrive without a UID."""
    key = f"{event.title}|{format_iso(event.start)}|{format_iso(event.end)}|{event.location}"
    return hashlib.sha1(key.encode("utf-8")).hexdigest()


class PersistentSyncService:
    """Orchestrates adapters, storage and source bookkeeping."""

    def __init__(
        self,
        storage: EventStorageBackend,
        config: Config,
        adapters: Optional[dict] = None,
        source_manager: Optional[SourceManager] = None,
        quota: Optional[QuotaManager] = None,
        now: Callable[[], datetime] = utc_now,
    ):
        self.storage = storage
        self.config = config
        self.adapters: dict = adapters if adapters is not None else build_adapters(config)
        self.source_manager = source_manager if source_manager is not None else SourceManager(storage)
        self.quota = quota
        self._now = now
        self._source_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def bootstrap(self) -> tuple[int, int]:
        return self.source_manager.bootstrap_sources(self.config)

    def adapter_for(self, source: CalendarSource) -> CalendarAdapter:
        adapter = self.adapters.get(source.type)
        if adapter is None:
            raise ValidationError(f"No adapter for source type {source.type.value}")
        return adapter

    def _source_lock(self, source_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._source_locks.setdefault(source_id, threading.Lock())

    # ------------------------------------------------------------------
    # Sync cycle
    # ------------------------------------------------------------------

    def sync_source(self, source: CalendarSource) -> SyncResult:
        """
        Run one full cycle for a source.

        Failures are recorded on the source and reported in the result; they
        are never raised.
        """
        lock = self._source_lock(source.id)
        if not lock.acquire(blocking=False):
            logger.info("Sync of '%s' already in progress, skipping", source.name)
            return SyncResult(source_id=source.id, success=False,
                              errors=["sync already in progress"])
        try:
            return self._sync_source_locked(source)
        finally:
            lock.release()

    def _sync_source_locked(self, source: CalendarSource) -> SyncResult:
        started = time.monotonic()
        result = SyncResult(source_id=source.id, success=False)

        try:
            adapter = self.adapter_for(source)
        except ValidationError as e:
            result.errors.append(str(e))
            self.source_manager.record_failure(source.id, str(e), at=self._now())
            return result

        if not adapter.validate_source(source):
            reason = adapter.validation_error(source.id) or "validation failed"
            auth = is_auth_message(reason)
            self.source_manager.record_failure(source.id, reason, auth=auth, at=self._now())
            logger.warning("Source '%s' failed validation: %s", source.name, reason)
            result.errors.append(reason)
            result.duration = time.monotonic() - started
            return result

        try:
            events = adapter.fetch_events(source)
        except Exception as e:
            auth = is_auth_error(e)
            self.source_manager.record_failure(source.id, str(e), auth=auth, at=self._now())
            if auth:
                logger.error("Source '%s' needs re-authorization: %s", source.name, e)
            else:
                logger.error("Fetching '%s' failed: %s", source.name, e)
            result.errors.append(str(e))
            result.duration = time.monotonic() - started
            return result

        stored = self.store_events(source.id, events)

        self.source_manager.record_success(source.id, etag=adapter.etag_for(source.id), at=self._now())
        self.storage.append_audit(CalendarAudit(
            operation=AuditOp.SYNC,
            actor=Actor.SYSTEM,
            source_id=source.id,
            after={
                "fetched": len(events),
                "new": stored.new,
                "updated": stored.updated,
                "failed": len(stored.failed),
            },
        ))

        result.success = True
        result.events_count = len(events)
        result.new_events = stored.new
        result.updated_events = stored.updated
        result.errors.extend(stored.failed)
        result.duration = time.monotonic() - started
        logger.info("Synced '%s': %d events (%d new, %d updated, %d failed) in %.2fs",
                    source.name, len(events), stored.new, stored.updated,
                    len(stored.failed), result.duration)
        return result

    def sync_all(self) -> list[SyncResult]:
        """One cycle over every source. One source's failure never stops the others."""
        results = []
        for source in self.source_manager.get_all_sources():
            if source.needs_reauth:
                logger.warning("Skipping '%s': needs re-authorization", source.name)
                results.append(SyncResult(source_id=source.id, success=False,
                                          errors=["needs re-authorization"]))
                continue
            try:
                results.append(self.sync_source(source))
            except Exception as e:
                logger.exception("Unexpected error syncing '%s'", source.name)
                results.append(SyncResult(source_id=source.id, success=False, errors=[str(e)]))
        return results

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def store_events(self, source_id: str, events: list[CalendarEvent]) -> StoreResult:
        """
        Idempotent upsert of fetched events.

        Each event is matched on (source, uid, recurrence id, start, end). New
        rows start at version 1, rows whose content changed are updated with
        version + 1, identical rows are left alone. A failing event is recorded
        and the batch continues.
        """
        result = StoreResult()
        for event in events:
            try:
                with self.storage.transaction():
                    outcome = self._upsert(source_id, event)
            except Exception as e:
                logger.warning("Failed to store event %r of source %s: %s",
                               event.uid or event.title, source_id, e)
                result.failed.append(f"{event.uid or event.title}: {e}")
                continue
            if outcome == "new":
                result.new += 1
            elif outcome == "updated":
                result.updated += 1
            else:
                result.unchanged += 1
        return result

    def _upsert(self, source_id: str, event: CalendarEvent) -> str:
        event.source_id = source_id
        if not event.uid:
            event.uid = synthetic_uid(event)

        existing = self.storage.find_event(
            source_id, event.uid, event.recurrence_id, event.start, event.end
        )
        if existing is None:
            event.version = 1
            self.storage.insert_event(event)
            return "new"

        if existing.content() == event.content():
            return "unchanged"

        for name in CONTENT_FIELDS:
            setattr(existing, name, getattr(event, name))
        existing.version += 1
        self.storage.update_event(existing)
        return "updated"

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    def get_source_events(self, source_id: str, start: Optional[datetime] = None,
                          end: Optional[datetime] = None) -> list[CalendarEvent]:
        return self.storage.list_events(source_id=source_id, start=start, end=end)

    def get_all_events(self, start: Optional[datetime] = None,
                       end: Optional[datetime] = None) -> list[CalendarEvent]:
        """Synced events of all sources overlapping the window, cancelled ones excluded."""
        return self.storage.list_events(start=start, end=end, include_cancelled=False)


class SyncScheduler:
    """
    Background loop running ``sync_all`` every ``interval`` seconds.

    ``start`` bootstraps the catalog and runs the first cycle immediately.
    ``tick`` runs exactly one cycle and is safe to call from tests.
    """

    def __init__(self, service: PersistentSyncService, interval: Optional[float] = None):
        self.service = service
        self.interval = interval if interval is not None else service.config.sync.interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._state_lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self.last_tick_at: Optional[datetime] = None
        self.last_results: list[SyncResult] = []

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """Start the loop. Returns False when already running or sync is disabled."""
        with self._state_lock:
            if self.running:
                logger.debug("Sync scheduler already running")
                return False
            if not self.service.config.features.sync_enabled:
                logger.info("Calendar sync is disabled")
                return False

            self.service.bootstrap()
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._run, name="homecal-sync", daemon=True)
            self._thread.start()
            logger.info("Sync scheduler started (interval %ss)", self.interval)
            return True

    def stop(self, timeout: Optional[float] = None) -> None:
        """Cancel future ticks. An in-flight cycle finishes on its own."""
        with self._state_lock:
            self._stop_event.set()
            thread = self._thread
            self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        logger.info("Sync scheduler stopped")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Sync cycle failed")
            if self._stop_event.wait(self.interval):
                break

    def tick(self) -> list[SyncResult]:
        with self._tick_lock:
            results = self.service.sync_all()
            if self.service.quota is not None:
                self.service.quota.maybe_cleanup()
            self.last_tick_at = utc_now()
            self.last_results = results
            return results

    def status(self) -> dict:
        return {
            "running": self.running,
            "interval": self.interval,
            "last_tick_at": format_iso(self.last_tick_at),
            "sources": len(self.service.source_manager.get_all_sources()),
        }
