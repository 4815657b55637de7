"""
Tests for the sync cycle, reconciliation and the background scheduler.
"""

from datetime import datetime

import pytest
import pytz

from homecal.adapter import CalendarAdapter
from homecal.caldav_client import CalDAVAdapter
from homecal.errors import FetchError
from homecal.ics_subscription import ICSAdapter
from homecal.models import AuditOp, CalendarEvent, EventStatus, SourceType
from homecal.quota_manager import QuotaManager
from homecal.sync_service import PersistentSyncService, SyncScheduler, synthetic_uid
from tests.conftest import NOW, make_calendar, make_vevent
from tests.fake_dav import AuthorizationError, FakeCalendar, FakeDAVClient, FakeHTTPResponse, FakeSession


def utc(*args):
    return datetime(*args, tzinfo=pytz.UTC)


class FailingAdapter(CalendarAdapter):
    """Validates fine, then fails every fetch with the given error."""

    def __init__(self, error):
        super().__init__()
        self.error = error

    def fetch_events(self, source):
        raise self.error

    def validate_source(self, source):
        return True


@pytest.fixture
def session():
    return FakeSession(get_response=FakeHTTPResponse(
        200,
        text=make_calendar(make_vevent("a", "Standup"), make_vevent("b", "Lunch")),
        headers={"ETag": '"v1"'},
    ))


@pytest.fixture
def dav_client():
    return FakeDAVClient(calendars=[
        FakeCalendar("Personal", "https://dav.example.com/cal/personal/",
                     [make_calendar(make_vevent("d1", "Gym"))]),
    ])


@pytest.fixture
def adapters(config, session, dav_client):
    return {
        SourceType.ICS: ICSAdapter(config, session=session, now=lambda: NOW),
        SourceType.CALDAV: CalDAVAdapter(config, client_factory=lambda s, t: dav_client,
                                         now=lambda: NOW),
    }


@pytest.fixture
def service(storage, config, adapters, clock):
    return PersistentSyncService(storage, config, adapters=adapters,
                                 quota=QuotaManager(clock=clock), now=lambda: NOW)


class TestSyncSource:
    def test_first_sync_inserts(self, service, storage, ics_source):
        result = service.sync_source(ics_source)
        assert result.success
        assert (result.events_count, result.new_events, result.updated_events) == (2, 2, 0)

        events = service.get_source_events(ics_source.id)
        assert sorted(e.title for e in events) == ["Lunch", "Standup"]
        assert all(e.version == 1 for e in events)

        source = storage.get_source(ics_source.id)
        assert source.last_sync_at == NOW
        assert source.etag == '"v1"'

        audit = storage.list_audit(source_id=ics_source.id)
        assert [entry.operation for entry in audit] == [AuditOp.SYNC]
        assert audit[0].after["new"] == 2

    def test_repeat_sync_is_a_no_op(self, service, ics_source):
        service.sync_source(ics_source)
        result = service.sync_source(ics_source)
        assert (result.new_events, result.updated_events) == (0, 0)
        events = service.get_source_events(ics_source.id)
        assert len(events) == 2
        assert all(e.version == 1 for e in events)

    def test_changed_content_bumps_version(self, service, session, ics_source):
        service.sync_source(ics_source)
        session.get_response = FakeHTTPResponse(200, text=make_calendar(
            make_vevent("a", "Standup (remote)"), make_vevent("b", "Lunch"),
        ))
        result = service.sync_source(ics_source)
        assert (result.new_events, result.updated_events) == (0, 1)
        by_uid = {e.uid: e for e in service.get_source_events(ics_source.id)}
        assert by_uid["a"].title == "Standup (remote)"
        assert by_uid["a"].version == 2
        assert by_uid["b"].version == 1

    def test_caldav_source(self, service, caldav_source):
        result = service.sync_source(caldav_source)
        assert result.success
        assert [e.title for e in service.get_source_events(caldav_source.id)] == ["Gym"]

    def test_validation_failure_is_recorded(self, service, session, storage, ics_source):
        session.head_response = FakeHTTPResponse(500, headers={"Content-Type": "text/plain"})
        result = service.sync_source(ics_source)
        assert not result.success
        source = storage.get_source(ics_source.id)
        assert source.error_count == 1
        assert not source.needs_reauth
        assert session.gets == []

    def test_auth_failure_needs_reauth(self, service, dav_client, storage, caldav_source):
        dav_client.principal_error = AuthorizationError("401 Unauthorized")
        result = service.sync_source(caldav_source)
        assert not result.success
        assert storage.get_source(caldav_source.id).needs_reauth

    def test_fetch_failure_is_recorded(self, service, storage, ics_source):
        service.adapters[SourceType.ICS] = FailingAdapter(FetchError("HTTP 502: Bad Gateway"))
        result = service.sync_source(ics_source)
        assert not result.success
        assert "HTTP 502" in result.errors[0]
        source = storage.get_source(ics_source.id)
        assert source.error_count == 1
        assert source.last_error == "HTTP 502: Bad Gateway"

    def test_fetch_auth_failure(self, service, storage, ics_source):
        service.adapters[SourceType.ICS] = FailingAdapter(FetchError("invalid_grant", status=401))
        service.sync_source(ics_source)
        assert storage.get_source(ics_source.id).needs_reauth

    def test_overlapping_sync_is_skipped(self, service, ics_source):
        lock = service._source_lock(ics_source.id)
        lock.acquire()
        try:
            result = service.sync_source(ics_source)
        finally:
            lock.release()
        assert not result.success
        assert result.errors == ["sync already in progress"]


class TestSyncAll:
    def test_failure_is_isolated(self, service, ics_source, caldav_source):
        service.adapters[SourceType.ICS] = FailingAdapter(FetchError("HTTP 503"))
        results = {r.source_id: r for r in service.sync_all()}
        assert not results[ics_source.id].success
        assert results[caldav_source.id].success

    def test_reauth_sources_are_skipped(self, service, storage, session, ics_source):
        storage.update_source_fields(ics_source.id, needs_reauth=True)
        results = service.sync_all()
        assert results[0].errors == ["needs re-authorization"]
        assert session.gets == []


class TestStoreEvents:
    def make(self, uid="x", title="Talk", **kwargs):
        return CalendarEvent(uid=uid, title=title, start=utc(2026, 3, 5, 10),
                             end=utc(2026, 3, 5, 11), **kwargs)

    def test_synthetic_uid(self, service, ics_source):
        event = self.make(uid="")
        service.store_events(ics_source.id, [event])
        stored = service.get_source_events(ics_source.id)[0]
        assert stored.uid == synthetic_uid(event)
        assert len(stored.uid) == 40

    def test_synthetic_uid_is_stable(self):
        assert synthetic_uid(self.make(uid="")) == synthetic_uid(self.make(uid="other"))

    def test_status_change_is_an_update(self, service, ics_source):
        service.store_events(ics_source.id, [self.make()])
        result = service.store_events(ics_source.id, [self.make(status=EventStatus.CANCELLED)])
        assert result.updated == 1
        assert service.get_all_events() == []

    def test_bad_event_does_not_abort_batch(self, service, ics_source):
        bad = self.make(uid="bad")
        bad.start = None
        result = service.store_events(ics_source.id, [bad, self.make(uid="good")])
        assert result.new == 1
        assert len(result.failed) == 1
        assert [e.uid for e in service.get_source_events(ics_source.id)] == ["good"]

    def test_get_all_events_window(self, service, ics_source):
        service.store_events(ics_source.id, [self.make()])
        assert len(service.get_all_events(utc(2026, 3, 5), utc(2026, 3, 6))) == 1
        assert service.get_all_events(utc(2026, 3, 6), utc(2026, 3, 7)) == []


class TestScheduler:
    def test_tick(self, service, ics_source):
        scheduler = SyncScheduler(service, interval=60)
        results = scheduler.tick()
        assert [r.source_id for r in results] == [ics_source.id]
        assert scheduler.last_tick_at is not None
        assert scheduler.status()["sources"] == 1

    def test_disabled_sync_does_not_start(self, service, config):
        config.features.sync_enabled = False
        scheduler = SyncScheduler(service)
        assert scheduler.start() is False
        assert not scheduler.running

    def test_start_bootstraps_and_stop(self, service, storage):
        scheduler = SyncScheduler(service, interval=3600)
        assert scheduler.start() is True
        assert scheduler.start() is False
        scheduler.stop(timeout=10)
        assert not scheduler.running
        assert len(storage.list_sources()) == 2

    def test_interval_defaults_to_config(self, service, config):
        assert SyncScheduler(service).interval == config.sync.interval_seconds
