"""
Tests for the merged, de-duplicated timeline.
"""

from datetime import datetime

import pytest
import pytz

from homecal.event_merger import EventMerger
from homecal.models import CalendarEvent, CalendarTombstone, EventStatus, SourceType
from homecal.sync_service import PersistentSyncService

WINDOW = (datetime(2026, 3, 1, tzinfo=pytz.UTC), datetime(2026, 3, 31, tzinfo=pytz.UTC))


def utc(*args):
    return datetime(*args, tzinfo=pytz.UTC)


def add(storage, uid, title, start, source_id=None, **kwargs):
    event = CalendarEvent(uid=uid, title=title, start=start, end=start.replace(hour=start.hour + 1),
                          source_id=source_id, **kwargs)
    storage.insert_event(event)
    return event


@pytest.fixture
def merger(storage, config, clock):
    service = PersistentSyncService(storage, config, adapters={})
    return EventMerger(storage, service, ttl=30, clock=clock)


class TestMerge:
    def test_sorted_by_start_then_priority(self, merger, storage, ics_source, caldav_source):
        add(storage, "i1", "Holiday", utc(2026, 3, 5, 9), ics_source.id)
        add(storage, "c1", "Meeting", utc(2026, 3, 5, 9), caldav_source.id)
        add(storage, "l1", "Errand", utc(2026, 3, 5, 9))
        add(storage, "l2", "Early", utc(2026, 3, 5, 8))

        merged = merger.get_merged_events(*WINDOW)
        assert [m.event.uid for m in merged] == ["l2", "l1", "c1", "i1"]
        assert [m.source_type for m in merged] == [
            SourceType.LOCAL, SourceType.LOCAL, SourceType.CALDAV, SourceType.ICS,
        ]
        assert merged[2].source_name == "Home"
        assert merged[3].color == "#34a853"

    def test_local_event_hides_synced_copy(self, merger, storage, ics_source, caldav_source):
        add(storage, "l1", "Dentist", utc(2026, 3, 5, 10))
        add(storage, "c1", "Dentist", utc(2026, 3, 5, 10), caldav_source.id)
        add(storage, "i1", "Dentist", utc(2026, 3, 5, 10), ics_source.id)
        merged = merger.get_merged_events(*WINDOW)
        assert [m.event.uid for m in merged] == ["l1"]

    def test_same_title_and_start_across_source_types_both_kept(self, merger, storage,
                                                                 ics_source, caldav_source):
        add(storage, "c1", "Standup", utc(2026, 3, 5, 10), caldav_source.id)
        add(storage, "i1", "Standup", utc(2026, 3, 5, 10), ics_source.id)
        merged = merger.get_merged_events(*WINDOW)
        assert [m.event.uid for m in merged] == ["c1", "i1"]

    def test_duplicates_within_source_type_collapse(self, merger, storage, ics_source):
        add(storage, "i1", "Standup", utc(2026, 3, 5, 10), ics_source.id)
        add(storage, "i2", "Standup", utc(2026, 3, 5, 10), ics_source.id)
        assert len(merger.get_merged_events(*WINDOW)) == 1

    def test_cancelled_and_deleted_are_excluded(self, merger, storage, ics_source):
        add(storage, "i1", "Gone", utc(2026, 3, 5, 10), ics_source.id, status=EventStatus.CANCELLED)
        deleted = add(storage, "l1", "Deleted", utc(2026, 3, 6, 10))
        storage.add_tombstone(CalendarTombstone(event_id=deleted.id, source_id=None, uid="l1",
                                                deleted_at=utc(2026, 3, 4)))
        assert merger.get_merged_events(*WINDOW) == []

    def test_window(self, merger, storage):
        add(storage, "l1", "April", utc(2026, 4, 2, 10))
        assert merger.get_merged_events(*WINDOW) == []


class TestCache:
    def test_results_are_cached_within_ttl(self, merger, storage, clock):
        add(storage, "l1", "First", utc(2026, 3, 5, 10))
        assert len(merger.get_merged_events(*WINDOW)) == 1
        add(storage, "l2", "Second", utc(2026, 3, 6, 10))
        clock.advance(10)
        assert len(merger.get_merged_events(*WINDOW)) == 1
        clock.advance(30)
        assert len(merger.get_merged_events(*WINDOW)) == 2

    def test_clear_cache(self, merger, storage):
        merger.get_merged_events(*WINDOW)
        add(storage, "l1", "New", utc(2026, 3, 5, 10))
        merger.clear_cache()
        assert len(merger.get_merged_events(*WINDOW)) == 1

    def test_windows_are_cached_separately(self, merger, storage):
        add(storage, "l1", "Event", utc(2026, 3, 5, 10))
        assert len(merger.get_merged_events(*WINDOW)) == 1
        assert merger.get_merged_events(utc(2026, 3, 10), utc(2026, 3, 11)) == []
