"""
Tests for the CalDAV adapter: discovery, windowed reads, conditional writes
and the health probe.
"""

from datetime import datetime

import pytest
import pytz

from homecal.caldav_client import CalDAVAdapter, serialize_event
from homecal.errors import ConflictError, FetchError, RemoteWriteError, WriteNotAllowedError
from homecal.models import CalendarEvent, WritePolicy
from homecal.retry import is_retryable
from tests.conftest import NOW, make_calendar, make_vevent
from tests.fake_dav import AuthorizationError, FakeCalendar, FakeDAVClient, FakeDAVResponse

CAL_URL = "https://dav.example.com/cal/personal/"

PROPFIND_XML = b"""<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:">
  <d:response>
    <d:href>/cal/personal/</d:href>
    <d:propstat>
      <d:prop>
        <d:getetag>"abc"</d:getetag>
        <d:current-user-privilege-set>
          <d:privilege><d:read/></d:privilege>
          <d:privilege><d:write/></d:privilege>
        </d:current-user-privilege-set>
      </d:prop>
    </d:propstat>
  </d:response>
</d:multistatus>"""


def utc(*args):
    return datetime(*args, tzinfo=pytz.UTC)


@pytest.fixture
def client():
    return FakeDAVClient(calendars=[
        FakeCalendar("Personal", CAL_URL, [make_calendar(make_vevent("p1", "Gym"))]),
        FakeCalendar("Work", "https://dav.example.com/cal/work/",
                     [make_calendar(make_vevent("w1", "Review"))]),
    ])


@pytest.fixture
def adapter(config, client):
    return CalDAVAdapter(config, client_factory=lambda source, timeout: client, now=lambda: NOW)


@pytest.fixture
def event(caldav_source):
    return CalendarEvent(
        uid="evt-1",
        source_id=caldav_source.id,
        title="Lunch, with Bob",
        start=utc(2026, 3, 5, 12),
        end=utc(2026, 3, 5, 13),
        etag='"etag-0"',
    )


class TestRead:
    def test_sync_window_is_week_plus_margins(self, adapter):
        start, end = adapter.sync_window()
        # Week of Wednesday 2026-03-04 runs Sunday 03-01 .. Saturday 03-07
        assert start == utc(2026, 2, 27)
        assert end == utc(2026, 3, 9, 23, 59, 59, 999000)

    def test_fetch_all_calendars(self, adapter, client, caldav_source):
        events = adapter.fetch_events(caldav_source)
        assert sorted(e.title for e in events) == ["Gym", "Review"]
        assert all(e.source_id == caldav_source.id for e in events)
        assert client.calendars[0].searches[0][2] is False

    def test_calendar_filter(self, adapter, caldav_source):
        caldav_source.calendar_name = "work"
        assert [e.title for e in adapter.fetch_events(caldav_source)] == ["Review"]

    def test_one_failing_calendar_does_not_stop_others(self, adapter, client, caldav_source):
        client.calendars[1].error = RuntimeError("HTTP 500")
        events = adapter.fetch_events(caldav_source)
        assert [e.title for e in events] == ["Gym"]
        outcomes = adapter.last_outcomes(caldav_source.id)
        assert [o.ok for o in outcomes] == [True, False]

    def test_all_calendars_failing(self, adapter, client, caldav_source):
        for cal in client.calendars:
            cal.error = RuntimeError("HTTP 500")
        with pytest.raises(FetchError, match="All calendars"):
            adapter.fetch_events(caldav_source)

    def test_auth_failure_is_marked_and_scrubbed(self, adapter, client, caldav_source):
        client.principal_error = AuthorizationError("bad password s3cret-pw")
        with pytest.raises(FetchError) as excinfo:
            adapter.fetch_events(caldav_source)
        assert excinfo.value.status == 401
        assert "s3cret-pw" not in str(excinfo.value)

    def test_validate(self, adapter, client, caldav_source):
        assert adapter.validate_source(caldav_source)
        client.principal_error = AuthorizationError("401 Unauthorized for alice")
        assert not adapter.validate_source(caldav_source)
        message = adapter.validation_error(caldav_source.id)
        assert "AuthorizationError" in message
        assert "alice" not in message


class TestWriteGate:
    def test_global_switch(self, adapter, config, caldav_source, event):
        config.features.write_enabled = False
        with pytest.raises(WriteNotAllowedError):
            adapter.create_event(caldav_source, event)

    def test_source_policy(self, adapter, caldav_source, event):
        caldav_source.write_policy = WritePolicy.NONE
        with pytest.raises(WriteNotAllowedError):
            adapter.update_event(caldav_source, event)

    def test_dry_run_makes_no_requests(self, adapter, config, client, caldav_source, event):
        config.features.dry_run = True
        result = adapter.create_event(caldav_source, event)
        assert result.dry_run
        assert result.etag.startswith("dry-run-")
        assert adapter.delete_event(caldav_source, event).dry_run
        assert client.requests == []


class TestCreate:
    def test_put_with_if_none_match(self, adapter, client, caldav_source, event):
        result = adapter.create_event(caldav_source, event)
        request = client.requests[0]
        assert request["method"] == "PUT"
        assert request["url"] == CAL_URL + "evt-1.ics"
        assert request["headers"]["If-None-Match"] == "*"
        assert "SUMMARY:Lunch\\, with Bob" in request["body"]
        assert result.etag == '"etag-1"'

    def test_transport_failure_carries_no_status(self, adapter, client, caldav_source, event):
        event.uid = "abc-404-x"
        client.request_error = ConnectionError("connection reset")
        with pytest.raises(RemoteWriteError) as excinfo:
            adapter.create_event(caldav_source, event)
        assert excinfo.value.status is None
        assert is_retryable(excinfo.value)

    def test_transport_auth_failure_is_terminal(self, adapter, client, caldav_source, event):
        client.request_error = AuthorizationError("Unauthorized")
        with pytest.raises(RemoteWriteError) as excinfo:
            adapter.create_event(caldav_source, event)
        assert excinfo.value.status == 401
        assert not is_retryable(excinfo.value)

    def test_existing_uid_conflicts(self, adapter, client, caldav_source, event):
        client.responses.append(FakeDAVResponse(412))
        with pytest.raises(ConflictError):
            adapter.create_event(caldav_source, event)


class TestUpdate:
    def test_put_with_if_match(self, adapter, client, caldav_source, event):
        client.responses.append(FakeDAVResponse(204, {"ETag": '"etag-2"'}))
        result = adapter.update_event(caldav_source, event)
        assert client.requests[0]["headers"]["If-Match"] == '"etag-0"'
        assert result.etag == '"etag-2"'

    def test_precondition_failed(self, adapter, client, caldav_source, event):
        client.responses.append(FakeDAVResponse(412))
        with pytest.raises(ConflictError) as excinfo:
            adapter.update_event(caldav_source, event, before={"title": "Lunch"},
                                 changes={"title": "Lunch, with Bob"})
        assert excinfo.value.before == {"title": "Lunch"}
        assert excinfo.value.attempted == {"title": "Lunch, with Bob"}
        assert "etag-0" in excinfo.value.remote_summary

    def test_server_error(self, adapter, client, caldav_source, event):
        client.responses.append(FakeDAVResponse(500, reason="Internal Server Error"))
        with pytest.raises(RemoteWriteError, match="HTTP 500") as excinfo:
            adapter.update_event(caldav_source, event)
        assert excinfo.value.status == 500


class TestDelete:
    def test_delete(self, adapter, client, caldav_source, event):
        client.responses.append(FakeDAVResponse(204))
        adapter.delete_event(caldav_source, event)
        assert client.requests[0]["method"] == "DELETE"
        assert client.requests[0]["headers"]["If-Match"] == '"etag-0"'

    def test_already_gone_counts_as_success(self, adapter, client, caldav_source, event):
        client.responses.append(FakeDAVResponse(404))
        assert adapter.delete_event(caldav_source, event).uid == "evt-1"

    def test_forbidden(self, adapter, client, caldav_source, event):
        client.responses.append(FakeDAVResponse(403, reason="Forbidden"))
        with pytest.raises(RemoteWriteError, match="HTTP 403"):
            adapter.delete_event(caldav_source, event)


class TestHealth:
    def test_propfind(self, adapter, client, caldav_source):
        client.propfind_response = FakeDAVResponse(207, {"Server": "Nextcloud"}, PROPFIND_XML)
        assert adapter.health_check(caldav_source) == {
            "vendor": "Nextcloud",
            "supports_etag": True,
            "writable": True,
        }
        assert client.propfinds[0]["url"] == CAL_URL
        assert client.propfinds[0]["depth"] == 0

    def test_empty_response(self, adapter, client, caldav_source):
        assert adapter.health_check(caldav_source) == {
            "vendor": "unknown",
            "supports_etag": False,
            "writable": False,
        }


class TestSerialize:
    def test_all_day_uses_dates(self, event):
        event.all_day = True
        event.start = utc(2026, 3, 6)
        event.end = utc(2026, 3, 7)
        text = serialize_event(event, dtstamp=utc(2026, 3, 4))
        assert "DTSTART;VALUE=DATE:20260306" in text
        assert "DTEND;VALUE=DATE:20260307" in text

    def test_timed_event(self, event):
        text = serialize_event(event, dtstamp=utc(2026, 3, 4))
        assert "BEGIN:VCALENDAR" in text
        assert "UID:evt-1" in text
        assert "DTSTART:20260305T120000Z" in text
        assert "STATUS:CONFIRMED" in text
