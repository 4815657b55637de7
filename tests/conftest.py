"""
Shared pytest fixtures and iCal helpers.
"""

from datetime import datetime

import pytest
import pytz

from homecal.config import Config
from homecal.event_storage import SQLiteEventStorage
from homecal.models import CalendarSource, SourceType, WritePolicy
from homecal.timezone_utils import set_timezone

# Fixed "now" for everything clock-driven: Wednesday 2026-03-04 12:00 UTC
NOW = datetime(2026, 3, 4, 12, 0, tzinfo=pytz.UTC)

ICS_URL = "https://example.com/holidays.ics"
DAV_URL = "https://dav.example.com/"


def make_vevent(
    uid: str,
    summary: str = "Test Event",
    dtstart: str = "20260305T100000Z",
    dtend: str = "20260305T110000Z",
    extra: tuple = (),
) -> str:
    """Return a minimal, valid VEVENT iCal string (no VCALENDAR wrapper)."""
    lines = [
        "BEGIN:VEVENT",
        f"UID:{uid}",
        f"SUMMARY:{summary}",
        f"DTSTART:{dtstart}",
        f"DTEND:{dtend}",
        "DTSTAMP:20260224T000000Z",
        *extra,
        "END:VEVENT",
    ]
    return "\r\n".join(lines) + "\r\n"


def make_all_day_vevent(uid: str, summary: str = "Holiday", day: str = "20260306",
                        next_day: str = "20260307") -> str:
    return make_vevent(uid, summary, dtstart=day, dtend=next_day) \
        .replace(f"DTSTART:{day}", f"DTSTART;VALUE=DATE:{day}") \
        .replace(f"DTEND:{next_day}", f"DTEND;VALUE=DATE:{next_day}")


def make_calendar(*vevents: str) -> str:
    """Wrap VEVENT strings in a VCALENDAR."""
    return (
        "BEGIN:VCALENDAR\r\n"
        "VERSION:2.0\r\n"
        "PRODID:-//test//test//EN\r\n"
        + "".join(vevents)
        + "END:VCALENDAR\r\n"
    )


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def utc_timezone():
    set_timezone("UTC")
    yield
    set_timezone("Europe/Amsterdam")


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "homecal.db"


@pytest.fixture
def storage(db_path):
    with SQLiteEventStorage(db_path) as store:
        yield store


@pytest.fixture
def config(tmp_path):
    return Config.from_dict(
        {
            "General": {"database": str(tmp_path / "homecal.db"), "timezone": "UTC"},
            "Features": {"write_enabled": True},
            "Subscription": {"Holidays": {"url": ICS_URL, "color": "#34a853"}},
            "CalDAV": {"Home": {"url": DAV_URL, "username": "alice", "password": "s3cret-pw"}},
        },
        environ={},
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ics_source(storage):
    source = CalendarSource(
        id="ics-source-0001",
        type=SourceType.ICS,
        name="Holidays",
        url=ICS_URL,
        color="#34a853",
    )
    storage.save_source(source)
    return source


@pytest.fixture
def caldav_source(storage):
    source = CalendarSource(
        id="dav-source-0001",
        type=SourceType.CALDAV,
        name="Home",
        url=DAV_URL,
        username="alice",
        password="s3cret-pw",
        write_policy=WritePolicy.WRITE,
    )
    storage.save_source(source)
    return source
