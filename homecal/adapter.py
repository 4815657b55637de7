"""
Source adapter interface and the VEVENT parsing shared by both adapters.

There are exactly two adapters, one per remote source type. ``build_adapters``
returns the mapping owned by a sync service instance.
"""

import logging
import re
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

from icalendar import Calendar as ICalendar

from . import recurrence
from .errors import FetchError
from .models import CalendarEvent, CalendarSource, EventStatus, SourceType
from .timezone_utils import date_to_utc, to_utc

logger = logging.getLogger(__name__)

_HTML_TAG_RE = re.compile(r"<[^>]*>")

RECURRENCE_ID_FORMAT = "%Y%m%dT%H%M%SZ"

SECONDS_PER_DAY = 24 * 3600


@dataclass
class FetchOutcome:
    """Result of reading one feed or one remote calendar."""
    label: str
    events: list[CalendarEvent] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class CalendarAdapter(ABC):
    """Reads a remote source into CalendarEvents."""

    source_type: SourceType

    @abstractmethod
    def fetch_events(self, source: CalendarSource) -> list[CalendarEvent]:
        """Fetch and normalize the source's events. Raises FetchError."""
        pass

    @abstractmethod
    def validate_source(self, source: CalendarSource) -> bool:
        """Cheap reachability probe. Never raises."""
        pass

    def __init__(self):
        self._validation_errors: dict[str, Optional[str]] = {}

    def validation_error(self, source_id: str) -> Optional[str]:
        """Why the last validate_source call for a source failed, if it did."""
        return self._validation_errors.get(source_id)

    def _record_validation(self, source_id: str, error: Optional[str]) -> None:
        self._validation_errors[source_id] = error

    def etag_for(self, source_id: str) -> Optional[str]:
        """Change token seen by the last fetch, for conditional requests."""
        return None


def mask_credential(value: Optional[str]) -> str:
    """First two and last two characters visible, the rest replaced."""
    if not value:
        return ""
    if len(value) <= 4:
        return "****"
    return f"{value[:2]}****{value[-2:]}"


def strip_html(text: str) -> str:
    return _HTML_TAG_RE.sub("", text).strip()


def _as_utc(value) -> datetime:
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, date):
        return date_to_utc(value)
    raise ValueError(f"Unsupported date value: {value!r}")


def _text(component, name: str) -> str:
    value = component.get(name)
    if value is None:
        return ""
    if isinstance(value, list):
        value = value[0] if value else ""
    return str(value).strip()


def _exdates(component) -> list[datetime]:
    raw = component.get("EXDATE")
    if raw is None:
        return []
    if not isinstance(raw, list):
        raw = [raw]
    dates = []
    for entry in raw:
        for item in getattr(entry, "dts", []):
            dates.append(_as_utc(item.dt))
    return dates


def _status(component) -> EventStatus:
    if _text(component, "STATUS").upper() == "CANCELLED":
        return EventStatus.CANCELLED
    return EventStatus.CONFIRMED


def is_all_day(start: datetime, end: datetime) -> bool:
    """All-day iff the duration is a positive whole number of days."""
    seconds = (end - start).total_seconds()
    return seconds > 0 and seconds % SECONDS_PER_DAY == 0


def _make_event(component, source_id, uid, title, start, end, recurrence_id) -> CalendarEvent:
    return CalendarEvent(
        source_id=source_id,
        uid=uid,
        recurrence_id=recurrence_id,
        title=title,
        description=strip_html(_text(component, "DESCRIPTION")),
        location=_text(component, "LOCATION"),
        start=start,
        end=end,
        all_day=is_all_day(start, end),
        status=_status(component),
    )


def _events_from_vevent(
    component,
    source_id: Optional[str],
    window: Optional[tuple[datetime, datetime]],
    overridden: list[datetime],
) -> list[CalendarEvent]:
    uid = _text(component, "UID")
    title = _text(component, "SUMMARY")
    dtstart = component.get("DTSTART")
    dtend = component.get("DTEND")

    if not uid or not title or dtstart is None or dtend is None:
        logger.debug("Dropping VEVENT missing UID, SUMMARY, DTSTART or DTEND (uid=%r)", uid)
        return []

    start = _as_utc(dtstart.dt)
    end = _as_utc(dtend.dt)

    recurrence_id_prop = component.get("RECURRENCE-ID")
    if recurrence_id_prop is not None:
        recurrence_id = _as_utc(recurrence_id_prop.dt).strftime(RECURRENCE_ID_FORMAT)
        return [_make_event(component, source_id, uid, title, start, end, recurrence_id)]

    rrule_prop = component.get("RRULE")
    if rrule_prop is None or window is None:
        return [_make_event(component, source_id, uid, title, start, end, None)]

    if isinstance(rrule_prop, list):
        rrule_prop = rrule_prop[0]
    rule_text = rrule_prop.to_ical().decode("utf-8")
    instances = recurrence.expand(
        rule_text, window[0], window[1], start, end,
        exdates=_exdates(component) + overridden,
    )
    return [
        _make_event(component, source_id, uid, title, instance_start, instance_end,
                    instance_start.strftime(RECURRENCE_ID_FORMAT))
        for instance_start, instance_end in instances
    ]


def parse_ical(
    ical_text,
    source_id: Optional[str],
    window: Optional[tuple[datetime, datetime]] = None,
) -> list[CalendarEvent]:
    """
    Parse VCALENDAR text into events.

    Malformed VEVENTs are dropped. Recurring masters are expanded over
    ``window``; instances replaced by a RECURRENCE-ID override are excluded
    from the expansion.

    Raises:
        FetchError: the text is not parseable as a calendar at all.
    """
    try:
        cal = ICalendar.from_ical(ical_text)
    except ValueError as e:
        raise FetchError(f"Invalid calendar data: {e}")

    vevents = list(cal.walk("VEVENT"))

    overrides: dict[str, list[datetime]] = defaultdict(list)
    for component in vevents:
        recurrence_id_prop = component.get("RECURRENCE-ID")
        if recurrence_id_prop is not None:
            try:
                overrides[_text(component, "UID")].append(_as_utc(recurrence_id_prop.dt))
            except ValueError:
                continue

    events: list[CalendarEvent] = []
    for component in vevents:
        try:
            events.extend(_events_from_vevent(
                component, source_id, window, overrides.get(_text(component, "UID"), [])
            ))
        except Exception as e:
            logger.debug("Skipping unparseable VEVENT %r: %s", _text(component, "UID"), e)
    return events


def build_adapters(config, session=None, client_factory=None) -> dict:
    """Adapters keyed by source type, one instance each."""
    from .caldav_client import CalDAVAdapter
    from .ics_subscription import ICSAdapter

    return {
        SourceType.ICS: ICSAdapter(config, session=session),
        SourceType.CALDAV: CalDAVAdapter(config, client_factory=client_factory),
    }


def expansion_window(now: datetime, days_before: int, days_after: int) -> tuple[datetime, datetime]:
    return now - timedelta(days=days_before), now + timedelta(days=days_after)
