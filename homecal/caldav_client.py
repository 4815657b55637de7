"""
CalDAV adapter.

Reads events from every matching calendar of an account and performs
conditional writes (create/update/delete) guarded by the global write switch
and the source's write policy.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import caldav
import lxml.etree as etree
from icalendar import Calendar as ICalendar, Event as ICalEvent

from .adapter import CalendarAdapter, FetchOutcome, mask_credential, parse_ical
from .config import FeatureFlags, SyncConfig
from .errors import ConflictError, FetchError, RemoteWriteError, WriteNotAllowedError, is_auth_error
from .models import CalendarEvent, CalendarSource, EventStatus, SourceType, WritePolicy
from .timezone_utils import end_of_day, start_of_week, to_utc, utc_now

logger = logging.getLogger(__name__)

PRODID = '-//homecal//homecal//EN'

DAV_NS = 'DAV:'
WRITE_PRIVILEGES = ('write', 'write-content', 'bind', 'all')

HEALTH_PROPFIND = """<?xml version="1.0" encoding="utf-8" ?>
<D:propfind xmlns:D="DAV:" xmlns:CS="http://calendarserver.org/ns/">
  <D:prop>
    <D:getetag/>
    <CS:getctag/>
    <D:current-user-privilege-set/>
  </D:prop>
</D:propfind>"""


@dataclass
class WriteResult:
    """Outcome of a remote write."""
    uid: str
    etag: Optional[str] = None
    dry_run: bool = False


def _default_client_factory(source: CalendarSource, timeout: int) -> caldav.DAVClient:
    return caldav.DAVClient(
        url=source.url,
        username=source.username,
        password=source.password,
        timeout=timeout,
    )


def serialize_event(event: CalendarEvent, dtstamp: Optional[datetime] = None) -> str:
    """
    Serialize one event as a single-VEVENT VCALENDAR document.

    Text values are escaped by icalendar (backslash, semicolon, comma and
    newline).
    """
    vevent = ICalEvent()
    vevent.add('uid', event.uid)
    vevent.add('dtstamp', dtstamp or utc_now())
    if event.all_day:
        vevent.add('dtstart', to_utc(event.start).date())
        vevent.add('dtend', to_utc(event.end).date())
    else:
        vevent.add('dtstart', to_utc(event.start))
        vevent.add('dtend', to_utc(event.end))
    vevent.add('summary', event.title)
    if event.description:
        vevent.add('description', event.description)
    if event.location:
        vevent.add('location', event.location)
    vevent.add('status', 'CANCELLED' if event.status == EventStatus.CANCELLED else 'CONFIRMED')
    vevent.add('sequence', max(0, event.version - 1))

    ical = ICalendar()
    ical.add('prodid', PRODID)
    ical.add('version', '2.0')
    ical.add_component(vevent)
    return ical.to_ical().decode('utf-8')


class CalDAVAdapter(CalendarAdapter):
    """Adapter for CalDAV accounts."""

    source_type = SourceType.CALDAV

    def __init__(
        self,
        config=None,
        client_factory: Optional[Callable[[CalendarSource, int], Any]] = None,
        now: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            config: application Config (feature flags and sync section)
            client_factory: (source, timeout) -> DAV client; defaults to caldav.DAVClient
            now: clock used to place the sliding fetch window
        """
        super().__init__()
        self.features: FeatureFlags = config.features if config is not None else FeatureFlags()
        self.sync_config: SyncConfig = config.sync if config is not None else SyncConfig()
        self._client_factory = client_factory or _default_client_factory
        self._now = now
        self._clients: dict[tuple[str, int], Any] = {}
        self._last_outcomes: dict[str, list[FetchOutcome]] = {}

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _client(self, source: CalendarSource, timeout: Optional[int] = None):
        timeout = timeout or self.sync_config.fetch_timeout
        key = (source.id, timeout)
        if key not in self._clients:
            logger.debug("Connecting to %s as %s (password %s)",
                         source.url, mask_credential(source.username),
                         mask_credential(source.password))
            self._clients[key] = self._client_factory(source, timeout)
        return self._clients[key]

    def reset_connection(self, source_id: str) -> None:
        """Drop cached clients so the next call reconnects with fresh credentials."""
        for key in [k for k in self._clients if k[0] == source_id]:
            del self._clients[key]

    def _scrub(self, source: CalendarSource, message: str) -> str:
        """Mask credentials that may have leaked into an error message."""
        for secret in (source.password, source.username):
            if secret and len(secret) > 2 and secret in message:
                message = message.replace(secret, mask_credential(secret))
        return message

    @staticmethod
    def _calendar_name(cal) -> str:
        try:
            return cal.name or ""
        except Exception:
            return ""

    def _matches_filter(self, cal, calendar_filter: Optional[str]) -> bool:
        if not calendar_filter:
            return True
        needle = calendar_filter.lower()
        return needle in self._calendar_name(cal).lower() or calendar_filter in str(cal.url)

    def _calendars(self, source: CalendarSource, timeout: Optional[int] = None) -> list:
        """Discover the account's calendars, applying the configured filter."""
        try:
            principal = self._client(source, timeout).principal()
            calendars = principal.calendars()
        except Exception as e:
            self.reset_connection(source.id)
            message = self._scrub(source, f"{type(e).__name__}: {e}")
            status = 401 if type(e).__name__ == 'AuthorizationError' else None
            raise FetchError(f"CalDAV discovery failed for '{source.name}': {message}", status=status)

        matching = [cal for cal in calendars if self._matches_filter(cal, source.calendar_name)]
        if source.calendar_name and not matching:
            logger.warning("No calendar of '%s' matches filter %r", source.name, source.calendar_name)
        return matching

    def sync_window(self) -> tuple[datetime, datetime]:
        """Current week (Sunday..Saturday) widened by the configured margins."""
        now = self._now()
        week_start = start_of_week(now)
        week_end = end_of_day(week_start + timedelta(days=6))
        return (
            week_start - timedelta(days=self.sync_config.window_days_before),
            week_end + timedelta(days=self.sync_config.window_days_after),
        )

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def fetch_calendars(self, source: CalendarSource) -> list[FetchOutcome]:
        """Fetch each matching calendar separately; one failure does not stop the rest."""
        window = self.sync_window()
        outcomes = []
        for cal in self._calendars(source):
            label = self._calendar_name(cal) or str(cal.url)
            try:
                objects = cal.date_search(start=window[0], end=window[1], expand=False)
            except Exception as e:
                message = self._scrub(source, str(e))
                logger.warning("Failed to fetch calendar '%s' of '%s': %s", label, source.name, message)
                outcomes.append(FetchOutcome(label=label, error=message))
                continue

            outcome = FetchOutcome(label=label)
            for obj in objects:
                try:
                    outcome.events.extend(parse_ical(obj.data, source.id, window))
                except Exception as e:
                    logger.debug("Skipping unparseable object %s: %s", getattr(obj, 'url', '?'), e)
            outcomes.append(outcome)
        self._last_outcomes[source.id] = outcomes
        return outcomes

    def last_outcomes(self, source_id: str) -> list[FetchOutcome]:
        return self._last_outcomes.get(source_id, [])

    def fetch_events(self, source: CalendarSource) -> list[CalendarEvent]:
        outcomes = self.fetch_calendars(source)
        failed = [o for o in outcomes if not o.ok]
        if outcomes and len(failed) == len(outcomes):
            raise FetchError(f"All calendars of '{source.name}' failed: {failed[0].error}")

        events = [event for outcome in outcomes if outcome.ok for event in outcome.events]
        logger.info("Fetched %d events from %d calendars of '%s' (%d failed)",
                    len(events), len(outcomes), source.name, len(failed))
        return events

    def validate_source(self, source: CalendarSource) -> bool:
        try:
            self._client(source, self.sync_config.validate_timeout).principal()
        except Exception as e:
            self.reset_connection(source.id)
            message = self._scrub(source, f"{type(e).__name__}: {e}")
            logger.warning("CalDAV source '%s' failed validation: %s", source.name, message)
            self._record_validation(source.id, message)
            return False
        self._record_validation(source.id, None)
        return True

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def check_write_allowed(self, source: CalendarSource) -> None:
        """Both the global switch and the source policy must allow writes."""
        if not self.features.write_enabled:
            raise WriteNotAllowedError("CalDAV writes are disabled")
        if source.write_policy != WritePolicy.WRITE:
            raise WriteNotAllowedError(f"Source '{source.name}' does not allow writes")

    def _target_calendar(self, source: CalendarSource):
        calendars = self._calendars(source)
        if not calendars:
            raise RemoteWriteError(f"No writable calendar found for '{source.name}'")
        return calendars[0]

    def _event_url(self, source: CalendarSource, uid: str) -> str:
        base = str(self._target_calendar(source).url)
        if not base.endswith('/'):
            base += '/'
        return f"{base}{uid}.ics"

    def _request(self, source: CalendarSource, url: str, method: str, body: str = "",
                 headers: Optional[dict] = None):
        try:
            return self._client(source).request(url, method, body, headers or {})
        except Exception as e:
            status = 401 if is_auth_error(e) else None
            raise RemoteWriteError(self._scrub(source, f"{method} {url} failed: {e}"), status=status)

    def create_event(self, source: CalendarSource, event: CalendarEvent) -> WriteResult:
        self.check_write_allowed(source)
        if not event.uid:
            event.uid = str(uuid.uuid4())
        if self.features.dry_run:
            logger.info("[dry-run] would create '%s' on '%s'", event.title, source.name)
            return WriteResult(uid=event.uid, etag=f"dry-run-{uuid.uuid4().hex[:12]}", dry_run=True)

        response = self._request(
            source, self._event_url(source, event.uid), 'PUT', serialize_event(event),
            {'Content-Type': 'text/calendar; charset=utf-8', 'If-None-Match': '*'},
        )
        if response.status == 412:
            raise ConflictError(
                f"Event {event.uid} already exists on '{source.name}'",
                before={},
                attempted=event.to_dict(),
                remote_summary=f"An object with UID {event.uid} already exists",
            )
        self._raise_for_status(response, 'PUT', event.uid)
        return WriteResult(uid=event.uid, etag=_header(response, 'ETag'))

    def update_event(
        self,
        source: CalendarSource,
        event: CalendarEvent,
        before: Optional[dict] = None,
        changes: Optional[dict] = None,
    ) -> WriteResult:
        """
        PUT the updated event, conditional on its last known ETag.

        Args:
            source: the CalDAV source owning the event
            event: event with the changes already applied
            before: pre-image, reported in a ConflictError
            changes: the attempted field changes, reported in a ConflictError

        Raises:
            ConflictError: the server copy changed (412)
        """
        self.check_write_allowed(source)
        if self.features.dry_run:
            logger.info("[dry-run] would update '%s' on '%s'", event.title, source.name)
            return WriteResult(uid=event.uid, etag=f"dry-run-{uuid.uuid4().hex[:12]}", dry_run=True)

        headers = {'Content-Type': 'text/calendar; charset=utf-8'}
        if event.etag:
            headers['If-Match'] = event.etag
        response = self._request(
            source, self._event_url(source, event.uid), 'PUT', serialize_event(event), headers,
        )
        if response.status == 412:
            raise ConflictError(
                f"Event '{event.title}' was modified on the server",
                before=before or {},
                attempted=changes or {},
                remote_summary=f"Remote copy of {event.uid} no longer matches ETag {event.etag}",
            )
        self._raise_for_status(response, 'PUT', event.uid)
        return WriteResult(uid=event.uid, etag=_header(response, 'ETag'))

    def delete_event(self, source: CalendarSource, event: CalendarEvent) -> WriteResult:
        """DELETE the event; a 404 counts as success."""
        self.check_write_allowed(source)
        if self.features.dry_run:
            logger.info("[dry-run] would delete '%s' on '%s'", event.title, source.name)
            return WriteResult(uid=event.uid, dry_run=True)

        headers = {}
        if event.etag:
            headers['If-Match'] = event.etag
        response = self._request(source, self._event_url(source, event.uid), 'DELETE', '', headers)
        if response.status == 404:
            logger.info("Event %s already gone from '%s'", event.uid, source.name)
            return WriteResult(uid=event.uid)
        if response.status == 412:
            raise ConflictError(
                f"Event '{event.title}' was modified on the server",
                before=event.to_dict(),
                attempted={'deleted': True},
                remote_summary=f"Remote copy of {event.uid} no longer matches ETag {event.etag}",
            )
        self._raise_for_status(response, 'DELETE', event.uid)
        return WriteResult(uid=event.uid)

    @staticmethod
    def _raise_for_status(response, method: str, uid: str) -> None:
        if not 200 <= response.status < 300:
            reason = getattr(response, 'reason', '') or ''
            raise RemoteWriteError(f"HTTP {response.status} {reason}: {method} {uid}".strip(),
                                   status=response.status)

    # ------------------------------------------------------------------
    # Health probe
    # ------------------------------------------------------------------

    def health_check(self, source: CalendarSource) -> dict:
        """
        PROPFIND the target calendar for ETag support and write privileges.

        Returns:
            {"vendor": server header, "supports_etag": bool, "writable": bool}
        """
        cal = self._target_calendar(source)
        response = self._client(source, self.sync_config.validate_timeout).propfind(
            str(cal.url), props=HEALTH_PROPFIND, depth=0
        )
        raw = getattr(response, 'raw', b'') or b''
        if isinstance(raw, str):
            raw = raw.encode('utf-8')

        supports_etag = False
        writable = False
        if raw:
            root = etree.fromstring(raw)
            for element in root.iter(etree.QName(DAV_NS, 'getetag').text):
                if (element.text or '').strip():
                    supports_etag = True
            for privilege_set in root.iter(etree.QName(DAV_NS, 'current-user-privilege-set').text):
                for name in WRITE_PRIVILEGES:
                    if privilege_set.find('.//' + etree.QName(DAV_NS, name).text) is not None:
                        writable = True

        return {
            'vendor': _header(response, 'Server') or 'unknown',
            'supports_etag': supports_etag,
            'writable': writable,
        }


def _header(response, name: str) -> Optional[str]:
    headers = getattr(response, 'headers', None) or {}
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value
