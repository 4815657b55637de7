"""
ICS subscription adapter for read-only calendar feeds.

Fetches the feed over HTTP and hands the VCALENDAR text to the shared
parser, which expands recurring events over the configured horizon.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

import requests

from .adapter import CalendarAdapter, expansion_window, parse_ical
from .config import SyncConfig
from .errors import FetchError
from .models import CalendarEvent, CalendarSource, SourceType
from .timezone_utils import utc_now

logger = logging.getLogger(__name__)

USER_AGENT = "homecal/1.0"


class ICSAdapter(CalendarAdapter):
    """Adapter for ICS feed URLs."""

    source_type = SourceType.ICS

    def __init__(
        self,
        config=None,
        session=None,
        now: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            config: application Config; only its sync section is used
            session: object with requests-style get/head (defaults to requests)
            now: clock used to place the recurrence expansion window
        """
        super().__init__()
        self.sync_config: SyncConfig = config.sync if config is not None else SyncConfig()
        self._http = session if session is not None else requests
        self._now = now
        self._etags: dict[str, Optional[str]] = {}

    def etag_for(self, source_id: str) -> Optional[str]:
        """ETag returned by the last successful fetch of a source."""
        return self._etags.get(source_id)

    def fetch_events(self, source: CalendarSource) -> list[CalendarEvent]:
        headers = {
            'User-Agent': USER_AGENT,
            'Accept': 'text/calendar',
        }
        if source.etag:
            headers['If-None-Match'] = source.etag

        try:
            response = self._http.get(
                source.url,
                timeout=self.sync_config.fetch_timeout,
                headers=headers,
            )
        except requests.RequestException as e:
            raise FetchError(f"Network error fetching '{source.name}': {e}")

        if response.status_code == 304:
            logger.debug("Feed '%s' not modified", source.name)
            return []
        if not 200 <= response.status_code < 300:
            raise FetchError(
                f"HTTP {response.status_code}: {response.reason} fetching '{source.name}'",
                status=response.status_code,
            )

        self._etags[source.id] = response.headers.get('ETag')

        response.encoding = 'utf-8'
        window = expansion_window(
            self._now(),
            self.sync_config.window_days_before,
            self.sync_config.expansion_days,
        )
        events = parse_ical(response.text, source.id, window)
        logger.info("Fetched %d events from feed '%s'", len(events), source.name)
        return events

    def validate_source(self, source: CalendarSource) -> bool:
        try:
            response = self._http.head(
                source.url,
                timeout=self.sync_config.validate_timeout,
                headers={'User-Agent': USER_AGENT},
                allow_redirects=True,
            )
        except Exception as e:
            logger.warning("Feed '%s' is unreachable: %s", source.name, e)
            self._record_validation(source.id, f"Network error: {e}")
            return False

        content_type = response.headers.get('Content-Type', '')
        ok = 200 <= response.status_code < 300 and 'text/calendar' in content_type.lower()
        if ok:
            self._record_validation(source.id, None)
        else:
            logger.warning("Feed '%s' failed validation (status %s, content type %r)",
                           source.name, response.status_code, content_type)
            self._record_validation(
                source.id, f"HTTP {response.status_code}, content type {content_type!r}"
            )
        return ok
