"""
Merges local and synced events into one ordered, de-duplicated timeline.

Duplicate suppression is display-level only: a local event hides synced
events with the same title and start, and among synced events the first one
per (title, start, source type) wins. Results are cached per window for a
short TTL.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .event_storage import EventStorageBackend
from .models import CalendarEvent, SourceType
from .timezone_utils import format_iso

logger = logging.getLogger(__name__)

SOURCE_PRIORITY = {
    SourceType.LOCAL: 0,
    SourceType.CALDAV: 1,
    SourceType.ICS: 2,
}


@dataclass
class MergedEvent:
    """An event in the merged view, tagged with its origin."""
    event: CalendarEvent
    source_type: SourceType
    source_name: Optional[str] = None
    color: Optional[str] = None

    @property
    def priority(self) -> int:
        return SOURCE_PRIORITY[self.source_type]


class EventMerger:

    def __init__(
        self,
        storage: EventStorageBackend,
        sync_service,
        ttl: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.storage = storage
        self.sync_service = sync_service
        self.ttl = ttl
        self._clock = clock
        self._cache: dict[tuple, tuple[float, list[MergedEvent]]] = {}
        self._lock = threading.Lock()

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def get_merged_events(self, start: datetime, end: datetime) -> list[MergedEvent]:
        """Merged events overlapping [start, end], sorted by start then source priority."""
        key = (format_iso(start), format_iso(end))
        now = self._clock()
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None and now - cached[0] < self.ttl:
                return list(cached[1])

        merged = self._merge(start, end)

        with self._lock:
            self._cache = {k: v for k, v in self._cache.items() if now - v[0] < self.ttl}
            self._cache[key] = (now, merged)
        return list(merged)

    def _merge(self, start: datetime, end: datetime) -> list[MergedEvent]:
        local_events = self.storage.list_events(local=True, start=start, end=end,
                                                include_cancelled=False)
        synced_events = self.sync_service.get_all_events(start, end)
        sources = {source.id: source for source in self.storage.list_sources()}

        merged: list[MergedEvent] = []
        local_keys = set()
        seen = set()

        for event in local_events:
            key = (event.title, event.start, SourceType.LOCAL)
            if key in seen:
                continue
            seen.add(key)
            local_keys.add((event.title, event.start))
            merged.append(MergedEvent(event=event, source_type=SourceType.LOCAL))

        # CalDAV before ICS so the higher-priority copy is kept
        synced_events.sort(key=lambda e: SOURCE_PRIORITY.get(
            sources[e.source_id].type if e.source_id in sources else SourceType.ICS, 2))

        suppressed = 0
        for event in synced_events:
            source = sources.get(event.source_id)
            if source is None:
                continue
            if (event.title, event.start) in local_keys:
                suppressed += 1
                continue
            key = (event.title, event.start, source.type)
            if key in seen:
                suppressed += 1
                continue
            seen.add(key)
            merged.append(MergedEvent(
                event=event,
                source_type=source.type,
                source_name=source.name,
                color=source.color,
            ))

        merged.sort(key=lambda m: (m.event.start, m.priority))
        logger.debug("Merged %d local and %d synced events into %d (%d duplicates dropped)",
                     len(local_events), len(synced_events), len(merged), suppressed)
        return merged
