"""
Catalog of calendar sources.

Sources are bootstrapped from the configuration on every start. Their ids are
derived from the connection parameters, so repeated bootstraps update rows in
place instead of duplicating them.
"""

import hashlib
import logging
from datetime import datetime
from typing import Optional

from .adapter import mask_credential
from .config import Config, is_valid_color
from .errors import NotFoundError, ValidationError
from .event_storage import EventStorageBackend
from .models import CalendarSource, SourceType, WritePolicy
from .timezone_utils import utc_now

logger = logging.getLogger(__name__)


def source_id_for(source_type: SourceType, url: str, username: Optional[str] = None) -> str:
    """Deterministic 16-hex-digit id from type, URL and (for CalDAV) username."""
    key = f"{source_type.value}:{url}"
    if username:
        key += f":{username}"
    return hashlib.sha256(key.encode()).hexdigest()[:16]


class SourceManager:
    """CRUD and sync bookkeeping over the source catalog."""

    def __init__(self, storage: EventStorageBackend):
        self.storage = storage

    def bootstrap_sources(self, config: Config) -> tuple[int, int]:
        """
        Seed the catalog from configuration.

        New sources start read-only (write policy ``none``). Existing sources
        get their connection details refreshed while write policy and sync
        metadata are kept.

        Returns:
            (created, updated) counts.
        """
        candidates = []
        for feed in config.ics_feeds:
            if not feed.url:
                logger.warning("Skipping ICS feed '%s' without URL", feed.name)
                continue
            candidates.append(CalendarSource(
                id=source_id_for(SourceType.ICS, feed.url),
                type=SourceType.ICS,
                name=feed.name,
                url=feed.url,
                color=feed.color,
            ))

        if config.features.caldav_sync_enabled:
            for account in config.caldav_accounts:
                if not account.url:
                    logger.warning("Skipping CalDAV account '%s' without URL", account.name)
                    continue
                try:
                    password = account.get_password(config.password_program)
                except RuntimeError as e:
                    logger.error("Skipping CalDAV account '%s': %s", account.name, e)
                    continue
                candidates.append(CalendarSource(
                    id=source_id_for(SourceType.CALDAV, account.url, account.username),
                    type=SourceType.CALDAV,
                    name=account.name,
                    url=account.url,
                    color=account.color,
                    username=account.username,
                    password=password,
                    calendar_name=account.calendar,
                ))

        created = updated = 0
        with self.storage.transaction():
            for candidate in candidates:
                if self._merge(candidate):
                    created += 1
                else:
                    updated += 1
        logger.info("Bootstrapped sources: %d created, %d updated", created, updated)
        return created, updated

    def _merge(self, candidate: CalendarSource) -> bool:
        """Insert or refresh one source. Returns True when it was new."""
        existing = self.storage.get_source(candidate.id)
        if existing is None:
            candidate.write_policy = WritePolicy.NONE
            self.storage.save_source(candidate)
            logger.debug("Created source '%s' (%s, user %s)", candidate.name, candidate.type.value,
                         mask_credential(candidate.username))
            return True

        existing.name = candidate.name
        existing.color = candidate.color
        existing.url = candidate.url
        existing.username = candidate.username
        existing.password = candidate.password
        existing.calendar_name = candidate.calendar_name
        self.storage.save_source(existing)
        return False

    def create_source(
        self,
        source_type: SourceType,
        name: str,
        url: str,
        color: str = "#4285f4",
        username: Optional[str] = None,
        password: Optional[str] = None,
        calendar_name: Optional[str] = None,
        write_policy: WritePolicy = WritePolicy.NONE,
    ) -> CalendarSource:
        """Add a source outside of the configuration file."""
        if source_type == SourceType.LOCAL:
            raise ValidationError("Local events do not belong to a source")
        _validate_name(name)
        _validate_color(color)
        if not url:
            raise ValidationError("Source URL is required")
        source = CalendarSource(
            id=source_id_for(source_type, url, username),
            type=source_type,
            name=name.strip(),
            url=url,
            color=color,
            username=username,
            password=password,
            calendar_name=calendar_name,
            write_policy=write_policy,
        )
        if self.storage.get_source(source.id) is not None:
            raise ValidationError(f"Source already exists: {source.id}")
        self.storage.save_source(source)
        return source

    def get_all_sources(self) -> list[CalendarSource]:
        return self.storage.list_sources()

    def get_source(self, source_id: str) -> Optional[CalendarSource]:
        return self.storage.get_source(source_id)

    def require_source(self, source_id: str) -> CalendarSource:
        source = self.storage.get_source(source_id)
        if source is None:
            raise NotFoundError(f"Unknown source: {source_id}")
        return source

    def update_sync_metadata(self, source_id: str, **fields) -> None:
        self.storage.update_source_fields(source_id, **fields)

    def record_success(self, source_id: str, etag: Optional[str] = None,
                       at: Optional[datetime] = None) -> None:
        fields = {
            "last_sync_at": at or utc_now(),
            "error_count": 0,
            "last_error": None,
            "needs_reauth": False,
        }
        if etag is not None:
            fields["etag"] = etag
        self.storage.update_source_fields(source_id, **fields)

    def record_failure(self, source_id: str, error: str, auth: bool = False,
                       at: Optional[datetime] = None) -> int:
        """Bump the consecutive error counter. Returns the new count."""
        with self.storage.transaction():
            source = self.require_source(source_id)
            count = source.error_count + 1
            fields = {
                "error_count": count,
                "last_error_at": at or utc_now(),
                "last_error": error[:500],
            }
            if auth:
                fields["needs_reauth"] = True
            self.storage.update_source_fields(source_id, **fields)
        return count

    def reset_sync_state(self, source_id: str) -> None:
        """Clear error state and change tokens; forces a full fetch next cycle."""
        self.storage.update_source_fields(
            source_id,
            error_count=0,
            last_error=None,
            last_error_at=None,
            needs_reauth=False,
            etag=None,
            ctag=None,
            sync_token=None,
        )

    def update_source(
        self,
        source_id: str,
        name: Optional[str] = None,
        color: Optional[str] = None,
        write_policy=None,
    ) -> tuple[CalendarSource, CalendarSource]:
        """
        Change display metadata or the write policy.

        Returns:
            (before, after) snapshots.
        """
        if name is not None:
            _validate_name(name)
        if color is not None:
            _validate_color(color)
        if write_policy is not None and not isinstance(write_policy, WritePolicy):
            try:
                write_policy = WritePolicy(write_policy)
            except ValueError:
                raise ValidationError(f"Invalid write policy: {write_policy!r}")

        with self.storage.transaction():
            before = self.require_source(source_id)
            fields = {}
            if name is not None:
                fields["name"] = name.strip()
            if color is not None:
                fields["color"] = color
            if write_policy is not None:
                fields["write_policy"] = write_policy
            if fields:
                self.storage.update_source_fields(source_id, **fields)
            after = self.require_source(source_id)
        return before, after


def _validate_name(name: Optional[str]) -> None:
    if not name or not name.strip():
        raise ValidationError("Source name must not be empty")


def _validate_color(color: str) -> None:
    if not is_valid_color(color):
        raise ValidationError(f"Invalid color {color!r}, expected #RRGGBB")
