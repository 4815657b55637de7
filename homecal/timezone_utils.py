"""
Timezone utilities for homecal.

All synced event times are stored in UTC. Due dates of recurring todos are
calendar-day values and live in the configured local timezone as naive
datetimes.
"""

from datetime import datetime, timedelta, date
from typing import Optional
import logging
import time as _time

import pytz

logger = logging.getLogger(__name__)

# Default timezone - overridden by config at startup
_local_timezone_name: str = "Europe/Amsterdam"

END_OF_DAY_MICROSECOND = 999000


def set_timezone(timezone_name: str):
    """Set the local timezone for the engine."""
    global _local_timezone_name
    _local_timezone_name = timezone_name


def get_local_timezone():
    """
    Get the local timezone as a pytz timezone object.

    Falls back to the system's fixed UTC offset when the configured name is
    unknown to pytz.
    """
    try:
        return pytz.timezone(_local_timezone_name)
    except pytz.UnknownTimeZoneError:
        logger.warning("Unknown timezone %r, using system offset", _local_timezone_name)
        if _time.localtime().tm_isdst:
            offset_seconds = -_time.altzone
        else:
            offset_seconds = -_time.timezone
        return pytz.FixedOffset(offset_seconds // 60)


def to_utc(dt: datetime) -> datetime:
    """
    Normalize a datetime to aware UTC.

    Naive input is read as UTC, which is how floating times in feeds are
    treated.
    """
    if dt.tzinfo is None:
        return pytz.UTC.localize(dt)
    return dt.astimezone(pytz.UTC)


def date_to_utc(d: date) -> datetime:
    """Bare calendar date -> UTC midnight."""
    return pytz.UTC.localize(datetime(d.year, d.month, d.day))


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def local_today() -> datetime:
    """Start of today in the local timezone, as a naive datetime."""
    now = datetime.now(get_local_timezone()).replace(tzinfo=None)
    return start_of_day(now)


def utc_to_local_naive(dt: datetime) -> datetime:
    """
    Convert a UTC datetime to a naive local datetime.

    Args:
        dt: A datetime object in UTC (with tzinfo).

    Returns:
        A naive datetime representing local wall-clock time.
    """
    if dt.tzinfo is not None:
        return dt.astimezone(get_local_timezone()).replace(tzinfo=None)
    return dt


def local_naive_to_utc(dt: datetime) -> datetime:
    """Convert a naive local datetime to aware UTC."""
    if dt.tzinfo is None:
        return get_local_timezone().localize(dt).astimezone(pytz.UTC)
    return dt.astimezone(pytz.UTC)


def start_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def end_of_day(dt: datetime) -> datetime:
    """23:59:59.999 on the same calendar day."""
    return dt.replace(hour=23, minute=59, second=59, microsecond=END_OF_DAY_MICROSECOND)


def start_of_week(dt: datetime) -> datetime:
    """Sunday 00:00 of the week containing dt."""
    days_since_sunday = (dt.weekday() + 1) % 7
    return start_of_day(dt - timedelta(days=days_since_sunday))


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO-8601 string; None passes through."""
    if not value:
        return None
    return datetime.fromisoformat(value)


def format_iso(dt: Optional[datetime]) -> Optional[str]:
    """Canonical ISO form: aware values in UTC, always with microseconds."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(pytz.UTC)
    return dt.isoformat(timespec="microseconds")
