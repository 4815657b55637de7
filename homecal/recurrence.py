"""
Recurrence solver.

Parses RRULE strings, expands them into concrete instances for display and
computes the next due date of recurring todos.

Display expansion goes through recurring_ical_events, due-date solving
through dateutil's rrule. Due dates are local calendar days, represented as
naive datetimes at 23:59:59.999.
"""

import calendar
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional

import recurring_ical_events
from dateutil import rrule as du_rrule
from icalendar import Calendar as ICalendar, Event as ICalEvent

from .errors import ValidationError
from .timezone_utils import (
    end_of_day,
    local_naive_to_utc,
    local_today,
    start_of_day,
    to_utc,
    utc_to_local_naive,
)

logger = logging.getLogger(__name__)

FREQUENCIES = ("DAILY", "WEEKLY", "MONTHLY", "YEARLY")

# Weekday codes indexed Sunday=0 .. Saturday=6
WEEKDAY_CODES = ("SU", "MO", "TU", "WE", "TH", "FR", "SA")

MAX_EXPANDED_INSTANCES = 1000
EXACT_ITERATION_LIMIT = 100

_BYDAY_RE = re.compile(r"^([+-]?\d{1,2})?(SU|MO|TU|WE|TH|FR|SA)$")

_DU_FREQ = {
    "DAILY": du_rrule.DAILY,
    "WEEKLY": du_rrule.WEEKLY,
    "MONTHLY": du_rrule.MONTHLY,
    "YEARLY": du_rrule.YEARLY,
}

_DU_WEEKDAY = {
    "MO": du_rrule.MO,
    "TU": du_rrule.TU,
    "WE": du_rrule.WE,
    "TH": du_rrule.TH,
    "FR": du_rrule.FR,
    "SA": du_rrule.SA,
    "SU": du_rrule.SU,
}


@dataclass
class Rule:
    """A parsed recurrence rule."""
    freq: str
    interval: int = 1
    by_day: list[str] = field(default_factory=list)
    by_month: list[int] = field(default_factory=list)
    by_month_day: list[int] = field(default_factory=list)
    count: Optional[int] = None
    until: Optional[str] = None  # as written in the rule

    def to_string(self) -> str:
        """Serialize back to ``FREQ=...;...`` form."""
        parts = [f"FREQ={self.freq}"]
        if self.interval != 1:
            parts.append(f"INTERVAL={self.interval}")
        if self.by_day:
            parts.append("BYDAY=" + ",".join(self.by_day))
        if self.by_month:
            parts.append("BYMONTH=" + ",".join(str(m) for m in self.by_month))
        if self.by_month_day:
            parts.append("BYMONTHDAY=" + ",".join(str(d) for d in self.by_month_day))
        if self.count is not None:
            parts.append(f"COUNT={self.count}")
        if self.until:
            parts.append(f"UNTIL={self.until}")
        return ";".join(parts)

    def weekdays(self) -> list[int]:
        """BYDAY as sorted Sunday-based day numbers, ordinals stripped."""
        days = set()
        for code in self.by_day:
            match = _BYDAY_RE.match(code)
            if match:
                days.add(WEEKDAY_CODES.index(match.group(2)))
        return sorted(days)

    def until_local(self) -> Optional[datetime]:
        """UNTIL as a naive local datetime; date-only values mean end of that day."""
        if not self.until:
            return None
        return parse_until(self.until)


def parse_until(value: str) -> Optional[datetime]:
    """
    Parse an UNTIL value.

    Accepts ``YYYYMMDD``, ``YYYY-MM-DD`` (both inclusive through end of day),
    ``YYYYMMDDTHHMMSSZ`` (UTC, converted to local) and floating
    ``YYYYMMDDTHHMMSS``. Unparseable values yield None.
    """
    value = value.strip()
    for fmt in ("%Y%m%d", "%Y-%m-%d"):
        try:
            return end_of_day(datetime.strptime(value, fmt))
        except ValueError:
            continue
    if value.endswith("Z"):
        try:
            parsed = datetime.strptime(value, "%Y%m%dT%H%M%SZ")
        except ValueError:
            return None
        return utc_to_local_naive(to_utc(parsed))
    try:
        return datetime.strptime(value, "%Y%m%dT%H%M%S")
    except ValueError:
        return None


def _parse_int_list(value: str) -> list[int]:
    result = []
    for item in value.split(","):
        item = item.strip()
        try:
            result.append(int(item))
        except ValueError:
            continue
    return result


def parse_rule(text: Optional[str]) -> Optional[Rule]:
    """
    Parse a semicolon-delimited RRULE string.

    Returns None (not an error) when the text carries no usable frequency.
    Unknown keys and malformed ``key=value`` pairs are skipped.
    """
    if not text:
        return None

    clean = text.strip()
    if clean.upper().startswith("RRULE:"):
        clean = clean[6:].strip()
    if not clean:
        return None

    values: dict[str, str] = {}
    for part in clean.split(";"):
        key, sep, value = part.partition("=")
        key = key.strip().upper()
        value = value.strip()
        if not sep or not key or not value:
            continue
        values[key] = value

    freq = values.get("FREQ", "").upper()
    if freq not in FREQUENCIES:
        return None

    rule = Rule(freq=freq)

    if "INTERVAL" in values:
        try:
            rule.interval = max(1, int(values["INTERVAL"]))
        except ValueError:
            rule.interval = 1
    if "BYDAY" in values:
        rule.by_day = [d.strip().upper() for d in values["BYDAY"].split(",") if d.strip()]
    if "BYMONTH" in values:
        rule.by_month = _parse_int_list(values["BYMONTH"])
    if "BYMONTHDAY" in values:
        rule.by_month_day = _parse_int_list(values["BYMONTHDAY"])
    if "COUNT" in values:
        try:
            rule.count = int(values["COUNT"])
        except ValueError:
            rule.count = None
    if "UNTIL" in values:
        rule.until = values["UNTIL"]

    return rule


def _coerce_rule(rule) -> Rule:
    if isinstance(rule, Rule):
        return rule
    parsed = parse_rule(rule)
    if parsed is None:
        raise ValidationError("Invalid rrule: freq is required")
    return parsed


# ----------------------------------------------------------------------
# Display expansion
# ----------------------------------------------------------------------

def _ical_recur(rule: Rule) -> dict:
    """Rule as an icalendar vRecur mapping."""
    recur: dict = {"FREQ": rule.freq}
    if rule.interval != 1:
        recur["INTERVAL"] = rule.interval
    if rule.by_day:
        recur["BYDAY"] = list(rule.by_day)
    if rule.by_month:
        recur["BYMONTH"] = list(rule.by_month)
    if rule.by_month_day:
        recur["BYMONTHDAY"] = list(rule.by_month_day)
    if rule.count is not None:
        recur["COUNT"] = rule.count
    until = rule.until_local()
    if until is not None:
        recur["UNTIL"] = local_naive_to_utc(until)
    return recur


def expand(
    rule,
    window_start: datetime,
    window_end: datetime,
    seed_start: datetime,
    seed_end: datetime,
    exdates: Iterable[datetime] = (),
) -> list[tuple[datetime, datetime]]:
    """
    Expand a rule into (start, end) pairs whose start lies in the window.

    Each instance keeps the seed's duration. At most 1000 instances are
    produced. Any failure degrades to the unexpanded seed.

    Args:
        rule: a Rule or an RRULE string
        window_start: inclusive lower bound for instance starts
        window_end: inclusive upper bound for instance starts
        seed_start: DTSTART of the master event
        seed_end: DTEND of the master event
        exdates: instance starts to exclude

    Returns:
        List of (start, end) tuples in UTC, ordered by start.
    """
    try:
        rule = _coerce_rule(rule)
        seed_start = to_utc(seed_start)
        seed_end = to_utc(seed_end)
        window_start = to_utc(window_start)
        window_end = to_utc(window_end)
        duration = seed_end - seed_start

        cal = ICalendar()
        cal.add("prodid", "-//homecal//recurrence//")
        cal.add("version", "2.0")
        vevent = ICalEvent()
        vevent.add("uid", "expansion-seed")
        vevent.add("dtstart", seed_start)
        vevent.add("dtend", seed_end)
        vevent.add("rrule", _ical_recur(rule))
        for exdate in exdates:
            vevent.add("exdate", to_utc(exdate))
        cal.add_component(vevent)

        instances = []
        for occurrence in recurring_ical_events.of(cal).between(window_start, window_end):
            start = occurrence.get("DTSTART").dt
            if not isinstance(start, datetime):
                start = datetime(start.year, start.month, start.day)
            start = to_utc(start)
            if start < window_start or start > window_end:
                continue
            instances.append((start, start + duration))
            if len(instances) >= MAX_EXPANDED_INSTANCES:
                logger.warning("Recurrence expansion capped at %d instances", MAX_EXPANDED_INSTANCES)
                break

        instances.sort(key=lambda pair: pair[0])
        return instances
    except Exception as e:
        logger.warning("Failed to expand recurring event: %s", e)
        return [(seed_start, seed_end)]


# ----------------------------------------------------------------------
# Next due date
# ----------------------------------------------------------------------

class _IterationLimitReached(Exception):
    pass


def _js_weekday(d: datetime) -> int:
    """Sunday=0 .. Saturday=6."""
    return (d.weekday() + 1) % 7


def _set_weekday(d: datetime, js_day: int) -> datetime:
    """Move d within its Sunday-based week to the given day."""
    return d + timedelta(days=js_day - _js_weekday(d))


def _add_months(d: datetime, months: int, target_day: int) -> datetime:
    """Add months keeping target_day, clamped to the length of the month."""
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    max_day = calendar.monthrange(year, month)[1]
    return d.replace(year=year, month=month, day=min(target_day, max_day))


def _add_years(d: datetime, years: int, target_month: int, target_day: int) -> datetime:
    year = d.year + years
    max_day = calendar.monthrange(year, target_month)[1]
    return d.replace(year=year, month=target_month, day=min(target_day, max_day))


def _advance_past(start: datetime, limit: datetime, step_days: int) -> datetime:
    current = start
    while current <= limit:
        current += timedelta(days=step_days)
    return current


def _fast_path(
    rule: Rule,
    anchor: datetime,
    base: datetime,
    today: datetime,
    compare_day: datetime,
) -> datetime:
    """
    Closed-form approximation of the next due day.

    All arguments are local midnights. The result is a lower bound for the
    exact answer when the rule and anchor agree.
    """
    interval = rule.interval

    if rule.freq == "DAILY":
        return _advance_past(base, compare_day, interval)

    if rule.freq == "WEEKLY":
        days = rule.weekdays()
        if not days:
            return _advance_past(base, compare_day, interval * 7)

        latest = days[-1]
        end_of_current_week = _set_weekday(today, latest)
        start_of_current_week = _set_weekday(today, 0)

        can_use_current_week = (
            _js_weekday(base) != 6
            and _js_weekday(today) <= latest
            and _js_weekday(base) < latest
            and start_of_current_week <= base < end_of_current_week
        )

        if can_use_current_week:
            candidate = max(base + timedelta(days=1), today)
        else:
            # A full block of the selected weekdays has elapsed
            candidate = _set_weekday(base, 0) + timedelta(weeks=interval)
            while candidate < today:
                candidate += timedelta(weeks=interval)

        while _js_weekday(candidate) not in days:
            candidate += timedelta(days=1)
        return candidate

    if rule.by_day:
        # Positional rules (e.g. 2nd Tuesday) have no closed form here
        return compare_day + timedelta(days=1)

    if rule.freq == "MONTHLY":
        target_day = rule.by_month_day[0] if rule.by_month_day and rule.by_month_day[0] > 0 else anchor.day
        candidate = _add_months(base, interval, target_day)
        while candidate <= compare_day:
            candidate = _add_months(candidate, interval, target_day)
        return candidate

    # YEARLY
    target_month = rule.by_month[0] if rule.by_month else anchor.month
    target_day = rule.by_month_day[0] if rule.by_month_day and rule.by_month_day[0] > 0 else anchor.day
    candidate = _add_years(base, interval, target_month, target_day)
    while candidate <= compare_day:
        candidate = _add_years(candidate, interval, target_month, target_day)
    return candidate


def _build_dateutil_rule(rule: Rule, anchor: datetime) -> du_rrule.rrule:
    kwargs = {
        "dtstart": anchor,
        "interval": rule.interval,
    }
    if rule.by_day:
        weekdays = []
        for code in rule.by_day:
            match = _BYDAY_RE.match(code)
            if not match:
                continue
            weekday = _DU_WEEKDAY[match.group(2)]
            weekdays.append(weekday(int(match.group(1))) if match.group(1) else weekday)
        if weekdays:
            kwargs["byweekday"] = weekdays
    if rule.by_month:
        kwargs["bymonth"] = rule.by_month
    if rule.by_month_day:
        kwargs["bymonthday"] = rule.by_month_day
    if rule.count is not None:
        kwargs["count"] = rule.count
    until = rule.until_local()
    if until is not None:
        kwargs["until"] = until
    return du_rrule.rrule(_DU_FREQ[rule.freq], **kwargs)


def _exact_next(
    rule: Rule,
    anchor: datetime,
    fast_day: datetime,
    compare: datetime,
) -> Optional[datetime]:
    """
    First occurrence from the anchor on or after fast_day that ends after compare.

    Returns None when the rule is exhausted. Raises _IterationLimitReached
    after EXACT_ITERATION_LIMIT occurrences without a match.
    """
    for index, occurrence in enumerate(_build_dateutil_rule(rule, anchor)):
        if index >= EXACT_ITERATION_LIMIT:
            raise _IterationLimitReached()
        day = start_of_day(occurrence)
        if day >= fast_day and end_of_day(day) > compare:
            return day
    return None


def _to_local_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return utc_to_local_naive(value)
    return value


def next_due_date(
    rule,
    anchor: datetime,
    previous_due: Optional[datetime] = None,
    reference: Optional[datetime] = None,
) -> Optional[datetime]:
    """
    Next occurrence of a recurring todo.

    The result is the first occurrence strictly after
    max(end of previous_due, start of reference), normalized to 23:59:59.999
    local time. None means the series has no further occurrences.

    Args:
        rule: Rule or RRULE string; a rule without FREQ raises ValidationError
        anchor: original DTSTART of the series
        previous_due: due date of the instance being completed, if any
        reference: "today"; defaults to the current local day

    Returns:
        Naive local datetime at end of day, or None.
    """
    if rule is None:
        raise ValidationError("Invalid rrule: freq is required")
    rule = _coerce_rule(rule)

    anchor_day = start_of_day(_to_local_naive(anchor))
    today = start_of_day(_to_local_naive(reference)) if reference is not None else local_today()
    previous_day = start_of_day(_to_local_naive(previous_due)) if previous_due is not None else None

    compare = today
    if previous_day is not None:
        compare = max(end_of_day(previous_day), today)
    base = previous_day if previous_day is not None else today
    compare_day = max(previous_day, today) if previous_day is not None else today

    fast_day = _fast_path(rule, anchor_day, base, today, compare_day)
    until = rule.until_local()

    if until is not None and fast_day > until:
        return None

    try:
        exact_day = _exact_next(rule, anchor_day, fast_day, compare)
    except _IterationLimitReached:
        logger.debug("Expansion limit reached for %s, using fast path", rule.to_string())
        return end_of_day(fast_day)
    except Exception as e:
        logger.warning("Recurrence expansion failed for %s: %s", rule.to_string(), e)
        return end_of_day(fast_day)

    if exact_day is None:
        return None
    return end_of_day(exact_day)
