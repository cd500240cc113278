"""Wall-clock helpers for household-local timestamps.

Every timestamp entering the arbiter is an ISO-8601 string carrying the
household's own UTC offset. Hours and dates are read from that wall clock,
never converted to the server timezone. Elapsed-time math uses aware
datetimes so mixed offsets still compare correctly.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Union

Timestamp = Union[str, datetime]


def _from_iso_string(value: str) -> datetime:
    # fromisoformat only accepts a trailing "Z" from Python 3.11
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def parse_iso(value: Timestamp) -> datetime:
    """Parse an ISO string (or pass a datetime through) as an aware datetime.

    Naive values are treated as UTC; SQLite hands DateTime columns back naive.
    """
    dt = value if isinstance(value, datetime) else _from_iso_string(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def local_hour(value: Timestamp) -> int:
    return parse_iso(value).hour


def local_minutes(value: Timestamp) -> int:
    """Minutes since local midnight."""
    dt = parse_iso(value)
    return dt.hour * 60 + dt.minute


def local_date(value: Timestamp) -> date:
    return parse_iso(value).date()


def minutes_between(a: Timestamp, b: Timestamp) -> float:
    return abs((parse_iso(a) - parse_iso(b)).total_seconds()) / 60.0


def hours_since(earlier: Timestamp, now: Timestamp) -> float:
    return (parse_iso(now) - parse_iso(earlier)).total_seconds() / 3600.0


def days_between(earlier: Timestamp, later: Timestamp) -> float:
    """Elapsed days, clamped at zero when `earlier` is in the future."""
    delta = (parse_iso(later) - parse_iso(earlier)).total_seconds() / 86400.0
    return max(0.0, delta)


def is_timezone_qualified(value: str) -> bool:
    try:
        return _from_iso_string(value).tzinfo is not None
    except ValueError:
        return False
