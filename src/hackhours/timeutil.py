"""Time helpers: millisecond clock, day boundaries, date keys and formatting.

All timestamps are integer milliseconds since the Unix epoch. Day
boundaries, date keys and hours are taken in local time.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta

from hackhours.errors import InvalidRange

MS_PER_MINUTE = 60_000
MS_PER_HOUR = 3_600_000


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return time.time_ns() // 1_000_000


def minutes_to_ms(minutes: int | float) -> int:
    return int(minutes * MS_PER_MINUTE)


def from_ms(ms: int) -> datetime:
    """Convert epoch milliseconds to a naive local datetime (exact to the ms)."""
    return datetime.fromtimestamp(ms // 1000).replace(microsecond=(ms % 1000) * 1000)


def to_ms(dt: datetime) -> int:
    """Convert a datetime (naive = local time) to epoch milliseconds."""
    whole_seconds = int(dt.replace(microsecond=0).timestamp())
    return whole_seconds * 1000 + dt.microsecond // 1000


def start_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def end_of_day(dt: datetime) -> datetime:
    """Last millisecond of the day (inclusive bound)."""
    return dt.replace(hour=23, minute=59, second=59, microsecond=999_000)


def date_key(ms: int) -> str:
    """Local calendar date key (YYYY-MM-DD) for a timestamp."""
    return from_ms(ms).strftime("%Y-%m-%d")


def hour_of(ms: int) -> int:
    """Local hour of day (0-23) for a timestamp."""
    return from_ms(ms).hour


def parse_date_key(value: str) -> datetime:
    """Parse a YYYY-MM-DD date key into a local midnight datetime.

    Raises:
        InvalidRange: If the value is not a valid calendar date.
    """
    try:
        return datetime.strptime(value, "%Y-%m-%d")
    except ValueError as e:
        raise InvalidRange(value, value, f"invalid date {value!r}, use YYYY-MM-DD") from e


def validate_range(start: int, end: int) -> None:
    """Reject negative or inverted [start, end] ranges."""
    if start < 0 or end < 0:
        raise InvalidRange(start, end, "timestamps must not be negative")
    if end < start:
        raise InvalidRange(start, end)


def parse_range(from_key: str, to_key: str) -> tuple[int, int]:
    """Turn two date keys into an inclusive [start, end] millisecond range.

    Args:
        from_key: First day (YYYY-MM-DD), counted from its midnight.
        to_key: Last day (YYYY-MM-DD), counted through its last millisecond.

    Returns:
        Tuple of (start_ms, end_ms).

    Raises:
        InvalidRange: If either key is malformed or the range is inverted.
    """
    start = to_ms(start_of_day(parse_date_key(from_key)))
    end = to_ms(end_of_day(parse_date_key(to_key)))
    validate_range(start, end)
    return start, end


def last_days_range(days: int, now: int | None = None) -> tuple[int, int]:
    """Range covering the last ``days`` local days, today included.

    Args:
        days: Number of days (1 = today only).
        now: Current time in ms (default: wall clock).

    Returns:
        Tuple of (start_ms, end_ms), end being the last millisecond of today.
    """
    if days < 1:
        raise InvalidRange(days, days, "day count must be at least 1")
    today = from_ms(now_ms() if now is None else now)
    first = today - timedelta(days=days - 1)
    return to_ms(start_of_day(first)), to_ms(end_of_day(today))


def format_duration(ms: int) -> str:
    """Format milliseconds as 'Xh Ym', 'Ym', or '<1m'.

    Args:
        ms: Duration in milliseconds.

    Returns:
        Formatted duration string.
    """
    if ms < MS_PER_MINUTE:
        return "<1m" if ms > 0 else "0m"
    total_minutes = ms // MS_PER_MINUTE
    hours = total_minutes // 60
    minutes = total_minutes % 60
    if hours > 0:
        return f"{hours}h {minutes:2d}m"
    return f"{minutes}m"


def format_percent(value: int, total: int) -> str:
    """Share of ``total`` as a whole percentage, '0%' when total is zero."""
    if total <= 0:
        return "0%"
    return f"{round(value * 100 / total)}%"


def format_date_range(start: int, end: int) -> str:
    """Format an inclusive millisecond range for a report header.

    Returns:
        Formatted string like "Jan 28, 2025", "Jan 20-26, 2025" or
        "Dec 29, 2024 - Jan 04, 2025".
    """
    start_dt = from_ms(start)
    end_dt = from_ms(end)

    if start_dt.date() == end_dt.date():
        return start_dt.strftime("%b %d, %Y")
    if start_dt.year == end_dt.year and start_dt.month == end_dt.month:
        return f"{start_dt.strftime('%b')} {start_dt.day}-{end_dt.day}, {start_dt.year}"
    elif start_dt.year == end_dt.year:
        return f"{start_dt.strftime('%b %d')} - {end_dt.strftime('%b %d')}, {start_dt.year}"
    else:
        return f"{start_dt.strftime('%b %d, %Y')} - {end_dt.strftime('%b %d, %Y')}"
