"""Timestamp utilities for offline-sync.

All timestamps handled by the engine are timezone-aware UTC datetimes in
memory and fixed-width ISO-8601 strings in storage, so that stored values
compare correctly as plain strings in SQL.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Union

# Keys checked (in order) for a record-level modification timestamp
UPDATED_AT_KEYS = ("updatedAt", "updated_at")

# Numeric timestamps above this are epoch milliseconds (1e11 s is year 5138)
EPOCH_MS_THRESHOLD = 100_000_000_000

TimestampLike = Union[datetime, str, int, float]


def utc_now() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Format a datetime for storage.

    Naive datetimes are assumed to already be in UTC.

    Args:
        dt: datetime object or None

    Returns:
        ISO string with microsecond precision and explicit offset, or None
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO string back into an aware UTC datetime."""
    if value is None or value == "":
        return None
    return parse_timestamp(value)


def parse_timestamp(value: Optional[TimestampLike]) -> Optional[datetime]:
    """Parse a loosely-typed timestamp into an aware UTC datetime.

    Accepts datetimes, ISO-8601 strings (including a trailing ``Z``) and
    Unix timestamps. Numbers above EPOCH_MS_THRESHOLD are milliseconds,
    smaller ones seconds.

    Args:
        value: Timestamp to parse

    Returns:
        Aware UTC datetime, or None if value is None or cannot be parsed
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if abs(value) > EPOCH_MS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return None


def get_updated_at(record: Optional[Dict[str, Any]]) -> Optional[datetime]:
    """Get the modification timestamp carried by a payload, if any."""
    if not record:
        return None
    for key in UPDATED_AT_KEYS:
        if key in record:
            parsed = parse_timestamp(record[key])
            if parsed is not None:
                return parsed
    return None


def milliseconds_between(a: datetime, b: datetime) -> float:
    """Get the absolute difference between two datetimes in milliseconds."""
    return abs((a - b).total_seconds()) * 1000.0


def days_ago(days: float, now: Optional[datetime] = None) -> datetime:
    """Get the datetime a number of days before now."""
    return (now or utc_now()) - timedelta(days=days)


def format_timestamp(dt: Optional[datetime]) -> str:
    """Format a datetime in the local timezone for display.

    Args:
        dt: datetime object or None

    Returns:
        Formatted string "YYYY-MM-DD HH:MM:SS" in local timezone,
        or empty string if dt is None
    """
    if dt is None:
        return ""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone().strftime("%Y-%m-%d %H:%M:%S")
