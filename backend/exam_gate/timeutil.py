"""
Clock helpers.

All timestamps are stored as naive UTC datetimes so SQLite and PostgreSQL
compare them the same way.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_timestamp(ts_str: str) -> Optional[datetime]:
    """
    Flexibly parse ISO 8601 timestamps (with or without a trailing Z).
    Returns naive UTC, or None if the value does not parse.
    """
    if not ts_str or not isinstance(ts_str, str):
        return None
    try:
        if ts_str.endswith("Z"):
            ts_str = ts_str[:-1] + "+00:00"
        return to_naive_utc(datetime.fromisoformat(ts_str))
    except (ValueError, TypeError):
        return None


def isoformat(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a naive UTC datetime as ISO 8601 with a Z suffix."""
    if dt is None:
        return None
    return to_naive_utc(dt).isoformat() + "Z"
