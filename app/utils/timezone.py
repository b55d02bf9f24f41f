# FILE: app/utils/timezone.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """
    Returns a *naive* datetime representing UTC time.
    DateTime columns are naive; every stored timestamp is UTC.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_db_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Client clocks may send offsets; normalise to naive UTC for storage."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def ms_between(start: datetime, end: datetime) -> int:
    return (end - start) // timedelta(milliseconds=1)
