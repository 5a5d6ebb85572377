"""
Datetime utility functions.
"""

from datetime import datetime
from typing import Optional
import pytz


def utcnow() -> datetime:
    """
    Get current UTC datetime using pytz.UTC.

    Returns:
        Current UTC datetime with pytz timezone information
    """
    return datetime.now(pytz.UTC)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes (SQLite drops tzinfo on the way back).

    Args:
        value: Datetime, possibly naive, or None

    Returns:
        Timezone-aware datetime in UTC, or None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def snapshot_stamp(value: datetime) -> str:
    """Compact sortable stamp used in snapshot ids, e.g. 20261018T101500123456Z."""
    return ensure_utc(value).strftime("%Y%m%dT%H%M%S%fZ")
