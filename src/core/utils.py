"""Core utility functions."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Get current UTC datetime with timezone info. Always use this instead of datetime.now()."""
    return datetime.now(timezone.utc)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure a datetime is timezone-aware (UTC).

    SQLite stores datetimes without timezone info, so we need to make them
    aware before comparing with utcnow(). Aware values in another zone are
    converted so the stored wall time is always UTC.

    Args:
        dt: A datetime that may or may not be timezone-aware.

    Returns:
        Timezone-aware datetime in UTC, or None if input was None.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        # Assume naive datetimes are UTC
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def days_between(start: datetime, end: datetime) -> float:
    """Fractional days from start to end, both coerced to UTC-aware."""
    return (ensure_aware(end) - ensure_aware(start)).total_seconds() / 86400


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def generate_unique_key() -> str:
    """Generate a unique random key."""
    return uuid.uuid4().hex


__all__ = [
    "utcnow",
    "ensure_aware",
    "days_between",
    "clamp",
    "generate_unique_key",
]
