"""Utility functions for the enforcement core."""

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """
    Normalise a datetime to aware UTC.

    SQLite hands back naive datetimes even for timezone-aware columns, so
    anything without tzinfo is taken to already be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def human_duration(delta: timedelta | None) -> str:
    """Render a duration the way moderators write it (``90m`` -> ``1h 30m``)."""
    if delta is None:
        return "indefinite"

    minutes = int(delta.total_seconds() // 60)
    if minutes < 60:
        return f"{minutes}m"
    hours, minutes = divmod(minutes, 60)
    if hours >= 24 and hours % 24 == 0 and minutes == 0:
        return f"{hours // 24}d"
    if minutes == 0:
        return f"{hours}h"
    return f"{hours}h {minutes}m"
