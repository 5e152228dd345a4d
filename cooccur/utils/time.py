"""
Utility for UTC timestamps.
"""
from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Return current UTC datetime with timezone info."""
    return datetime.now(timezone.utc)


def days_ago(days: int) -> datetime:
    """UTC cutoff `days` before now."""
    return utcnow() - timedelta(days=days)
