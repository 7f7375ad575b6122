"""
Helper Functions
================

Common utility functions used across the application.
"""

from datetime import datetime, timezone
from typing import Callable

# Injected wherever "now" matters (cache expiry, rate-limit windows,
# in-memory timestamps) so tests can drive time explicitly.
Clock = Callable[[], datetime]

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    """Get current UTC datetime with timezone info."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_unix_micros(dt: datetime) -> int:
    """Exact integer microseconds since the epoch."""
    delta = ensure_utc(dt) - EPOCH
    return (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds


def to_unix_nanos(dt: datetime) -> int:
    """Exact integer nanoseconds since the epoch (microsecond resolution)."""
    return to_unix_micros(dt) * 1000


def format_datetime(dt: datetime) -> str:
    """Format datetime to ISO 8601 string."""
    return dt.isoformat()

