"""
Clock abstraction so scheduling and timestamps can be driven by tests.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Supplies the current instant as a timezone-aware UTC datetime."""

    def now(self) -> datetime: ...


class SystemClock:
    """Clock backed by the system wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return value as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO 8601 timestamp into an aware UTC datetime.

    Accepts a trailing 'Z' as produced by JavaScript's toISOString().

    Raises:
        ValueError: If the value is not a parseable timestamp.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid timestamp: {value!r}")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def format_timestamp(value: datetime) -> str:
    """Format a datetime as an ISO 8601 UTC string."""
    return ensure_utc(value).isoformat()
