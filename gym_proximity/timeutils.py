"""Time parsing, formatting and freshness utilities."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Callable


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""

    return datetime.now(UTC)


def isoformat_utc(dt: datetime) -> str:
    """Format a datetime like JavaScript's ``toISOString`` (UTC, milliseconds, ``Z``).

    Args:
        dt: Datetime. If naive, will be treated as UTC (discouraged).
    """

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(text: object) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Supported inputs:
      - "2025-01-31T09:30:00.000Z"
      - "2025-01-31T09:30:00+05:00"
      - "2025-01-31 09:30:00" (naive, assumed UTC)
      - datetime instances

    Returns:
        Aware datetime, or None if the value cannot be parsed.
    """

    if isinstance(text, datetime):
        dt = text
    elif isinstance(text, str) and text.strip():
        s = text.strip()
        if s.endswith(("Z", "z")):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def age(timestamp: object, now: datetime) -> timedelta | None:
    """Elapsed time since ``timestamp``; None when the timestamp is missing or invalid."""

    dt = parse_iso(timestamp)
    if dt is None:
        return None
    return now - dt


def is_within(timestamp: object, max_age: timedelta, now: datetime) -> bool:
    """True iff ``now - timestamp < max_age``."""

    elapsed = age(timestamp, now)
    if elapsed is None:
        return False
    return elapsed < max_age


def format_age(delta: timedelta) -> str:
    """Render a duration as ``HH:MM:SS`` (days folded into hours)."""

    s = int(round(max(0.0, delta.total_seconds())))
    h = s // 3600
    m = (s % 3600) // 60
    sec = s % 60
    return f"{h:02d}:{m:02d}:{sec:02d}"
