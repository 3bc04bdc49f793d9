"""Shared timestamp parsing and normalization helpers."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

# Bounds used when a window has no natural edge.
MIN_TIMESTAMP = "1970-01-01T00:00:00Z"
MAX_TIMESTAMP = "9999-12-31T23:59:59Z"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_utc(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive values are treated as UTC. Returns None for anything unparsable.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        token = value.strip()
        if not token:
            return None
        try:
            dt = datetime.fromisoformat(token.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_timestamp(value: Any) -> str:
    parsed = parse_timestamp(value)
    return format_utc(parsed) if parsed else ""


def minute_key(value: Any) -> str:
    """Truncate a timestamp to its UTC minute, e.g. `2026-02-16T10:04`."""
    parsed = parse_timestamp(value)
    if parsed is None:
        return ""
    return parsed.strftime("%Y-%m-%dT%H:%M")


def is_after(left: Any, right: Any) -> bool:
    left_dt = parse_timestamp(left)
    right_dt = parse_timestamp(right)
    if left_dt is None or right_dt is None:
        return False
    return left_dt > right_dt


def days_from(moment: datetime, days: int) -> str:
    return format_utc(moment + timedelta(days=days))
