"""
timestamps.py — Normalise backend timestamps at the ingress boundary.

Snapshot and region documents arrive with timestamps in whatever shape the
writer used: BSON datetimes (naive or tz-aware depending on the client),
bson.Timestamp values, epoch milliseconds, ISO-8601 strings, or the
{"seconds": ..., "nanoseconds": ...} objects produced by Firestore exports.
Everything downstream works with tz-aware UTC datetimes only.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from bson import Timestamp


def to_utc_datetime(value: Any) -> datetime | None:
    """
    Convert a backend timestamp into a tz-aware UTC datetime.

    Returns None for None and for values that cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if isinstance(value, Timestamp):
        return value.as_datetime().astimezone(timezone.utc)

    if isinstance(value, (int, float)):
        # Epoch milliseconds
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_utc_datetime(datetime.fromisoformat(text))
        except ValueError:
            return None

    if isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        nanos = value.get("nanoseconds", value.get("_nanoseconds", 0)) or 0
        if isinstance(seconds, (int, float)) and isinstance(nanos, (int, float)):
            return to_utc_datetime(seconds * 1000.0 + nanos / 1_000_000.0)
        return None

    return None
