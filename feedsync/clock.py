from __future__ import annotations

from datetime import UTC, datetime
from typing import Any


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO strings, epoch seconds/milliseconds or datetimes into aware UTC datetimes.

    Returns None for empty input. Raises ValueError when a value is present but unreadable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, bool):
        raise ValueError(f"invalid timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        seconds = float(value)
        # Feeds that store epoch milliseconds produce values far past year 5000 as seconds.
        if abs(seconds) >= 100_000_000_000:
            seconds = seconds / 1000.0
        dt = datetime.fromtimestamp(seconds, tz=UTC)
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        dt = datetime.fromisoformat(raw)
    else:
        raise ValueError(f"invalid timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat()
