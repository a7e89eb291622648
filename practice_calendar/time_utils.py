"""Utilities for working with timestamps in UTC."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo

Timestamp = Union[datetime, str]


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Timestamp) -> datetime:
    """Parse an ISO-8601 string or ``datetime`` into an aware UTC ``datetime``.

    A trailing ``Z`` is accepted.  Naive values are treated as UTC.  Anything
    that cannot be parsed raises ``ValueError`` (or ``TypeError`` for
    unsupported types) straight from the parser.
    """

    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if not isinstance(value, str):
        raise TypeError(f"Unsupported timestamp type: {type(value).__name__}")
    text = value.strip()
    normalised = text[:-1] + "+00:00" if text.endswith("Z") else text
    return ensure_utc(datetime.fromisoformat(normalised))


def serialize_timestamp(dt: Optional[datetime]) -> Optional[str]:
    if not isinstance(dt, datetime):
        return None
    return ensure_utc(dt).replace(microsecond=0).isoformat()


def to_local(dt: datetime, tz: ZoneInfo) -> datetime:
    """Convert ``dt`` to wall-clock time in ``tz``."""

    return ensure_utc(dt).astimezone(tz)


def minutes_of_day(dt: datetime) -> int:
    return dt.hour * 60 + dt.minute


__all__ = [
    "utc_now",
    "ensure_utc",
    "parse_timestamp",
    "serialize_timestamp",
    "to_local",
    "minutes_of_day",
]
