"""Booking validation and soonest-slot search against practice hours.

Everything here is pure: callers load practice hours, blocked time and
existing appointments and pass them in together with ``now``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo

import structlog

from practice_calendar.layout import overlaps
from practice_calendar.time_utils import ensure_utc, minutes_of_day, to_local


logger = structlog.get_logger(__name__)

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
MONTH_NAMES = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

DEFAULT_SEARCH_DAYS = 30
DEFAULT_STEP_MINUTES = 30


@dataclass
class SlotValidation:
    valid: bool
    error: Optional[str] = None
    alternatives: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        if self.valid:
            return {"valid": True}
        return {"valid": False, "error": self.error, "alternatives": list(self.alternatives)}


@dataclass
class SoonestSlot:
    available: bool
    message: str
    suggested_date: Optional[str] = None
    suggested_time: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"available": self.available, "message": self.message}
        if self.available:
            payload["suggestedDate"] = self.suggested_date
            payload["suggestedTime"] = self.suggested_time
        return payload


def parse_hhmm(value: str) -> int:
    """Return minutes after midnight for ``"HH:MM"`` (seconds are ignored)."""

    parts = str(value).split(":")
    hours = int(parts[0] or 0)
    minutes = int(parts[1] or 0) if len(parts) > 1 else 0
    return hours * 60 + minutes


def minutes_to_hhmm(minutes: int) -> str:
    return f"{(minutes // 60) % 24:02d}:{minutes % 60:02d}"


def format_display_time(value: str | int) -> str:
    """Render ``"14:30"`` (or minutes after midnight) as ``"2:30 PM"``."""

    minutes = value if isinstance(value, int) else parse_hhmm(value)
    hour, minute = (minutes // 60) % 24, minutes % 60
    display_hour = hour - 12 if hour > 12 else (12 if hour == 0 else hour)
    suffix = "PM" if hour >= 12 else "AM"
    return f"{display_hour}:{minute:02d} {suffix}"


def local_to_utc(day: date, hhmm: str | int, tz: ZoneInfo) -> datetime:
    """Interpret ``day`` at wall-clock ``hhmm`` in ``tz`` and return UTC."""

    minutes = hhmm if isinstance(hhmm, int) else parse_hhmm(hhmm)
    # Aware arithmetic with a shared tzinfo stays on the wall clock.
    local = datetime.combine(day, time(0, 0), tzinfo=tz) + timedelta(minutes=minutes)
    return ensure_utc(local)


def day_of_week(day: date) -> int:
    """Sunday-based weekday index (Sunday = 0)."""

    return (day.weekday() + 1) % 7


def _interval(start: datetime, end: datetime) -> Dict[str, datetime]:
    return {"start_time": start, "end_time": end}


def _first_overlap(candidate: Mapping[str, Any], records: Iterable[Any]) -> Optional[Any]:
    for record in records:
        if overlaps(candidate, record):
            return record
    return None


def _reason(record: Any) -> Optional[str]:
    if isinstance(record, Mapping):
        return record.get("reason")
    return getattr(record, "reason", None)


def validate_slot(
    day: date,
    start_hhmm: str,
    duration_minutes: int,
    *,
    hours: Optional[Mapping[str, Any]],
    blocked: Sequence[Any],
    appointments: Sequence[Any],
    tz: ZoneInfo,
    now: datetime,
) -> SlotValidation:
    """Decide whether a patient may book ``start_hhmm`` on ``day``.

    ``hours`` holds ``start_time``/``end_time``/``is_closed`` for the weekday
    of ``day``.  ``blocked`` and ``appointments`` are records with
    ``start_time``/``end_time``; callers pass only appointments that still
    occupy time.  Checks run in a fixed order and the first failure wins.
    """

    start_min = parse_hhmm(start_hhmm)
    end_min = start_min + duration_minutes

    local_now = to_local(now, tz)
    if day < local_now.date() or (
        day == local_now.date() and start_min <= minutes_of_day(local_now)
    ):
        return SlotValidation(False, "Cannot book appointments in the past")

    if not hours or hours.get("is_closed"):
        return SlotValidation(False, f"Practice is closed on {DAY_NAMES[day_of_week(day)]}s")

    open_min = parse_hhmm(hours["start_time"])
    close_min = parse_hhmm(hours["end_time"])
    if start_min < open_min:
        return SlotValidation(False, f"Practice hours start at {format_display_time(open_min)}")
    if end_min > close_min:
        return SlotValidation(
            False,
            f"Appointment would end after closing time ({format_display_time(close_min)})",
        )

    candidate = _interval(local_to_utc(day, start_min, tz), local_to_utc(day, end_min, tz))

    hit = _first_overlap(candidate, blocked)
    if hit is not None:
        reason = _reason(hit)
        suffix = f": {reason}" if reason else ""
        logger.info("availability.rejected", cause="blocked", day=day.isoformat(), time=start_hhmm)
        return SlotValidation(False, f"This time slot is blocked{suffix}")

    if _first_overlap(candidate, appointments) is not None:
        logger.info("availability.rejected", cause="conflict", day=day.isoformat(), time=start_hhmm)
        return SlotValidation(False, "This time slot is already booked")

    return SlotValidation(True)


def find_soonest_slot(
    duration_minutes: int,
    *,
    hours_for_day: Callable[[int], Optional[Mapping[str, Any]]],
    blocked: Sequence[Any],
    appointments: Sequence[Any],
    tz: ZoneInfo,
    now: datetime,
    max_days: int = DEFAULT_SEARCH_DAYS,
    step_minutes: int = DEFAULT_STEP_MINUTES,
) -> SoonestSlot:
    """Scan forward from ``now`` for the first bookable slot.

    ``hours_for_day`` maps a Sunday-based weekday to that day's hours.  Today
    starts at the next ``step_minutes`` boundary strictly after now; a slot
    may end exactly at closing time.
    """

    local_now = to_local(now, tz)
    today = local_now.date()
    now_min = minutes_of_day(local_now)

    for offset in range(max_days):
        day = today + timedelta(days=offset)
        weekday = day_of_week(day)
        hours = hours_for_day(weekday)
        if not hours or hours.get("is_closed"):
            continue

        open_min = parse_hhmm(hours["start_time"])
        close_min = parse_hhmm(hours["end_time"])
        first = open_min
        if offset == 0:
            next_boundary = math.ceil((now_min + 1) / step_minutes) * step_minutes
            first = max(open_min, next_boundary)
        latest = close_min - duration_minutes
        if first > latest:
            continue

        for minute in range(first, latest + 1, step_minutes):
            candidate = _interval(
                local_to_utc(day, minute, tz),
                local_to_utc(day, minute + duration_minutes, tz),
            )
            if _first_overlap(candidate, blocked) is not None:
                continue
            if _first_overlap(candidate, appointments) is not None:
                continue
            message = (
                f"First available: {DAY_NAMES[weekday]}, {MONTH_NAMES[day.month - 1]} "
                f"{day.day} at {format_display_time(minute)}"
            )
            logger.info("availability.soonest_found", day=day.isoformat(), time=minutes_to_hhmm(minute))
            return SoonestSlot(
                available=True,
                message=message,
                suggested_date=day.isoformat(),
                suggested_time=minutes_to_hhmm(minute),
            )

    return SoonestSlot(
        available=False,
        message=f"No availability found in the next {max_days} days",
    )


__all__ = [
    "DAY_NAMES",
    "SlotValidation",
    "SoonestSlot",
    "parse_hhmm",
    "minutes_to_hhmm",
    "format_display_time",
    "local_to_utc",
    "day_of_week",
    "validate_slot",
    "find_soonest_slot",
]
