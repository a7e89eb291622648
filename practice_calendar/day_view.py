"""Positioned appointment blocks for day and week calendar views."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple
from zoneinfo import ZoneInfo

from practice_calendar.layout import assignments_by_id, layout_appointments
from practice_calendar.time_utils import minutes_of_day, parse_timestamp, to_local


# Pixels per hour of the time grid.
SLOT_HEIGHT = 60
MIN_BLOCK_HEIGHT = 40


@dataclass(frozen=True)
class DayViewBlock:
    appointment_id: str
    top: float
    height: float
    column_index: int
    column_left: float
    column_width: float
    max_concurrent: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "appointmentId": self.appointment_id,
            "top": self.top,
            "height": self.height,
            "columnIndex": self.column_index,
            "columnLeft": self.column_left,
            "columnWidth": self.column_width,
            "maxConcurrent": self.max_concurrent,
        }


def time_slots(start_hour: int, end_hour: int, slot_minutes: int = 30) -> List[Tuple[int, int]]:
    """Grid rows from ``start_hour`` up to, not including, ``end_hour``."""

    if slot_minutes <= 0:
        raise ValueError("slot_minutes must be positive")
    return [
        (hour, minute)
        for hour in range(start_hour, end_hour)
        for minute in range(0, 60, slot_minutes)
    ]


def vertical_position(
    start: Any,
    end: Any,
    start_hour: int,
    tz: ZoneInfo,
    *,
    slot_height: float = SLOT_HEIGHT,
    min_height: float = MIN_BLOCK_HEIGHT,
) -> Tuple[float, float]:
    """Return ``(top, height)`` in pixels for an appointment on the grid."""

    start_minutes = minutes_of_day(to_local(parse_timestamp(start), tz))
    end_minutes = minutes_of_day(to_local(parse_timestamp(end), tz))
    top = (start_minutes - start_hour * 60) / 60 * slot_height
    height = (end_minutes - start_minutes) / 60 * slot_height
    return top, max(height, min_height)


def _get(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def filter_day(appointments: Iterable[Any], day: date, tz: ZoneInfo) -> List[Any]:
    """Keep appointments starting on ``day`` in ``tz`` that are not cancelled."""

    kept = []
    for record in appointments:
        if _get(record, "status") == "cancelled":
            continue
        if to_local(parse_timestamp(_get(record, "start_time")), tz).date() == day:
            kept.append(record)
    return kept


def build_day_view(
    appointments: Sequence[Any],
    *,
    start_hour: int,
    tz: ZoneInfo,
    slot_height: float = SLOT_HEIGHT,
) -> List[DayViewBlock]:
    """Lay out ``appointments`` side by side and position them vertically.

    Blocks come back in the order of ``appointments``.
    """

    placed = assignments_by_id(layout_appointments(appointments))
    blocks = []
    for record in appointments:
        assignment = placed[str(_get(record, "id"))]
        top, height = vertical_position(
            _get(record, "start_time"),
            _get(record, "end_time"),
            start_hour,
            tz,
            slot_height=slot_height,
        )
        blocks.append(
            DayViewBlock(
                appointment_id=assignment.appointment_id,
                top=top,
                height=height,
                column_index=assignment.column_index,
                column_left=assignment.column_left,
                column_width=assignment.column_width,
                max_concurrent=assignment.max_concurrent,
            )
        )
    return blocks


__all__ = [
    "SLOT_HEIGHT",
    "MIN_BLOCK_HEIGHT",
    "DayViewBlock",
    "time_slots",
    "vertical_position",
    "filter_day",
    "build_day_view",
]
