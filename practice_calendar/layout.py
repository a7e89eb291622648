"""Side-by-side column layout for overlapping calendar appointments.

Day and week views render appointments as blocks inside a time track.  When
appointments overlap in time they are drawn next to each other, each in its
own vertical column, in the same way common calendar clients lay out a busy
day.  This module computes those columns.

Placement is a greedy pass over the appointments ordered by start time, with
longer appointments first when two start together.  Each appointment goes
into the first column where it does not collide with anything already
placed, opening a new column when none fits.  Column width is derived from
the number of appointments that overlap each one pairwise, which for chains
of overlaps (A overlaps B, B overlaps C, A clear of C) can exceed the number
of columns actually used; the spare width is left as gutter.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple

import structlog

from practice_calendar.time_utils import parse_timestamp


logger = structlog.get_logger(__name__)

# Horizontal gap, in percent, kept between adjacent columns.
COLUMN_GUTTER = 0.5


@dataclass(frozen=True)
class LayoutAssignment:
    """Placement of a single appointment within the calendar track."""

    appointment_id: str
    column_index: int
    column_width: float
    column_left: float
    max_concurrent: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "appointmentId": self.appointment_id,
            "columnIndex": self.column_index,
            "columnWidth": self.column_width,
            "columnLeft": self.column_left,
            "maxConcurrent": self.max_concurrent,
        }


def _field(appointment: Any, name: str) -> Any:
    if isinstance(appointment, Mapping):
        return appointment[name]
    return getattr(appointment, name)


def _interval(appointment: Any) -> Tuple[datetime, datetime]:
    return (
        parse_timestamp(_field(appointment, "start_time")),
        parse_timestamp(_field(appointment, "end_time")),
    )


def _intervals_overlap(a: Tuple[datetime, datetime], b: Tuple[datetime, datetime]) -> bool:
    return a[0] < b[1] and b[0] < a[1]


def overlaps(a: Any, b: Any) -> bool:
    """Return ``True`` when the half-open intervals of ``a`` and ``b`` intersect.

    ``a`` and ``b`` are mappings or objects exposing ``start_time`` and
    ``end_time`` as ISO-8601 strings or ``datetime`` values.  Appointments
    that only touch (one ends exactly when the other starts) do not overlap.
    """

    return _intervals_overlap(_interval(a), _interval(b))


def layout_appointments(appointments: Iterable[Any]) -> List[LayoutAssignment]:
    """Assign every appointment a display column.

    Returns one :class:`LayoutAssignment` per input appointment.  Overlapping
    appointments never share a column.  The input is not modified and the
    result is deterministic for a given input order.
    """

    entries = []
    for appointment in appointments:
        start, end = _interval(appointment)
        entries.append((str(_field(appointment, "id")), (start, end)))
    if not entries:
        return []

    # Stable sort: start ascending, then longest first.
    ordered = sorted(entries, key=lambda item: (item[1][0], -(item[1][1] - item[1][0])))

    columns: List[List[Tuple[datetime, datetime]]] = []
    placement: List[Tuple[str, Tuple[datetime, datetime], int]] = []
    for appointment_id, interval in ordered:
        for index, column in enumerate(columns):
            if not any(_intervals_overlap(interval, placed) for placed in column):
                column.append(interval)
                placement.append((appointment_id, interval, index))
                break
        else:
            columns.append([interval])
            placement.append((appointment_id, interval, len(columns) - 1))

    assignments: List[LayoutAssignment] = []
    for position, (appointment_id, interval, column_index) in enumerate(placement):
        others = sum(
            1
            for other_position, (_, other, _) in enumerate(placement)
            if other_position != position and _intervals_overlap(interval, other)
        )
        max_concurrent = 1 + others
        share = 100 / max_concurrent
        assignments.append(
            LayoutAssignment(
                appointment_id=appointment_id,
                column_index=column_index,
                column_width=share - COLUMN_GUTTER,
                column_left=share * column_index,
                max_concurrent=max_concurrent,
            )
        )

    logger.debug(
        "calendar_layout.computed",
        appointments=len(assignments),
        columns=len(columns),
    )
    return assignments


def assignments_by_id(assignments: Sequence[LayoutAssignment]) -> Dict[str, LayoutAssignment]:
    return {item.appointment_id: item for item in assignments}


__all__ = [
    "COLUMN_GUTTER",
    "LayoutAssignment",
    "overlaps",
    "layout_appointments",
    "assignments_by_id",
]
