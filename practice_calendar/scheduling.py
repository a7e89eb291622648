"""Appointment storage, practice hours and calendar exports.

All helpers take an explicit SQLAlchemy ``Session``; transaction boundaries
belong to the caller (see :func:`practice_calendar.db.session_scope`).
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from practice_calendar.db.models import (
    Appointment,
    BlockedTime,
    PracticeHours,
    PracticeSettings,
)
from practice_calendar.time_utils import ensure_utc, serialize_timestamp


logger = structlog.get_logger(__name__)


class AppointmentNotFoundError(LookupError):
    """Raised when an appointment id does not exist."""


class InvalidAppointmentError(ValueError):
    """Raised for appointment data that cannot be stored."""


DEFAULT_APPOINTMENT_DURATION = timedelta(minutes=30)
DEFAULT_TIMEZONE = "America/New_York"

# Summary used for exported calendar events.
DEFAULT_EVENT_SUMMARY = "Appointment"

ALLOWED_STATUSES = {
    "scheduled",
    "pending",
    "confirmed",
    "checked_in",
    "in_progress",
    "completed",
    "cancelled",
    "no_show",
}

# Statuses that no longer occupy time on the calendar.
INACTIVE_STATUSES = {"cancelled", "no_show"}

_STATUS_REMAP = {
    "canceled": "cancelled",
    "cancel": "cancelled",
    "no-show": "no_show",
    "noshow": "no_show",
    "check-in": "checked_in",
    "checkin": "checked_in",
    "checked-in": "checked_in",
    "in-progress": "in_progress",
    "started": "in_progress",
    "start": "in_progress",
    "complete": "completed",
    "finished": "completed",
    "confirm": "confirmed",
}

# Used when a practice has not configured a weekday.  Sunday = 0.
_DEFAULT_HOURS = {
    day: {"start_time": "09:00", "end_time": "17:00", "is_closed": day in (0, 6)}
    for day in range(7)
}


def normalise_status(value: Optional[str]) -> str:
    """Map status aliases to their canonical spelling.

    Raises :class:`InvalidAppointmentError` for unknown statuses.
    """

    if not value:
        return "scheduled"
    normalised = value.strip().lower().replace(" ", "-")
    normalised = _STATUS_REMAP.get(normalised, normalised.replace("-", "_"))
    if normalised not in ALLOWED_STATUSES:
        raise InvalidAppointmentError(f"Unknown appointment status '{value}'")
    return normalised


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def create_appointment(
    session: Session,
    practice_id: str,
    start: datetime,
    end: Optional[datetime] = None,
    *,
    provider_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    patient_name: Optional[str] = None,
    reason: Optional[str] = None,
    status: str = "scheduled",
) -> Appointment:
    """Create and flush an appointment.

    ``end`` defaults to 30 minutes after ``start``.  An ``end`` that is not
    after ``start`` is rejected.
    """

    start = ensure_utc(start)
    end = ensure_utc(end) if end is not None else start + DEFAULT_APPOINTMENT_DURATION
    if end <= start:
        raise InvalidAppointmentError("Appointment must end after it starts")
    practice = _clean(practice_id)
    if practice is None:
        raise InvalidAppointmentError("practiceId is required")

    record = Appointment(
        practice_id=practice,
        provider_id=_clean(provider_id),
        patient_id=_clean(patient_id),
        patient_name=_clean(patient_name),
        reason=_clean(reason),
        start_time=start.replace(microsecond=0),
        end_time=end.replace(microsecond=0),
        status=normalise_status(status),
    )
    session.add(record)
    session.flush()
    logger.info(
        "appointment.created",
        appointment_id=record.id,
        practice_id=record.practice_id,
        provider_id=record.provider_id,
    )
    return record


def get_appointment(session: Session, appointment_id: str) -> Appointment:
    record = session.get(Appointment, appointment_id)
    if record is None:
        raise AppointmentNotFoundError(appointment_id)
    return record


def list_appointments(
    session: Session,
    practice_id: str,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    provider_id: Optional[str] = None,
    include_cancelled: bool = False,
) -> List[Appointment]:
    """Return a practice's appointments sorted by start time.

    ``start``/``end`` bound the appointment start inclusively.
    """

    query = select(Appointment).where(Appointment.practice_id == practice_id)
    if start is not None:
        query = query.where(Appointment.start_time >= ensure_utc(start))
    if end is not None:
        query = query.where(Appointment.start_time <= ensure_utc(end))
    if provider_id:
        query = query.where(Appointment.provider_id == provider_id)
    if not include_cancelled:
        query = query.where(Appointment.status != "cancelled")
    query = query.order_by(Appointment.start_time.asc(), Appointment.id.asc())
    return list(session.execute(query).scalars().all())


def list_active_overlapping(
    session: Session,
    practice_id: str,
    start: datetime,
    end: datetime,
    *,
    provider_id: Optional[str] = None,
    exclude_id: Optional[str] = None,
) -> List[Appointment]:
    """Return appointments that still occupy time inside ``[start, end)``."""

    query = (
        select(Appointment)
        .where(Appointment.practice_id == practice_id)
        .where(Appointment.status.not_in(sorted(INACTIVE_STATUSES)))
        .where(Appointment.start_time < ensure_utc(end))
        .where(Appointment.end_time > ensure_utc(start))
    )
    if provider_id:
        query = query.where(Appointment.provider_id == provider_id)
    if exclude_id:
        query = query.where(Appointment.id != exclude_id)
    return list(session.execute(query).scalars().all())


def update_status(session: Session, appointment_id: str, status: str) -> Appointment:
    record = get_appointment(session, appointment_id)
    previous = record.status
    record.status = normalise_status(status)
    session.flush()
    logger.info(
        "appointment.status_changed",
        appointment_id=appointment_id,
        previous=previous,
        status=record.status,
    )
    return record


def appointment_duration(record: Appointment) -> timedelta:
    duration = ensure_utc(record.end_time) - ensure_utc(record.start_time)
    if duration.total_seconds() <= 0:
        return DEFAULT_APPOINTMENT_DURATION
    return duration


def reschedule_appointment(
    session: Session, appointment_id: str, new_start: datetime
) -> Appointment:
    """Move an appointment keeping its duration; status resets to ``scheduled``."""

    record = get_appointment(session, appointment_id)
    duration = appointment_duration(record)
    new_start = ensure_utc(new_start).replace(microsecond=0)
    record.start_time = new_start
    record.end_time = new_start + duration
    record.status = "scheduled"
    session.flush()
    logger.info("appointment.rescheduled", appointment_id=appointment_id)
    return record


def get_practice_timezone(session: Session, practice_id: str) -> str:
    row = session.get(PracticeSettings, practice_id)
    if row is None or not row.timezone:
        return DEFAULT_TIMEZONE
    return row.timezone


def set_practice_timezone(session: Session, practice_id: str, timezone_name: str) -> None:
    row = session.get(PracticeSettings, practice_id)
    if row is None:
        session.add(PracticeSettings(practice_id=practice_id, timezone=timezone_name))
    else:
        row.timezone = timezone_name
    session.flush()


def get_practice_hours(session: Session, practice_id: str, day_of_week: int) -> Dict[str, Any]:
    """Return opening hours for ``day_of_week`` (Sunday = 0) with defaults."""

    row = session.get(PracticeHours, (practice_id, day_of_week))
    if row is None:
        return dict(_DEFAULT_HOURS[day_of_week])
    return {
        "start_time": row.start_time,
        "end_time": row.end_time,
        "is_closed": bool(row.is_closed),
    }


def set_practice_hours(
    session: Session, practice_id: str, hours: Sequence[Mapping[str, Any]]
) -> None:
    """Upsert weekday hours from mappings with ``dayOfWeek``/``day_of_week`` keys."""

    for entry in hours:
        day = entry.get("day_of_week", entry.get("dayOfWeek"))
        if day is None or not 0 <= int(day) <= 6:
            raise InvalidAppointmentError(f"Invalid day of week: {day!r}")
        day = int(day)
        row = session.get(PracticeHours, (practice_id, day))
        if row is None:
            row = PracticeHours(practice_id=practice_id, day_of_week=day)
            session.add(row)
        row.start_time = entry.get("start_time", entry.get("startTime", "09:00"))
        row.end_time = entry.get("end_time", entry.get("endTime", "17:00"))
        row.is_closed = bool(entry.get("is_closed", entry.get("isClosed", False)))
    session.flush()


def add_blocked_time(
    session: Session,
    practice_id: str,
    start: datetime,
    end: datetime,
    reason: Optional[str] = None,
) -> BlockedTime:
    start = ensure_utc(start)
    end = ensure_utc(end)
    if end <= start:
        raise InvalidAppointmentError("Blocked time must end after it starts")
    row = BlockedTime(practice_id=practice_id, start_time=start, end_time=end, reason=_clean(reason))
    session.add(row)
    session.flush()
    return row


def list_blocked_time(
    session: Session,
    practice_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[BlockedTime]:
    query = select(BlockedTime).where(BlockedTime.practice_id == practice_id)
    if end is not None:
        query = query.where(BlockedTime.start_time < ensure_utc(end))
    if start is not None:
        query = query.where(BlockedTime.end_time > ensure_utc(start))
    return list(session.execute(query.order_by(BlockedTime.start_time)).scalars().all())


def appointment_to_dict(record: Appointment) -> Dict[str, Any]:
    return {
        "id": record.id,
        "practiceId": record.practice_id,
        "providerId": record.provider_id,
        "patientId": record.patient_id,
        "patientName": record.patient_name,
        "reason": record.reason,
        "start_time": serialize_timestamp(record.start_time),
        "end_time": serialize_timestamp(record.end_time),
        "status": record.status,
    }


def export_appointment_ics(record: Appointment | Mapping[str, Any]) -> str:
    """Produce an ICS string for a stored appointment."""

    if isinstance(record, Appointment):
        record = appointment_to_dict(record)
    start = ensure_utc(datetime.fromisoformat(record["start_time"]))
    end = ensure_utc(datetime.fromisoformat(record["end_time"]))

    def _fmt(dt: datetime) -> str:
        return dt.strftime("%Y%m%dT%H%M%SZ")

    reason = record.get("reason") or ""
    summary = f"{DEFAULT_EVENT_SUMMARY}: {reason}" if reason else DEFAULT_EVENT_SUMMARY
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//PracticeCalendar//EN",
        "BEGIN:VEVENT",
        f"UID:{record['id']}",
        f"SUMMARY:{summary}",
        f"DTSTART:{_fmt(start)}",
        f"DTEND:{_fmt(end)}",
        f"DESCRIPTION:Patient {record.get('patientName') or ''}".rstrip(),
        "END:VEVENT",
        "END:VCALENDAR",
    ]
    return "\r\n".join(lines)


__all__ = [
    "AppointmentNotFoundError",
    "InvalidAppointmentError",
    "DEFAULT_APPOINTMENT_DURATION",
    "DEFAULT_EVENT_SUMMARY",
    "DEFAULT_TIMEZONE",
    "INACTIVE_STATUSES",
    "normalise_status",
    "create_appointment",
    "get_appointment",
    "list_appointments",
    "list_active_overlapping",
    "update_status",
    "appointment_duration",
    "reschedule_appointment",
    "get_practice_timezone",
    "set_practice_timezone",
    "get_practice_hours",
    "set_practice_hours",
    "add_blocked_time",
    "list_blocked_time",
    "appointment_to_dict",
    "export_appointment_ics",
]
