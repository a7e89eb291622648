"""SQLAlchemy models backing the practice calendar."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class Appointment(Base):
    __tablename__ = "appointments"

    id = sa.Column(String, primary_key=True, default=_new_id)
    practice_id = sa.Column(String, nullable=False)
    provider_id = sa.Column(String, nullable=True)
    patient_id = sa.Column(String, nullable=True)
    patient_name = sa.Column(String, nullable=True)
    reason = sa.Column(Text, nullable=True)
    start_time = sa.Column(DateTime(timezone=True), nullable=False)
    end_time = sa.Column(DateTime(timezone=True), nullable=False)
    status = sa.Column(String, nullable=False, default="scheduled")
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = sa.Column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        sa.Index("idx_appointments_practice_start", "practice_id", "start_time"),
        sa.Index("idx_appointments_provider", "provider_id"),
    )


class PracticeHours(Base):
    """Opening hours for one weekday (0 = Sunday ... 6 = Saturday)."""

    __tablename__ = "practice_hours"

    practice_id = sa.Column(String, primary_key=True)
    day_of_week = sa.Column(Integer, primary_key=True)
    start_time = sa.Column(String(5), nullable=False, default="09:00")
    end_time = sa.Column(String(5), nullable=False, default="17:00")
    is_closed = sa.Column(Boolean, nullable=False, default=False)


class BlockedTime(Base):
    __tablename__ = "practice_blocked_time"

    id = sa.Column(String, primary_key=True, default=_new_id)
    practice_id = sa.Column(String, nullable=False, index=True)
    start_time = sa.Column(DateTime(timezone=True), nullable=False)
    end_time = sa.Column(DateTime(timezone=True), nullable=False)
    reason = sa.Column(Text, nullable=True)


class PracticeSettings(Base):
    __tablename__ = "appointment_settings"

    practice_id = sa.Column(String, primary_key=True)
    timezone = sa.Column(String, nullable=False, default="America/New_York")


__all__ = [
    "Base",
    "Appointment",
    "PracticeHours",
    "BlockedTime",
    "PracticeSettings",
]
