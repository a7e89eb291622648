"""HTTP API for the practice calendar.

Run with ``uvicorn practice_calendar.main:app``.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from structlog.contextvars import bind_contextvars, unbind_contextvars

from practice_calendar import availability, day_view, scheduling
from practice_calendar.cache import TimedCache
from practice_calendar.db import session_scope
from practice_calendar.db.config import get_app_settings
from practice_calendar.layout import layout_appointments
from practice_calendar.time_utils import ensure_utc, utc_now

load_dotenv()

SETTINGS = get_app_settings()

logging.basicConfig(level=getattr(logging, SETTINGS.log_level, logging.INFO), format="%(message)s")

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

_TRACE_ID_CTX: ContextVar[str | None] = ContextVar("trace_id", default=None)


def _get_or_create_metric(metric_cls, name: str, documentation: str, labelnames=(), **kwargs):
    existing = REGISTRY._names_to_collectors.get(name)
    if existing is not None:
        return existing
    return metric_cls(name, documentation, labelnames=labelnames, **kwargs)


REQUEST_COUNTER = _get_or_create_metric(
    Counter,
    "calendar_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = _get_or_create_metric(
    Histogram,
    "calendar_http_request_latency_seconds",
    "Latency of HTTP requests in seconds",
    ["method", "path"],
)
LAYOUT_SIZE = _get_or_create_metric(
    Histogram,
    "calendar_layout_appointments",
    "Number of appointments per layout computation",
    buckets=(0, 1, 2, 5, 10, 25, 50, 100, 250),
)
DAY_VIEW_CACHE_COUNTER = _get_or_create_metric(
    Counter,
    "calendar_day_view_cache_total",
    "Day view cache lookups",
    ["result"],
)

# Day view payloads keyed by (practice_id, date, provider_id, start_hour, end_hour, slot_minutes).
DAY_VIEW_CACHE = TimedCache(SETTINGS.day_view_cache_ttl)


def _invalidate_practice_cache(practice_id: str) -> None:
    """Drop every cached day view belonging to ``practice_id``."""

    DAY_VIEW_CACHE.invalidate_where(lambda key: key[0] == practice_id)


# ------------------- Error envelope ----------------------------------------


class ErrorDetail(BaseModel):
    """Details describing an error response payload."""

    code: int | str | None = None
    message: str
    details: Any | None = None

    model_config = {"extra": "allow"}


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    success: bool = False
    error: ErrorDetail


_ERROR_MESSAGE_KEYS: Tuple[str, ...] = ("message", "detail", "error", "msg")
_ERROR_RESERVED_KEYS = {"code", "details", *_ERROR_MESSAGE_KEYS}


def _stringify_error_detail(item: Any) -> str:
    if isinstance(item, dict):
        for key in _ERROR_MESSAGE_KEYS:
            value = item.get(key)
            if value not in (None, ""):
                return str(value)
    return str(item)


def _build_error_response(payload: Any, status_code: int | None = None) -> ErrorResponse:
    """Normalize ``payload`` into the standard :class:`ErrorResponse` structure."""

    code: int | str | None = status_code
    message = "An error occurred"
    details: Any | None = None
    extras: Dict[str, Any] = {}

    if isinstance(payload, dict):
        if payload.get("code") not in (None, ""):
            code = payload["code"]
        if "details" in payload:
            details = payload["details"]
        for key in _ERROR_MESSAGE_KEYS:
            if payload.get(key) not in (None, ""):
                message = str(payload[key])
                break
        else:
            message = str(payload) if payload else message
        extras = {k: v for k, v in payload.items() if k not in _ERROR_RESERVED_KEYS}
    elif isinstance(payload, list):
        rendered = [_stringify_error_detail(item) for item in payload if item not in (None, "")]
        if rendered:
            message = "; ".join(rendered)
        details = payload
    elif payload not in (None, ""):
        message = str(payload)

    error_payload: Dict[str, Any] = {"message": message}
    if code is not None:
        error_payload["code"] = code
    if details is not None:
        error_payload["details"] = details
    if extras:
        error_payload.update(extras)
    return ErrorResponse(error=ErrorDetail(**error_payload))


def _error_json(payload: Any, status_code: int, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=_build_error_response(payload, status_code=status_code).model_dump(exclude_none=True),
        headers=headers,
    )


# ------------------- Application --------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - exercised indirectly in integration
    logger.info("lifespan_startup", cache_ttl=SETTINGS.day_view_cache_ttl)
    start_ts = time.time()
    try:
        yield
    finally:
        DAY_VIEW_CACHE.clear()
        logger.info("lifespan_shutdown_complete", uptime=time.time() - start_ts)


app = FastAPI(title="Practice Calendar API", lifespan=lifespan)


UNMATCHED_ROUTE_LABEL = "<unmatched>"


def _path_for_metrics(request: Request) -> str:
    """Route template for the request, or a fixed label when nothing matched."""

    route = request.scope.get("route")
    return getattr(route, "path", None) or UNMATCHED_ROUTE_LABEL


@app.middleware("http")
async def track_http_metrics(request: Request, call_next):
    """Emit Prometheus counters and histograms for each request."""

    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        path = _path_for_metrics(request)
        REQUEST_COUNTER.labels(request.method, path, "500").inc()
        REQUEST_LATENCY.labels(request.method, path).observe(time.perf_counter() - start)
        raise
    path = _path_for_metrics(request)
    REQUEST_COUNTER.labels(request.method, path, str(response.status_code)).inc()
    REQUEST_LATENCY.labels(request.method, path).observe(time.perf_counter() - start)
    return response


@app.middleware("http")
async def inject_trace_id(request: Request, call_next):
    """Attach or propagate a trace identifier for each request."""

    trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
    token = _TRACE_ID_CTX.set(trace_id)
    bind_contextvars(trace_id=trace_id, path=request.url.path, method=request.method)
    request.state.trace_id = trace_id
    try:
        response = await call_next(request)
    except Exception as exc:
        logger.exception("unhandled_error", error=str(exc))
        response = _error_json("Internal server error", status.HTTP_500_INTERNAL_SERVER_ERROR)
    finally:
        unbind_contextvars("trace_id", "path", "method")
        _TRACE_ID_CTX.reset(token)
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Convert ``HTTPException`` instances into the standard error envelope."""

    return _error_json(exc.detail, exc.status_code, headers=dict(exc.headers or {}))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_json(
        {"message": "Invalid request", "details": jsonable_encoder(exc.errors())},
        422,
    )


@app.exception_handler(scheduling.AppointmentNotFoundError)
async def not_found_handler(request: Request, exc: scheduling.AppointmentNotFoundError) -> JSONResponse:
    return _error_json("appointment not found", status.HTTP_404_NOT_FOUND)


@app.exception_handler(scheduling.InvalidAppointmentError)
async def invalid_appointment_handler(
    request: Request, exc: scheduling.InvalidAppointmentError
) -> JSONResponse:
    logger.info("appointment.rejected", error=str(exc))
    return _error_json(str(exc), status.HTTP_400_BAD_REQUEST)


# ------------------- Request models -----------------------------------------


class LayoutAppointment(BaseModel):
    id: str
    start_time: datetime
    end_time: datetime

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


class LayoutRequest(BaseModel):
    appointments: List[LayoutAppointment] = Field(default_factory=list)


class AppointmentCreate(BaseModel):
    practiceId: str
    start: datetime
    end: Optional[datetime] = None
    providerId: Optional[str] = None
    patientId: Optional[str] = None
    patientName: Optional[str] = None
    reason: Optional[str] = None
    timeZone: Optional[str] = None
    allowOverlap: bool = False


class StatusUpdate(BaseModel):
    status: str


class RescheduleRequest(BaseModel):
    start: datetime
    timeZone: Optional[str] = None
    allowOverlap: bool = False


class ValidateTimeRequest(BaseModel):
    practiceId: str
    appointmentDate: date
    appointmentTime: str = Field(pattern=r"^\d{1,2}:\d{2}(:\d{2})?$")
    duration: int = Field(default=60, ge=1, le=24 * 60)
    providerId: Optional[str] = None


class SoonestRequest(BaseModel):
    practiceId: str
    duration: int = Field(default=60, ge=1, le=24 * 60)
    providerId: Optional[str] = None


HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class HoursEntry(BaseModel):
    dayOfWeek: int = Field(ge=0, le=6)
    startTime: str = Field(default="09:00", pattern=HHMM_PATTERN)
    endTime: str = Field(default="17:00", pattern=HHMM_PATTERN)
    isClosed: bool = False

    @model_validator(mode="after")
    def _opens_before_closing(self) -> "HoursEntry":
        # Zero-padded HH:MM strings order the same way as the times they name.
        if not self.isClosed and self.startTime >= self.endTime:
            raise ValueError("startTime must be before endTime")
        return self


class HoursUpdate(BaseModel):
    hours: List[HoursEntry]


class BlockedTimeCreate(BaseModel):
    start: datetime
    end: datetime
    reason: Optional[str] = None


class TimezoneUpdate(BaseModel):
    timezone: str

    @field_validator("timezone")
    @classmethod
    def _known_zone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unsupported timezone '{value}'") from exc
        return value


# ------------------- Helpers ------------------------------------------------


def _zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or SETTINGS.default_timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported timezone '{name}'",
        ) from exc


def _normalise_request_datetime(value: datetime, timezone_name: Optional[str]) -> datetime:
    """Attach ``timezone_name`` (default UTC) to naive datetimes and convert to UTC."""

    if value.tzinfo is None and timezone_name:
        value = value.replace(tzinfo=_zone(timezone_name))
    return ensure_utc(value)


def _day_bounds(day: date, tz: ZoneInfo) -> Tuple[datetime, datetime]:
    start = availability.local_to_utc(day, 0, tz)
    end = availability.local_to_utc(day + timedelta(days=1), 0, tz)
    return start, end


def _suggest_alternatives(
    session,
    practice_id: str,
    start: datetime,
    end: datetime,
    provider_id: Optional[str],
    tz: ZoneInfo,
    exclude_id: Optional[str] = None,
) -> List[str]:
    step = end - start
    alternatives: List[str] = []
    candidate = start + step
    attempts = 0
    while len(alternatives) < 3 and attempts < 12:
        if not scheduling.list_active_overlapping(
            session,
            practice_id,
            candidate,
            candidate + step,
            provider_id=provider_id,
            exclude_id=exclude_id,
        ):
            alternatives.append(candidate.astimezone(tz).replace(microsecond=0).isoformat())
        candidate += step
        attempts += 1
    return alternatives


def _reject_conflicts(
    session,
    practice_id: str,
    start: datetime,
    end: datetime,
    *,
    provider_id: Optional[str],
    timezone_name: Optional[str],
    exclude_id: Optional[str] = None,
) -> None:
    """Raise 409 with up to three free alternatives when ``[start, end)`` is taken."""

    conflicts = scheduling.list_active_overlapping(
        session, practice_id, start, end, provider_id=provider_id, exclude_id=exclude_id
    )
    if not conflicts:
        return
    tz = _zone(timezone_name or scheduling.get_practice_timezone(session, practice_id))
    alternatives = (
        _suggest_alternatives(session, practice_id, start, end, provider_id, tz, exclude_id)
        if end > start
        else []
    )
    logger.info("appointment.conflict", practice_id=practice_id, conflicts=len(conflicts))
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={
            "message": "This time slot is already booked",
            "reason": "conflict",
            "conflicts": [item.id for item in conflicts],
            "alternatives": alternatives,
        },
    )


# ------------------- Routes -------------------------------------------------


@app.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    return PlainTextResponse(generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)


@app.post("/api/calendar/layout")
async def api_calendar_layout(req: LayoutRequest) -> Dict[str, Any]:
    appointments = [item.model_dump() for item in req.appointments]
    LAYOUT_SIZE.observe(len(appointments))
    assignments = layout_appointments(appointments)
    return {"assignments": [item.to_dict() for item in assignments]}


@app.get("/api/calendar/day")
async def api_calendar_day(
    practiceId: str,
    day: date = Query(alias="date"),
    providerId: Optional[str] = None,
    startHour: int = Query(default=8, ge=0, le=23),
    endHour: int = Query(default=18, ge=1, le=24),
    slotMinutes: int = Query(default=30, ge=5, le=60),
) -> Dict[str, Any]:
    if endHour <= startHour:
        raise HTTPException(status_code=400, detail="endHour must be after startHour")

    def _build() -> Dict[str, Any]:
        with session_scope() as session:
            tz = _zone(scheduling.get_practice_timezone(session, practiceId))
            day_start, day_end = _day_bounds(day, tz)
            records = scheduling.list_appointments(
                session,
                practiceId,
                start=day_start,
                end=day_end - timedelta(seconds=1),
                provider_id=providerId,
            )
            records = day_view.filter_day(records, day, tz)
            LAYOUT_SIZE.observe(len(records))
            blocks = day_view.build_day_view(records, start_hour=startHour, tz=tz)
            return {
                "date": day.isoformat(),
                "timezone": tz.key,
                "slots": [
                    f"{hour:02d}:{minute:02d}"
                    for hour, minute in day_view.time_slots(startHour, endHour, slotMinutes)
                ],
                "appointments": [scheduling.appointment_to_dict(r) for r in records],
                "blocks": [block.to_dict() for block in blocks],
            }

    key = (practiceId, day.isoformat(), providerId, startHour, endHour, slotMinutes)
    payload, hit = DAY_VIEW_CACHE.get_or_build(key, _build)
    DAY_VIEW_CACHE_COUNTER.labels("hit" if hit else "miss").inc()
    return payload


@app.post("/api/appointments", status_code=status.HTTP_201_CREATED)
async def api_create_appointment(req: AppointmentCreate) -> Dict[str, Any]:
    start = _normalise_request_datetime(req.start, req.timeZone)
    end = _normalise_request_datetime(req.end, req.timeZone) if req.end else None
    with session_scope() as session:
        if not req.allowOverlap:
            _reject_conflicts(
                session,
                req.practiceId,
                start,
                end or start + scheduling.DEFAULT_APPOINTMENT_DURATION,
                provider_id=req.providerId,
                timezone_name=req.timeZone,
            )
        record = scheduling.create_appointment(
            session,
            req.practiceId,
            start,
            end,
            provider_id=req.providerId,
            patient_id=req.patientId,
            patient_name=req.patientName,
            reason=req.reason,
        )
        payload = scheduling.appointment_to_dict(record)
    _invalidate_practice_cache(req.practiceId)
    return payload


@app.get("/api/appointments")
async def api_list_appointments(
    practiceId: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    providerId: Optional[str] = None,
    includeCancelled: bool = False,
) -> Dict[str, Any]:
    with session_scope() as session:
        records = scheduling.list_appointments(
            session,
            practiceId,
            start=start,
            end=end,
            provider_id=providerId,
            include_cancelled=includeCancelled,
        )
        return {"appointments": [scheduling.appointment_to_dict(r) for r in records]}


@app.get("/api/appointments/{appointment_id}")
async def api_get_appointment(appointment_id: str) -> Dict[str, Any]:
    with session_scope() as session:
        return scheduling.appointment_to_dict(scheduling.get_appointment(session, appointment_id))


@app.post("/api/appointments/{appointment_id}/status")
async def api_update_status(appointment_id: str, req: StatusUpdate) -> Dict[str, Any]:
    with session_scope() as session:
        record = scheduling.update_status(session, appointment_id, req.status)
        payload = scheduling.appointment_to_dict(record)
    _invalidate_practice_cache(payload["practiceId"])
    return payload


@app.post("/api/appointments/{appointment_id}/reschedule")
async def api_reschedule(appointment_id: str, req: RescheduleRequest) -> Dict[str, Any]:
    new_start = _normalise_request_datetime(req.start, req.timeZone)
    with session_scope() as session:
        if not req.allowOverlap:
            current = scheduling.get_appointment(session, appointment_id)
            _reject_conflicts(
                session,
                current.practice_id,
                new_start,
                new_start + scheduling.appointment_duration(current),
                provider_id=current.provider_id,
                timezone_name=req.timeZone,
                exclude_id=current.id,
            )
        record = scheduling.reschedule_appointment(session, appointment_id, new_start)
        payload = scheduling.appointment_to_dict(record)
    _invalidate_practice_cache(payload["practiceId"])
    return payload


@app.get("/api/appointments/{appointment_id}/ics")
async def api_export_ics(appointment_id: str) -> Response:
    with session_scope() as session:
        ics = scheduling.export_appointment_ics(scheduling.get_appointment(session, appointment_id))
    return PlainTextResponse(ics, media_type="text/calendar")


@app.post("/api/appointments/validate-time")
async def api_validate_time(req: ValidateTimeRequest) -> Dict[str, Any]:
    with session_scope() as session:
        tz = _zone(scheduling.get_practice_timezone(session, req.practiceId))
        weekday = availability.day_of_week(req.appointmentDate)
        hours = scheduling.get_practice_hours(session, req.practiceId, weekday)
        day_start, day_end = _day_bounds(req.appointmentDate, tz)
        blocked = scheduling.list_blocked_time(session, req.practiceId, day_start, day_end)
        booked = scheduling.list_active_overlapping(
            session, req.practiceId, day_start, day_end, provider_id=req.providerId
        )
        result = availability.validate_slot(
            req.appointmentDate,
            req.appointmentTime,
            req.duration,
            hours=hours,
            blocked=blocked,
            appointments=booked,
            tz=tz,
            now=utc_now(),
        )
    return result.to_dict()


@app.post("/api/availability/soonest")
async def api_soonest_availability(req: SoonestRequest) -> Dict[str, Any]:
    now = utc_now()
    window_end = now + timedelta(days=availability.DEFAULT_SEARCH_DAYS + 1)
    with session_scope() as session:
        tz = _zone(scheduling.get_practice_timezone(session, req.practiceId))
        hours_by_day = {
            weekday: scheduling.get_practice_hours(session, req.practiceId, weekday)
            for weekday in range(7)
        }
        blocked = scheduling.list_blocked_time(session, req.practiceId, now, window_end)
        booked = scheduling.list_active_overlapping(
            session, req.practiceId, now, window_end, provider_id=req.providerId
        )
        result = availability.find_soonest_slot(
            req.duration,
            hours_for_day=hours_by_day.get,
            blocked=blocked,
            appointments=booked,
            tz=tz,
            now=now,
        )
    return result.to_dict()


@app.get("/api/practices/{practice_id}/hours")
async def api_get_hours(practice_id: str) -> Dict[str, Any]:
    with session_scope() as session:
        hours = []
        for weekday in range(7):
            entry = scheduling.get_practice_hours(session, practice_id, weekday)
            hours.append(
                {
                    "dayOfWeek": weekday,
                    "startTime": entry["start_time"],
                    "endTime": entry["end_time"],
                    "isClosed": entry["is_closed"],
                }
            )
    return {"hours": hours}


@app.put("/api/practices/{practice_id}/hours")
async def api_set_hours(practice_id: str, req: HoursUpdate) -> Dict[str, Any]:
    with session_scope() as session:
        scheduling.set_practice_hours(session, practice_id, [item.model_dump() for item in req.hours])
    _invalidate_practice_cache(practice_id)
    return await api_get_hours(practice_id)


@app.post("/api/practices/{practice_id}/blocked-time", status_code=status.HTTP_201_CREATED)
async def api_add_blocked_time(practice_id: str, req: BlockedTimeCreate) -> Dict[str, Any]:
    with session_scope() as session:
        row = scheduling.add_blocked_time(
            session, practice_id, req.start, req.end, req.reason
        )
        payload = {
            "id": row.id,
            "practiceId": row.practice_id,
            "start_time": row.start_time.isoformat(),
            "end_time": row.end_time.isoformat(),
            "reason": row.reason,
        }
    _invalidate_practice_cache(practice_id)
    return payload


@app.put("/api/practices/{practice_id}/timezone")
async def api_set_timezone(practice_id: str, req: TimezoneUpdate) -> Dict[str, str]:
    with session_scope() as session:
        scheduling.set_practice_timezone(session, practice_id, req.timezone)
    _invalidate_practice_cache(practice_id)
    return {"practiceId": practice_id, "timezone": req.timezone}
