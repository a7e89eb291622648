from datetime import datetime, timedelta, timezone

import pytest

import practice_calendar.scheduling as scheduling
from practice_calendar.layout import layout_appointments


def at(hour, minute=0, day=4):
    return datetime(2024, 3, day, hour, minute, tzinfo=timezone.utc)


def test_create_appointment_defaults_to_thirty_minutes(session):
    record = scheduling.create_appointment(session, "p1", at(9), provider_id="dr-a", reason="Checkup")
    assert record.id
    assert record.status == "scheduled"
    assert record.end_time - record.start_time == timedelta(minutes=30)


def test_create_appointment_rejects_inverted_range(session):
    with pytest.raises(scheduling.InvalidAppointmentError):
        scheduling.create_appointment(session, "p1", at(10), at(9))
    with pytest.raises(scheduling.InvalidAppointmentError):
        scheduling.create_appointment(session, "  ", at(9))


def test_get_appointment_missing(session):
    with pytest.raises(scheduling.AppointmentNotFoundError):
        scheduling.get_appointment(session, "nope")


def test_list_appointments_filters_and_sorts(session):
    later = scheduling.create_appointment(session, "p1", at(11), provider_id="dr-a")
    earlier = scheduling.create_appointment(session, "p1", at(9), provider_id="dr-b")
    cancelled = scheduling.create_appointment(session, "p1", at(10), provider_id="dr-a")
    scheduling.update_status(session, cancelled.id, "canceled")
    scheduling.create_appointment(session, "p2", at(9))
    scheduling.create_appointment(session, "p1", at(9, day=5))

    day = scheduling.list_appointments(session, "p1", start=at(0), end=at(23, 59))
    assert [item.id for item in day] == [earlier.id, later.id]

    with_cancelled = scheduling.list_appointments(
        session, "p1", start=at(0), end=at(23, 59), include_cancelled=True
    )
    assert len(with_cancelled) == 3

    by_provider = scheduling.list_appointments(session, "p1", provider_id="dr-a")
    assert [item.id for item in by_provider] == [later.id]


def test_stored_appointments_feed_the_layout(session):
    scheduling.create_appointment(session, "p1", at(9), at(10))
    scheduling.create_appointment(session, "p1", at(9, 30), at(10, 30))
    records = scheduling.list_appointments(session, "p1")
    assignments = layout_appointments(records)
    assert sorted(item.column_index for item in assignments) == [0, 1]


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Canceled", "cancelled"),
        ("no-show", "no_show"),
        ("No Show", "no_show"),
        ("checked-in", "checked_in"),
        ("complete", "completed"),
        ("in_progress", "in_progress"),
        (None, "scheduled"),
    ],
)
def test_normalise_status(raw, expected):
    assert scheduling.normalise_status(raw) == expected


def test_unknown_status_rejected(session):
    record = scheduling.create_appointment(session, "p1", at(9))
    with pytest.raises(scheduling.InvalidAppointmentError):
        scheduling.update_status(session, record.id, "teleported")


def test_active_overlap_ignores_inactive_and_touching(session):
    busy = scheduling.create_appointment(session, "p1", at(9), at(10), provider_id="dr-a")
    no_show = scheduling.create_appointment(session, "p1", at(9), at(10), provider_id="dr-a")
    scheduling.update_status(session, no_show.id, "no_show")

    hits = scheduling.list_active_overlapping(session, "p1", at(9, 30), at(10, 30))
    assert [item.id for item in hits] == [busy.id]
    assert scheduling.list_active_overlapping(session, "p1", at(10), at(11)) == []
    assert scheduling.list_active_overlapping(
        session, "p1", at(9), at(10), provider_id="dr-b"
    ) == []
    assert scheduling.list_active_overlapping(
        session, "p1", at(9), at(10), exclude_id=busy.id
    ) == []


def test_reschedule_keeps_duration_and_resets_status(session):
    record = scheduling.create_appointment(session, "p1", at(9), at(9, 45))
    scheduling.update_status(session, record.id, "confirmed")
    moved = scheduling.reschedule_appointment(session, record.id, at(13))
    assert moved.status == "scheduled"
    assert moved.start_time == at(13)
    assert moved.end_time == at(13, 45)


def test_practice_hours_defaults_and_overrides(session):
    assert scheduling.get_practice_hours(session, "p1", 1) == {
        "start_time": "09:00",
        "end_time": "17:00",
        "is_closed": False,
    }
    assert scheduling.get_practice_hours(session, "p1", 0)["is_closed"] is True

    scheduling.set_practice_hours(
        session, "p1", [{"dayOfWeek": 1, "startTime": "07:30", "endTime": "12:00"}]
    )
    assert scheduling.get_practice_hours(session, "p1", 1)["start_time"] == "07:30"

    with pytest.raises(scheduling.InvalidAppointmentError):
        scheduling.set_practice_hours(session, "p1", [{"dayOfWeek": 9}])


def test_practice_timezone_round_trip(session):
    assert scheduling.get_practice_timezone(session, "p1") == scheduling.DEFAULT_TIMEZONE
    scheduling.set_practice_timezone(session, "p1", "America/Chicago")
    assert scheduling.get_practice_timezone(session, "p1") == "America/Chicago"


def test_blocked_time_window(session):
    scheduling.add_blocked_time(session, "p1", at(12), at(13), "Lunch")
    assert len(scheduling.list_blocked_time(session, "p1", at(0), at(23))) == 1
    assert scheduling.list_blocked_time(session, "p1", at(13), at(14)) == []
    with pytest.raises(scheduling.InvalidAppointmentError):
        scheduling.add_blocked_time(session, "p1", at(13), at(12))


def test_export_appointment_ics(session):
    record = scheduling.create_appointment(
        session, "p1", at(9), at(10), patient_name="Jane Roe", reason="Follow-up"
    )
    ics = scheduling.export_appointment_ics(record)
    assert ics.startswith("BEGIN:VCALENDAR")
    assert "DTSTART:20240304T090000Z" in ics
    assert "DTEND:20240304T100000Z" in ics
    assert "SUMMARY:Appointment: Follow-up" in ics
    assert "DESCRIPTION:Patient Jane Roe" in ics
    assert ics.rstrip().endswith("END:VCALENDAR")
