from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from practice_calendar import availability

NY = ZoneInfo("America/New_York")
# Monday 2024-03-04 08:07 in New York
NOW = datetime(2024, 3, 4, 13, 7, tzinfo=timezone.utc)
WEEKDAY_HOURS = {"start_time": "09:00", "end_time": "17:00", "is_closed": False}
CLOSED = {"start_time": "09:00", "end_time": "17:00", "is_closed": True}


def hours_for_day(weekday):
    return CLOSED if weekday in (0, 6) else WEEKDAY_HOURS


def validate(day, hhmm, duration=60, *, blocked=(), appointments=(), hours=WEEKDAY_HOURS):
    return availability.validate_slot(
        day,
        hhmm,
        duration,
        hours=hours,
        blocked=list(blocked),
        appointments=list(appointments),
        tz=NY,
        now=NOW,
    )


def test_format_display_time():
    assert availability.format_display_time("14:30") == "2:30 PM"
    assert availability.format_display_time("12:00") == "12:00 PM"
    assert availability.format_display_time("00:15") == "12:15 AM"
    assert availability.format_display_time(540) == "9:00 AM"


def test_hhmm_round_trip_helpers():
    assert availability.parse_hhmm("09:30:00") == 570
    assert availability.minutes_to_hhmm(570) == "09:30"


def test_local_to_utc_applies_practice_zone():
    assert availability.local_to_utc(date(2024, 3, 4), "09:00", NY) == datetime(
        2024, 3, 4, 14, 0, tzinfo=timezone.utc
    )


def test_day_of_week_is_sunday_based():
    assert availability.day_of_week(date(2024, 3, 3)) == 0
    assert availability.day_of_week(date(2024, 3, 4)) == 1


def test_rejects_past_dates_and_times():
    assert validate(date(2024, 3, 1), "10:00").error == "Cannot book appointments in the past"
    assert validate(date(2024, 3, 4), "08:00").error == "Cannot book appointments in the past"


def test_rejects_closed_day():
    result = validate(date(2024, 3, 10), "10:00", hours=CLOSED)
    assert result.valid is False
    assert result.error == "Practice is closed on Sundays"
    assert result.to_dict() == {
        "valid": False,
        "error": "Practice is closed on Sundays",
        "alternatives": [],
    }


def test_rejects_outside_business_hours():
    assert validate(date(2024, 3, 5), "08:30").error == "Practice hours start at 9:00 AM"
    assert (
        validate(date(2024, 3, 5), "16:30").error
        == "Appointment would end after closing time (5:00 PM)"
    )


def test_may_end_exactly_at_closing():
    assert validate(date(2024, 3, 5), "16:00").valid is True


def test_rejects_blocked_time_with_reason():
    blocked = [
        {
            "start_time": "2024-03-05T15:00:00Z",
            "end_time": "2024-03-05T16:00:00Z",
            "reason": "Staff meeting",
        }
    ]
    result = validate(date(2024, 3, 5), "10:30", blocked=blocked)
    assert result.error == "This time slot is blocked: Staff meeting"


def test_rejects_conflicting_appointment():
    booked = [{"id": "x", "start_time": "2024-03-05T14:00:00Z", "end_time": "2024-03-05T15:00:00Z"}]
    assert validate(date(2024, 3, 5), "09:30", 30, appointments=booked).error == (
        "This time slot is already booked"
    )
    # Starting when the booked visit ends is fine.
    assert validate(date(2024, 3, 5), "10:00", 30, appointments=booked).valid is True


def test_soonest_skips_conflicts_today():
    booked = [{"id": "x", "start_time": "2024-03-04T14:00:00Z", "end_time": "2024-03-04T15:00:00Z"}]
    result = availability.find_soonest_slot(
        60, hours_for_day=hours_for_day, blocked=[], appointments=booked, tz=NY, now=NOW
    )
    assert result.available is True
    assert result.suggested_date == "2024-03-04"
    assert result.suggested_time == "10:00"
    assert result.message == "First available: Monday, Mar 4 at 10:00 AM"


def test_soonest_rolls_to_next_day_near_closing():
    late = datetime(2024, 3, 4, 21, 50, tzinfo=timezone.utc)
    result = availability.find_soonest_slot(
        60, hours_for_day=hours_for_day, blocked=[], appointments=[], tz=NY, now=late
    )
    assert result.to_dict() == {
        "available": True,
        "message": "First available: Tuesday, Mar 5 at 9:00 AM",
        "suggestedDate": "2024-03-05",
        "suggestedTime": "09:00",
    }


def test_soonest_reports_no_availability():
    result = availability.find_soonest_slot(
        30, hours_for_day=lambda _: CLOSED, blocked=[], appointments=[], tz=NY, now=NOW
    )
    assert result.available is False
    assert result.message == "No availability found in the next 30 days"
    assert "suggestedDate" not in result.to_dict()


@pytest.mark.parametrize("duration", [15, 30, 90])
def test_soonest_slot_validates(duration):
    result = availability.find_soonest_slot(
        duration, hours_for_day=hours_for_day, blocked=[], appointments=[], tz=NY, now=NOW
    )
    check = validate(date.fromisoformat(result.suggested_date), result.suggested_time, duration)
    assert check.valid is True
