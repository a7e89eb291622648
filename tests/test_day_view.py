from datetime import date
from zoneinfo import ZoneInfo

import pytest

from practice_calendar import day_view

UTC = ZoneInfo("UTC")


def test_time_slots_stop_before_end_hour():
    slots = day_view.time_slots(8, 10, 30)
    assert slots == [(8, 0), (8, 30), (9, 0), (9, 30)]


def test_time_slots_rejects_non_positive_step():
    with pytest.raises(ValueError):
        day_view.time_slots(8, 10, 0)


def test_vertical_position_uses_hour_grid():
    top, height = day_view.vertical_position(
        "2024-03-04T09:30:00Z", "2024-03-04T11:00:00Z", 8, UTC
    )
    assert top == pytest.approx(90)
    assert height == pytest.approx(90)


def test_vertical_position_enforces_minimum_height():
    _, height = day_view.vertical_position(
        "2024-03-04T09:00:00Z", "2024-03-04T09:15:00Z", 8, UTC
    )
    assert height == 40


def test_vertical_position_in_practice_timezone():
    top, _ = day_view.vertical_position(
        "2024-03-04T14:00:00Z", "2024-03-04T15:00:00Z", 8, ZoneInfo("America/New_York")
    )
    # 14:00 UTC is 09:00 in New York during standard time.
    assert top == pytest.approx(60)


def test_filter_day_drops_cancelled_and_other_days():
    records = [
        {"id": "1", "start_time": "2024-03-04T09:00:00Z", "end_time": "2024-03-04T10:00:00Z", "status": "scheduled"},
        {"id": "2", "start_time": "2024-03-04T11:00:00Z", "end_time": "2024-03-04T12:00:00Z", "status": "cancelled"},
        {"id": "3", "start_time": "2024-03-05T09:00:00Z", "end_time": "2024-03-05T10:00:00Z", "status": "scheduled"},
    ]
    kept = day_view.filter_day(records, date(2024, 3, 4), UTC)
    assert [item["id"] for item in kept] == ["1"]


def test_build_day_view_combines_layout_and_position():
    records = [
        {"id": "a", "start_time": "2024-03-04T09:00:00Z", "end_time": "2024-03-04T10:00:00Z"},
        {"id": "b", "start_time": "2024-03-04T09:00:00Z", "end_time": "2024-03-04T10:00:00Z"},
    ]
    blocks = day_view.build_day_view(records, start_hour=8, tz=UTC)
    assert [block.appointment_id for block in blocks] == ["a", "b"]
    first, second = blocks
    assert first.top == second.top == pytest.approx(60)
    assert first.column_left == 0
    assert second.column_left == pytest.approx(50)
    assert second.to_dict()["columnWidth"] == pytest.approx(49.5)
