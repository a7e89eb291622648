from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from practice_calendar.time_utils import (
    ensure_utc,
    minutes_of_day,
    parse_timestamp,
    serialize_timestamp,
    to_local,
)


def test_parse_timestamp_handles_z_suffix():
    parsed = parse_timestamp("2024-03-04T09:00:00Z")
    assert parsed == datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


def test_parse_timestamp_normalises_offsets_to_utc():
    parsed = parse_timestamp("2024-03-04T09:00:00-05:00")
    assert parsed.tzinfo == timezone.utc
    assert parsed.hour == 14


def test_parse_timestamp_treats_naive_as_utc():
    assert parse_timestamp(datetime(2024, 3, 4, 9)).tzinfo == timezone.utc


def test_parse_timestamp_rejects_garbage():
    with pytest.raises(ValueError):
        parse_timestamp("tomorrow-ish")
    with pytest.raises(TypeError):
        parse_timestamp(12345)  # type: ignore[arg-type]


def test_ensure_utc_converts_aware():
    eastern = timezone(timedelta(hours=-5))
    assert ensure_utc(datetime(2024, 1, 1, 7, tzinfo=eastern)).hour == 12


def test_serialize_timestamp_drops_microseconds():
    value = datetime(2024, 3, 4, 9, 0, 0, 123456, tzinfo=timezone.utc)
    assert serialize_timestamp(value) == "2024-03-04T09:00:00+00:00"
    assert serialize_timestamp(None) is None


def test_to_local_crosses_midnight():
    late = to_local(datetime(2024, 3, 5, 3, 0, tzinfo=timezone.utc), ZoneInfo("America/New_York"))
    assert late.date().isoformat() == "2024-03-04"
    assert minutes_of_day(late) == 22 * 60
