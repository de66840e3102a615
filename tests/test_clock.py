from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from collector.clock import (
    LOCAL_TZ,
    clamp_to_seven_days,
    classify_off_peak,
    coerce_offpeak_windows,
    half_hour_slots,
    parse_offpeak_hours,
    parse_step_minutes,
    reconstruct_start,
    segment_range,
    slot_label,
    to_civil_date,
)
from collector.config import settings
from collector.errors import ValidationError
from collector.models import OffpeakWindow


def test_segments_cover_range_without_gaps_or_overlap():
    segments = segment_range("2024-01-01", "2024-01-20")

    assert [(s.start_iso, s.end_iso) for s in segments] == [
        ("2024-01-01", "2024-01-08"),
        ("2024-01-08", "2024-01-15"),
        ("2024-01-15", "2024-01-21"),
    ]
    for previous, current in zip(segments, segments[1:]):
        assert previous.end == current.start
    assert all(1 <= s.days <= 7 for s in segments)


def test_segments_for_a_leap_year():
    segments = segment_range("2024-01-01", "2024-12-31")

    assert segments[0].start == date(2024, 1, 1)
    assert segments[-1].end == date(2025, 1, 1)
    assert sum(s.days for s in segments) == 366
    assert len(segments) == 53


def test_single_day_and_inverted_ranges():
    assert [(s.start_iso, s.end_iso) for s in segment_range("2024-05-05", "2024-05-05")] == [
        ("2024-05-05", "2024-05-06")
    ]
    assert segment_range("2024-05-10", "2024-05-01") == []


def test_clamp_to_seven_days():
    assert clamp_to_seven_days("2024-01-01", "2024-03-01") == ("2024-01-01", "2024-01-08")
    assert clamp_to_seven_days("2024-01-01", "2024-01-03") == ("2024-01-01", "2024-01-04")


def test_to_civil_date_converts_offset_timestamps_to_paris():
    # 23:30 UTC on Dec 31 is already Jan 1 in Paris
    assert to_civil_date("2023-12-31T23:30:00Z") == date(2024, 1, 1)
    assert to_civil_date("2024-02-29") == date(2024, 2, 29)


def test_to_civil_date_rejects_garbage():
    with pytest.raises(ValidationError):
        to_civil_date("not-a-date")
    with pytest.raises(ValidationError):
        to_civil_date("")


@pytest.mark.parametrize("value,expected", [
    (30, 30),
    ("10", 10),
    ("PT30M", 30),
    ("PT1H", 60),
    (None, 30),
    ("garbage", 30),
    (0, 30),
    (0.5, 30),
    (1.9, 1),
    (-15, 30),
])
def test_parse_step_minutes(value, expected):
    assert parse_step_minutes(value) == expected


def test_local_timezone_comes_from_settings():
    assert LOCAL_TZ == ZoneInfo(settings.tz)
    start, _end = reconstruct_start("2024-06-01 08:30:00")
    assert start.tzinfo == LOCAL_TZ


def test_reconstruct_start_on_a_regular_day():
    start, end = reconstruct_start("2024-06-01 08:30:00", "PT30M")

    assert start == datetime(2024, 6, 1, 8, 0, tzinfo=LOCAL_TZ)
    assert end.astimezone(timezone.utc) - start.astimezone(timezone.utc) == timedelta(minutes=30)


def test_reconstruct_start_across_autumn_dst_change():
    # 03:00 CET on 2024-10-27 is 02:00 UTC; the interval started at 01:30 UTC
    start, end = reconstruct_start("2024-10-27 03:00:00", 30)

    assert start.astimezone(timezone.utc) == datetime(2024, 10, 27, 1, 30, tzinfo=timezone.utc)
    assert end.astimezone(timezone.utc) - start.astimezone(timezone.utc) == timedelta(minutes=30)
    assert start.utcoffset() == timedelta(hours=1)


def test_reconstruct_start_across_spring_dst_change():
    # Clocks jump from 02:00 to 03:00; 03:00 CEST is 01:00 UTC
    start, end = reconstruct_start("2024-03-31 03:00:00", 30)

    assert start.astimezone(timezone.utc) == datetime(2024, 3, 31, 0, 30, tzinfo=timezone.utc)
    assert (start.hour, start.minute) == (1, 30)
    assert end.astimezone(timezone.utc) - start.astimezone(timezone.utc) == timedelta(minutes=30)


def test_reconstruct_start_rejects_unparseable_timestamp():
    with pytest.raises(ValidationError):
        reconstruct_start("yesterday", 30)


def test_wrapping_off_peak_window():
    windows = [OffpeakWindow(start=22 * 60, end=6 * 60)]

    assert classify_off_peak(23 * 60, windows)
    assert classify_off_peak(0, windows)
    assert classify_off_peak(5 * 60 + 59, windows)
    assert not classify_off_peak(6 * 60, windows)
    assert not classify_off_peak(12 * 60, windows)


def test_plain_off_peak_window_end_is_exclusive():
    windows = [OffpeakWindow(start=12 * 60, end=14 * 60)]

    assert classify_off_peak(12 * 60, windows)
    assert not classify_off_peak(14 * 60, windows)


def test_no_windows_means_peak():
    assert not classify_off_peak(3 * 60, [])


def test_parse_offpeak_hours_from_contract_text():
    windows = parse_offpeak_hours("HC (22H00-6H00;12h30 - 14h30)")

    assert windows == [OffpeakWindow(start=1320, end=360), OffpeakWindow(start=750, end=870)]
    assert windows[0].wraps
    assert parse_offpeak_hours(None) == []


def test_coerce_offpeak_windows_accepts_rows_and_text():
    assert coerce_offpeak_windows([{"start": 0, "end": 420}]) == [OffpeakWindow(start=0, end=420)]
    assert coerce_offpeak_windows("HC (1H00-7H00)") == [OffpeakWindow(start=60, end=420)]
    assert coerce_offpeak_windows(None) == []


def test_slot_labels():
    assert slot_label(8, 0) == "08:00"
    assert slot_label(8, 15) == "08:00"
    assert slot_label(8, 45) == "08:30"

    slots = half_hour_slots()
    assert len(slots) == 48
    assert slots[0] == "00:00"
    assert slots[-1] == "23:30"
