from datetime import datetime, time, timedelta, timezone

import pytest

from qrlock.utils.time import (
    calculate_from_range,
    canonical_now,
    format_duration_seconds,
    normalize_hhmm,
    parse_hhmm,
    parse_time_string,
    to_hhmm,
    to_local_days,
    to_server_days,
)


def test_parse_time_string():
    assert parse_time_string("8pm").time() == time(20, 0)
    assert parse_time_string("8:30pm").time() == time(20, 30)
    assert parse_time_string("20:00").time() == time(20, 0)
    assert parse_time_string("08:00").time() == time(8, 0)

    with pytest.raises(ValueError):
        parse_time_string("invalid")


def test_to_hhmm():
    assert to_hhmm("8:30pm") == "20:30"
    assert to_hhmm("07:05") == "07:05"


def test_strict_hhmm():
    assert parse_hhmm("09:05") == (9, 5)
    for bad in ("9:05", "24:00", "09:60", "0905", None):
        with pytest.raises(ValueError):
            parse_hhmm(bad)


def test_normalize_accepts_seconds():
    assert normalize_hhmm("19:00:00") == "19:00"
    assert normalize_hhmm("19:00") == "19:00"
    with pytest.raises(ValueError):
        normalize_hhmm("7pm")


def test_day_alphabets():
    assert to_local_days(["MON", "sun", "수"]) == ["월", "일", "수"]
    assert to_server_days(["월", "FRI"]) == ["MON", "FRI"]
    assert to_local_days(None) == []
    with pytest.raises(ValueError):
        to_local_days(["MONDAY"])


def test_canonical_now():
    utc = datetime(2026, 10, 18, 20, 0, tzinfo=timezone.utc)
    local = canonical_now(utc, 9)
    assert (local.day, local.hour) == (19, 5)
    assert canonical_now(utc.replace(tzinfo=None), 9) == local
    assert local.utcoffset() == timedelta(hours=9)


@pytest.mark.parametrize(
    "seconds, expected",
    [(30, "<1m"), (0, "0m"), (45 * 60, "45m"), (150 * 60, "2h 30m")],
)
def test_format_duration_seconds(seconds, expected):
    assert format_duration_seconds(seconds) == expected


@pytest.mark.parametrize(
    "start, end, expected_duration_seconds",
    [
        ("8pm", "8:30pm", 30 * 60),
        ("10:00", "11:00", 60 * 60),
        ("23:00", "01:00", 120 * 60),  # Crosses midnight
    ],
)
def test_calculate_from_range_duration(start, end, expected_duration_seconds):
    # Use 12:00 PM as reference to avoid being "inside" evening ranges
    ref_now = datetime.combine(datetime.now().date(), time(12, 0))
    delay, duration, total = calculate_from_range(start, end, now=ref_now)
    # When starting in the future, duration and total should be same
    assert duration == expected_duration_seconds
    assert total == expected_duration_seconds
    assert delay > 0


def test_calculate_from_range_already_in_range():
    ref_now = datetime(2026, 10, 19, 20, 15)
    delay, duration, total = calculate_from_range("20:00", "21:00", now=ref_now)
    assert (delay, duration, total) == (0, 45 * 60, 60 * 60)


def test_calculate_from_range_after_midnight():
    # 00:30 is still inside the window that opened at 23:00 the evening before
    ref_now = datetime(2026, 10, 20, 0, 30)
    delay, duration, total = calculate_from_range("23:00", "01:00", now=ref_now)
    assert (delay, duration, total) == (0, 30 * 60, 120 * 60)


def test_calculate_from_range_passed_today():
    ref_now = datetime(2026, 10, 19, 22, 0)
    delay, duration, _ = calculate_from_range("20:00", "21:00", now=ref_now)
    assert delay == 22 * 3600
    assert duration == 3600
