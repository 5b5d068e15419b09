from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException

from sensor_hub.http_utils import expand_at, lenient_int, page_args, parse_timestamp

NOW = datetime(2026, 3, 14, 9, 26, 53, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("page", "limit", "expected"),
    [
        (None, None, (1, 20)),
        ("3", "50", (3, 50)),
        ("2abc", "10rows", (2, 10)),
        ("abc", "x", (1, 20)),
        ("0", "0", (1, 20)),
        ("-4", "-5", (1, 1)),
        ("1", "1000", (1, 200)),
    ],
)
def test_page_args_are_lenient(page, limit, expected) -> None:
    assert page_args(page, limit) == expected


def test_lenient_int_default_and_minimum() -> None:
    assert lenient_int(None, 10) == 10
    assert lenient_int(" 7 minutes", 10) == 7
    assert lenient_int("-3", 10) == 1


def test_expand_at_clock_time_means_that_minute_today() -> None:
    start, end = expand_at("07:05", now=NOW)
    assert start == datetime(2026, 3, 14, 7, 5, tzinfo=timezone.utc)
    assert end == start + timedelta(seconds=59, microseconds=999999)


def test_expand_at_day_minute_and_second() -> None:
    day = expand_at("2026-01-02", now=NOW)
    assert day == (
        datetime(2026, 1, 2, tzinfo=timezone.utc),
        datetime(2026, 1, 2, 23, 59, 59, 999999, tzinfo=timezone.utc),
    )
    minute = expand_at("2026-01-02T10:15", now=NOW)
    assert minute[0] == datetime(2026, 1, 2, 10, 15, tzinfo=timezone.utc)
    assert minute[1] - minute[0] == timedelta(minutes=1, microseconds=-1)
    second = expand_at("2026-01-02 10:15:30", now=NOW)
    assert second[1] - second[0] == timedelta(seconds=1, microseconds=-1)


def test_expand_at_other_timestamps_select_their_minute() -> None:
    start, _ = expand_at("2026-01-02T10:15:42.5+02:00", now=NOW)
    assert start == datetime(2026, 1, 2, 8, 15, tzinfo=timezone.utc)


@pytest.mark.parametrize("raw", ["", "yesterday", "25:00", "2026-13-01"])
def test_expand_at_rejects_garbage(raw) -> None:
    assert expand_at(raw, now=NOW) is None


def test_parse_timestamp_accepts_zulu_and_rejects_garbage() -> None:
    assert parse_timestamp("2026-01-02T03:04:05Z", field="from") == datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert parse_timestamp(" ", field="from") is None
    with pytest.raises(HTTPException) as excinfo:
        parse_timestamp("soon", field="to")
    assert excinfo.value.status_code == 400
