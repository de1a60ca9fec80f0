"""Tests for next-run computation."""

from datetime import datetime, timedelta, timezone

import pytest

from tars.schedule import calculate_next_run, is_one_shot, parse_timestamp

NOW = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "schedule, expected",
    [
        ("*/15 * * * *", datetime(2026, 3, 1, 12, 45, tzinfo=timezone.utc)),
        ("0 9 * * *", datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)),
        ("30 12 * * *", datetime(2026, 3, 2, 12, 30, tzinfo=timezone.utc)),
    ],
)
def test_cron_schedules(schedule, expected):
    assert calculate_next_run(schedule, NOW) == expected


def test_cron_result_is_strictly_after_now():
    now = datetime.now(timezone.utc)
    assert calculate_next_run("* * * * *") > now


def test_future_timestamp_is_returned_unchanged():
    assert calculate_next_run("2026-12-25T08:00:00Z", NOW) == datetime(2026, 12, 25, 8, 0, tzinfo=timezone.utc)
    assert calculate_next_run("2026-12-25T08:00:00+02:00", NOW) == datetime(2026, 12, 25, 6, 0, tzinfo=timezone.utc)


def test_past_timestamp_is_returned_unchanged():
    assert calculate_next_run("2026-01-01T00:00:00", NOW) == datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.mark.parametrize("schedule", ["every tuesday", "", "20261225", "99 99 99 99 99"])
def test_unparseable_schedule_falls_back_to_a_day(schedule):
    before = datetime.now(timezone.utc)
    next_run = calculate_next_run(schedule)
    assert before + timedelta(hours=23) <= next_run <= before + timedelta(hours=25)


def test_parse_timestamp_requires_date_separator():
    assert parse_timestamp("20261225") is None
    assert parse_timestamp("2026/12/25") is None
    assert parse_timestamp("2026-12-25") == datetime(2026, 12, 25, tzinfo=timezone.utc)


def test_is_one_shot():
    assert is_one_shot("2026-12-25T08:00:00Z")
    assert not is_one_shot("0 9 * * *")
    assert not is_one_shot("whenever")
