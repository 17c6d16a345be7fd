from datetime import date, datetime, timedelta, timezone

import pytest

from booking_backend.core.timeutils import (
    at_minute,
    days_touched,
    format_hhmm,
    intervals_overlap,
    minute_of_day,
    normalize_timestamp,
    parse_hhmm,
    schedule_weekday,
)


@pytest.mark.parametrize(
    ('value', 'expected'),
    [('00:00', 0), ('9:05', 545), ('09:30', 570), ('23:59', 1439), (' 12:00 ', 720)],
)
def test_parse_hhmm_accepts_valid_times(value: str, expected: int) -> None:
    assert parse_hhmm(value) == expected


@pytest.mark.parametrize('value', ['24:00', '12:60', '1200', '12:5', 'noon', ''])
def test_parse_hhmm_rejects_invalid_times(value: str) -> None:
    with pytest.raises(ValueError):
        parse_hhmm(value)


def test_parse_hhmm_accepts_end_of_day_only_when_allowed() -> None:
    assert parse_hhmm('24:00', allow_end_of_day=True) == 1440
    assert parse_hhmm(' 09:15 ', allow_end_of_day=True) == 555
    with pytest.raises(ValueError):
        parse_hhmm('24:00')
    with pytest.raises(ValueError):
        parse_hhmm('24:01', allow_end_of_day=True)


def test_format_hhmm_pads_hours_and_minutes() -> None:
    assert format_hhmm(0) == '00:00'
    assert format_hhmm(545) == '09:05'
    assert format_hhmm(1439) == '23:59'
    assert format_hhmm(1440) == '24:00'


def test_schedule_weekday_counts_from_sunday() -> None:
    assert schedule_weekday(date(2030, 1, 6)) == 0
    assert schedule_weekday(date(2030, 1, 7)) == 1
    assert schedule_weekday(date(2030, 1, 12)) == 6


def test_minute_of_day_and_at_minute_agree() -> None:
    moment = at_minute(date(2030, 1, 7), 9 * 60 + 45)

    assert moment == datetime(2030, 1, 7, 9, 45)
    assert minute_of_day(moment) == 585


def test_normalize_timestamp_truncates_seconds() -> None:
    assert normalize_timestamp(datetime(2030, 1, 7, 9, 0, 42, 1234)) == datetime(2030, 1, 7, 9, 0)


def test_normalize_timestamp_converts_aware_values_to_local_time() -> None:
    aware = datetime(2030, 1, 7, 9, 0, 15, tzinfo=timezone.utc)

    normalized = normalize_timestamp(aware)

    assert normalized.tzinfo is None
    assert normalized == aware.astimezone().replace(tzinfo=None, second=0)


def test_intervals_overlap_treats_touching_intervals_as_disjoint() -> None:
    nine = datetime(2030, 1, 7, 9, 0)
    ten = nine + timedelta(hours=1)
    eleven = ten + timedelta(hours=1)

    assert not intervals_overlap(nine, ten, ten, eleven)
    assert intervals_overlap(nine, ten + timedelta(minutes=1), ten, eleven)
    assert intervals_overlap(nine, eleven, ten, ten + timedelta(minutes=15))


def test_days_touched_within_one_day() -> None:
    assert days_touched(datetime(2030, 1, 7, 9, 0), datetime(2030, 1, 7, 10, 0)) == [date(2030, 1, 7)]


def test_days_touched_ending_exactly_at_midnight_stays_on_one_day() -> None:
    assert days_touched(datetime(2030, 1, 7, 23, 0), datetime(2030, 1, 8, 0, 0)) == [date(2030, 1, 7)]


def test_days_touched_across_midnight() -> None:
    assert days_touched(datetime(2030, 1, 7, 23, 30), datetime(2030, 1, 8, 0, 30)) == [
        date(2030, 1, 7),
        date(2030, 1, 8),
    ]
