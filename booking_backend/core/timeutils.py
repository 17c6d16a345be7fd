import re
from datetime import date, datetime, timedelta

MINUTES_PER_DAY = 24 * 60

_HHMM_PATTERN = re.compile(r'^([01]?[0-9]|2[0-3]):([0-5][0-9])$')


def parse_hhmm(value: str, allow_end_of_day: bool = False) -> int:
    """Convert ``HH:MM`` (or ``H:MM``) into minutes since midnight.

    ``24:00`` is accepted only with ``allow_end_of_day``, for window ends.
    """
    value = value.strip()
    if allow_end_of_day and value == '24:00':
        return MINUTES_PER_DAY
    match = _HHMM_PATTERN.match(value)
    if not match:
        raise ValueError(f'Invalid time {value!r}; expected HH:MM.')
    return int(match.group(1)) * 60 + int(match.group(2))


def format_hhmm(minutes: int) -> str:
    return f'{minutes // 60:02d}:{minutes % 60:02d}'


def schedule_weekday(day: date) -> int:
    """Weekday in the schedule convention: 0 = Sunday ... 6 = Saturday."""
    return day.isoweekday() % 7


def minute_of_day(moment: datetime) -> int:
    return moment.hour * 60 + moment.minute


def at_minute(day: date, minutes: int) -> datetime:
    return datetime.combine(day, datetime.min.time()) + timedelta(minutes=minutes)


def normalize_timestamp(moment: datetime) -> datetime:
    """Drop the timezone (converted to local time) and sub-minute precision."""
    if moment.tzinfo is not None:
        moment = moment.astimezone().replace(tzinfo=None)
    return moment.replace(second=0, microsecond=0)


def intervals_overlap(first_start: datetime, first_end: datetime, second_start: datetime, second_end: datetime) -> bool:
    return first_start < second_end and second_start < first_end


def days_touched(start: datetime, end: datetime) -> list[date]:
    """Calendar days that the half-open interval [start, end) touches."""
    last = (end - timedelta(microseconds=1)).date() if end > start else start.date()
    days = []
    current = start.date()
    while current <= last:
        days.append(current)
        current += timedelta(days=1)
    return days
