"""Time-of-day values for bookable slots.

A slot is stored and compared as an integer number of minutes since local
midnight. The ``"14:00"`` and ``"2:00 PM"`` spellings only exist at the HTTP
boundary and are converted here.
"""

import enum
import re
from datetime import date, datetime, timedelta

from therapy_booking.core.errors import InvalidTimeFormat

SESSION_DURATION_MINUTES = 60
MINUTES_PER_DAY = 24 * 60

_TWENTY_FOUR_HOUR = re.compile(r'^(?P<hour>[0-9]{1,2}):(?P<minute>[0-9]{2})$')
_TWELVE_HOUR = re.compile(r'^(?P<hour>[0-9]{1,2}):(?P<minute>[0-9]{2}) *(?P<meridiem>[AaPp][Mm])$')


class TimeStyle(str, enum.Enum):
    H24 = '24h'
    H12 = '12h'


def parse_time_of_day(value: str) -> int:
    if not isinstance(value, str):
        raise InvalidTimeFormat(f'Time must be a string, got {type(value).__name__}.')

    text = value.strip()

    match = _TWELVE_HOUR.match(text)
    if match:
        hour = int(match.group('hour'))
        minute = int(match.group('minute'))
        if not 1 <= hour <= 12 or minute > 59:
            raise InvalidTimeFormat(f'Invalid time: {value!r}.')
        hour %= 12
        if match.group('meridiem').upper() == 'PM':
            hour += 12
        return hour * 60 + minute

    match = _TWENTY_FOUR_HOUR.match(text)
    if match:
        hour = int(match.group('hour'))
        minute = int(match.group('minute'))
        if hour > 23 or minute > 59:
            raise InvalidTimeFormat(f'Invalid time: {value!r}.')
        return hour * 60 + minute

    raise InvalidTimeFormat(f'Invalid time: {value!r}. Use "HH:MM" or "H:MM AM/PM".')


def format_time_of_day(minutes: int, style: TimeStyle = TimeStyle.H24) -> str:
    minutes = coerce_slot(minutes)
    hour, minute = divmod(minutes, 60)

    if style == TimeStyle.H24:
        return f'{hour:02d}:{minute:02d}'

    meridiem = 'AM' if hour < 12 else 'PM'
    display_hour = hour % 12 or 12
    return f'{display_hour}:{minute:02d} {meridiem}'


def coerce_slot(value: int | str) -> int:
    """Return the canonical minutes form of ``value``."""
    if isinstance(value, bool):
        raise InvalidTimeFormat('Time must not be a boolean.')
    if isinstance(value, int):
        if not 0 <= value < MINUTES_PER_DAY:
            raise InvalidTimeFormat(f'Minutes since midnight out of range: {value}.')
        return value
    return parse_time_of_day(value)


def coerce_slots(values) -> frozenset[int]:
    return frozenset(coerce_slot(value) for value in values)


def coerce_date(value: date | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value.strip())
    except (AttributeError, ValueError) as exc:
        raise InvalidTimeFormat(f'Invalid date: {value!r}. Use "YYYY-MM-DD".') from exc


def slot_bounds(day: date, minutes: int) -> tuple[datetime, datetime]:
    start = datetime.combine(day, datetime.min.time()) + timedelta(minutes=coerce_slot(minutes))
    return start, start + timedelta(minutes=SESSION_DURATION_MINUTES)
