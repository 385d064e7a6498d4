from datetime import time

from booking_backend.core.errors import InvalidTimeFormat

MINUTES_PER_DAY = 24 * 60


def to_minutes(value: str | time) -> int:
    """Minutes since midnight for ``HH:MM`` / ``HH:MM:SS``.

    The schedule has minute resolution, so a nonzero seconds field is rejected
    rather than rounded away.
    """
    if isinstance(value, time):
        if value.second or value.microsecond:
            raise InvalidTimeFormat(f'Invalid time "{value}". Times must fall on a whole minute.')
        return value.hour * 60 + value.minute

    if not isinstance(value, str):
        raise InvalidTimeFormat()

    parts = value.strip().split(':')
    if len(parts) not in (2, 3) or not all(part.isdigit() for part in parts):
        raise InvalidTimeFormat(f'Invalid time "{value}". Expected HH:MM or HH:MM:SS.')

    hours, minutes = int(parts[0]), int(parts[1])
    seconds = int(parts[2]) if len(parts) == 3 else 0
    if hours >= 24 or minutes >= 60 or seconds >= 60:
        raise InvalidTimeFormat(f'Invalid time "{value}". Expected HH:MM or HH:MM:SS.')
    if seconds:
        raise InvalidTimeFormat(f'Invalid time "{value}". Times must fall on a whole minute.')

    return hours * 60 + minutes


def to_time_string(minutes: int) -> str:
    if not 0 <= minutes < MINUTES_PER_DAY:
        raise ValueError(f'minutes must be within a single day, got {minutes}')
    return f'{minutes // 60:02d}:{minutes % 60:02d}:00'


def to_time(minutes: int) -> time:
    if not 0 <= minutes < MINUTES_PER_DAY:
        raise ValueError(f'minutes must be within a single day, got {minutes}')
    return time(minutes // 60, minutes % 60)


def fits_in_day(start_minutes: int, duration_minutes: int) -> bool:
    # end_time shares the appointment date, so 24:00 is not representable
    return start_minutes + duration_minutes < MINUTES_PER_DAY


def add_minutes(value: str | time, minutes: int) -> str:
    return to_time_string(to_minutes(value) + minutes)
