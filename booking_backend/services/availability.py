"""Bookable slot computation.

Slots are derived on every call from the staff member's working window and the
appointments that are still active for that date. Nothing is cached: a slot
list is only a hint, and the booking transaction re-checks before writing.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Iterator

from sqlalchemy import select
from sqlalchemy.orm import Session

from booking_backend.core import config
from booking_backend.core.errors import InvalidTimeFormat, NotFound, ScheduleMisconfigured, ValidationError
from booking_backend.core.timeutils import to_minutes, to_time_string
from booking_backend.models.appointment import Appointment, AppointmentStatus
from booking_backend.models.business import Business
from booking_backend.models.shift import Shift
from booking_backend.models.staff import StaffMember
from booking_backend.services.conflicts import (
    Interval,
    active_appointments_for_day,
    booked_intervals,
    first_overlap,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Slot:
    start_at: int
    end_at: int

    @property
    def start_time(self) -> str:
        return to_time_string(self.start_at)

    @property
    def end_time(self) -> str:
        return to_time_string(self.end_at)


def merge_ranges(ranges: Iterable[Interval]) -> list[Interval]:
    """Union overlapping or touching ranges into ordered, disjoint segments."""
    merged: list[Interval] = []
    for current in sorted(r for r in ranges if r.end > r.start):
        if merged and current.start <= merged[-1].end:
            previous = merged[-1]
            merged[-1] = Interval(previous.start, max(previous.end, current.end))
        else:
            merged.append(current)
    return merged


def covers(ranges: Iterable[Interval], start: int, end: int) -> bool:
    return any(segment.start <= start and end <= segment.end for segment in merge_ranges(ranges))


class SlotSequence:
    """Lazy, restartable sequence of free slots.

    Each iteration walks the merged working segments from scratch, stepping by
    ``granularity`` and keeping every start whose ``[t, t + duration)`` fits in
    the segment and overlaps no booked interval.
    """

    def __init__(
        self,
        working_ranges: Iterable[Interval],
        booked: Iterable[Interval],
        duration: int,
        granularity: int,
    ):
        if duration <= 0:
            raise ValidationError('Duration must be a positive number of minutes.')
        if granularity <= 0:
            raise ValidationError('Slot granularity must be a positive number of minutes.')

        self.segments = merge_ranges(working_ranges)
        self.booked = sorted(booked)
        self.duration = duration
        self.granularity = granularity

    def __iter__(self) -> Iterator[Slot]:
        for segment in self.segments:
            cursor = segment.start
            while cursor + self.duration <= segment.end:
                candidate = Interval(cursor, cursor + self.duration)
                if first_overlap(candidate, self.booked) is None:
                    yield Slot(candidate.start, candidate.end)
                cursor += self.granularity

    def __bool__(self) -> bool:
        return next(iter(self), None) is not None


def business_hours_window(open_time: str, close_time: str) -> Interval:
    try:
        opening = to_minutes(open_time)
        closing = to_minutes(close_time)
    except InvalidTimeFormat as exc:
        raise ScheduleMisconfigured(
            f'Business hours are misconfigured: cannot parse "{open_time}"-"{close_time}".'
        ) from exc
    if closing <= opening:
        raise ScheduleMisconfigured(
            f'Business hours are misconfigured: closes at {close_time}, opens at {open_time}.'
        )
    return Interval(opening, closing)


def get_staff_member(db: Session, business_id: int, staff_id: int) -> StaffMember:
    staff = db.get(StaffMember, staff_id)
    if staff is None or staff.business_id != business_id or not staff.is_active:
        raise NotFound('Staff member not found.')
    return staff


def working_ranges(db: Session, staff_id: int, work_date: date) -> list[Interval]:
    if config.AVAILABILITY_MODE == 'business_hours':
        return [business_hours_window(config.BUSINESS_OPEN_TIME, config.BUSINESS_CLOSE_TIME)]

    shifts = db.execute(
        select(Shift.start_time, Shift.end_time).where(
            Shift.staff_id == staff_id,
            Shift.shift_date == work_date,
        )
    ).all()
    return [Interval(to_minutes(start), to_minutes(end)) for start, end in shifts]


def get_available_slots(
    db: Session,
    business_id: int,
    staff_id: int,
    slot_date: date,
    duration_minutes: int | None = None,
    granularity_minutes: int | None = None,
) -> SlotSequence:
    duration = config.DEFAULT_APPOINTMENT_DURATION_MINUTES if duration_minutes is None else duration_minutes
    granularity = config.DEFAULT_SLOT_GRANULARITY_MINUTES if granularity_minutes is None else granularity_minutes

    get_staff_member(db, business_id, staff_id)
    ranges = working_ranges(db, staff_id, slot_date)
    booked = booked_intervals(active_appointments_for_day(db, staff_id, slot_date))

    slots = SlotSequence(ranges, booked, duration, granularity)
    logger.debug(
        'Computed availability for staff %s on %s: %d segment(s), %d booking(s)',
        staff_id,
        slot_date,
        len(slots.segments),
        len(booked),
    )
    return slots


def get_staff_shift_dates(
    db: Session,
    business_id: int,
    staff_id: int,
    start_date: date | None = None,
    end_date: date | None = None,
) -> list[date]:
    get_staff_member(db, business_id, staff_id)

    query = select(Shift.shift_date).where(
        Shift.business_id == business_id,
        Shift.staff_id == staff_id,
    )
    if start_date and end_date:
        if end_date < start_date:
            raise ValidationError('end_date must not be before start_date.')
        query = query.where(Shift.shift_date.between(start_date, end_date))

    return list(db.execute(query.distinct().order_by(Shift.shift_date.asc())).scalars().all())


def get_booked_slots(
    db: Session,
    business_id: int,
    start_date: date | None = None,
    end_date: date | None = None,
) -> dict:
    business = db.get(Business, business_id)
    if business is None:
        raise NotFound('Business not found.')

    start = start_date or date.today()
    end = end_date or start + timedelta(days=config.BOOKED_SLOTS_RANGE_DAYS)
    if end < start:
        raise ValidationError('end_date must not be before start_date.')

    appointments = db.execute(
        select(Appointment)
        .where(
            Appointment.business_id == business.id,
            Appointment.status != AppointmentStatus.CANCELLED,
            Appointment.appointment_date >= start,
            Appointment.appointment_date <= end,
        )
        .order_by(Appointment.appointment_date.asc(), Appointment.start_time.asc())
    ).scalars().all()

    booked_days: list[date] = []
    booked_slots = []
    for appointment in appointments:
        if appointment.appointment_date not in booked_days:
            booked_days.append(appointment.appointment_date)
        booked_slots.append(
            {
                'appointment_id': appointment.id,
                'date': appointment.appointment_date,
                'start_time': to_time_string(to_minutes(appointment.start_time)),
                'end_time': to_time_string(to_minutes(appointment.end_time)),
                'staff_id': appointment.staff_id,
                'status': appointment.status.value,
            }
        )

    return {
        'business_id': business.id,
        'start_date': start,
        'end_date': end,
        'booked_days': booked_days,
        'booked_slots': booked_slots,
    }
