"""Half-open interval overlap checks shared by slot generation and booking."""

from datetime import date
from typing import Iterable, NamedTuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from booking_backend.core.timeutils import to_minutes
from booking_backend.models.appointment import Appointment, AppointmentStatus


class Interval(NamedTuple):
    start: int
    end: int


def overlaps(candidate_start: int, candidate_end: int, existing_start: int, existing_end: int) -> bool:
    # back-to-back intervals touch but do not conflict
    return candidate_start < existing_end and candidate_end > existing_start


def first_overlap(candidate: Interval, intervals: Iterable[Interval]) -> Interval | None:
    for interval in intervals:
        if overlaps(candidate.start, candidate.end, interval.start, interval.end):
            return interval
    return None


def active_appointments_for_day(
    db: Session,
    staff_id: int,
    appointment_date: date,
    exclude_id: int | None = None,
) -> list[Appointment]:
    query = (
        select(Appointment)
        .where(
            Appointment.staff_id == staff_id,
            Appointment.appointment_date == appointment_date,
            Appointment.status != AppointmentStatus.CANCELLED,
        )
        .order_by(Appointment.start_time.asc())
        .execution_options(populate_existing=True)
    )
    if exclude_id is not None:
        query = query.where(Appointment.id != exclude_id)

    return list(db.execute(query).scalars().all())


def booked_intervals(appointments: Iterable[Appointment]) -> list[Interval]:
    return [
        Interval(to_minutes(appointment.start_time), to_minutes(appointment.end_time))
        for appointment in appointments
    ]


def find_conflicting_appointment(
    db: Session,
    staff_id: int,
    appointment_date: date,
    start_minutes: int,
    end_minutes: int,
    exclude_id: int | None = None,
) -> Appointment | None:
    """Re-read the staff member's active appointments and return the first overlap."""
    for appointment in active_appointments_for_day(db, staff_id, appointment_date, exclude_id):
        if overlaps(
            start_minutes,
            end_minutes,
            to_minutes(appointment.start_time),
            to_minutes(appointment.end_time),
        ):
            return appointment
    return None
