"""Atomic appointment reservation.

Every write re-reads the staff member's active appointments after taking the
staff schedule lock, so a slot shown by the availability endpoint a minute ago
can still be lost to a concurrent booker. The partial unique index on
``(staff_id, appointment_date, start_time)`` backs this up at the store level.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from booking_backend.core import config
from booking_backend.core.errors import NotFound, ServiceUnavailable, SlotConflict, ValidationError
from booking_backend.core.timeutils import fits_in_day, to_minutes, to_time
from booking_backend.database import lock_staff_schedules, transaction
from booking_backend.models.appointment import Appointment, AppointmentService, AppointmentStatus
from booking_backend.models.service import Service
from booking_backend.models.user import User
from booking_backend.services.availability import covers, get_staff_member, working_ranges
from booking_backend.services.conflicts import find_conflicting_appointment

logger = logging.getLogger(__name__)


@dataclass
class BookingRequest:
    customer_id: int | None
    business_id: int | None
    staff_id: int | None
    service_ids: list[int] = field(default_factory=list)
    appointment_date: date | None = None
    start_time: str | None = None
    notes: str | None = None


@dataclass
class RescheduleRequest:
    appointment_date: date | None
    start_time: str | None
    staff_id: int | None = None
    service_ids: list[int] | None = None


@dataclass
class ServiceQuote:
    services: list[Service]
    total_price: Decimal
    total_duration: int


def normalize_notes(notes: str | None) -> str | None:
    if notes is None:
        return None

    normalized = notes.strip()
    if not normalized:
        return None

    if len(normalized) > config.MAX_APPOINTMENT_NOTES_LENGTH:
        raise ValidationError(f'Notes must be {config.MAX_APPOINTMENT_NOTES_LENGTH} characters or fewer.')

    return normalized


def validate_booking_request(request: BookingRequest) -> None:
    missing = [
        name
        for name in ('customer_id', 'business_id', 'staff_id', 'appointment_date', 'start_time')
        if getattr(request, name) in (None, '')
    ]
    if missing:
        raise ValidationError(f'Missing required fields: {", ".join(missing)}.')

    if not request.service_ids:
        raise ValidationError('At least one service is required.')


def quote_services(db: Session, business_id: int, service_ids: list[int]) -> ServiceQuote:
    """Resolve active services of the business and total their price and duration."""
    requested_ids = list(dict.fromkeys(service_ids))
    services = db.execute(
        select(Service).where(
            Service.id.in_(requested_ids),
            Service.business_id == business_id,
            Service.is_active.is_(True),
        )
    ).scalars().all()

    by_id = {service.id: service for service in services}
    missing = [service_id for service_id in requested_ids if service_id not in by_id]
    if missing:
        raise ServiceUnavailable(
            f'Some services were not found or are inactive: {", ".join(str(i) for i in missing)}.'
        )

    ordered = [by_id[service_id] for service_id in requested_ids]
    return ServiceQuote(
        services=ordered,
        total_price=sum((Decimal(service.price) for service in ordered), Decimal('0')),
        total_duration=sum(service.duration for service in ordered),
    )


def plan_interval(start_time: str, total_duration: int) -> tuple[int, int]:
    start_minutes = to_minutes(start_time)
    if total_duration <= 0:
        raise ValidationError('Selected services must have a positive total duration.')
    if not fits_in_day(start_minutes, total_duration):
        raise ValidationError('Appointment must end on the same day it starts.')
    return start_minutes, start_minutes + total_duration


def ensure_slot_is_free(
    db: Session,
    staff_id: int,
    appointment_date: date,
    start_minutes: int,
    end_minutes: int,
    exclude_id: int | None = None,
) -> None:
    """Final write-time check. Must run after ``lock_staff_schedules``."""
    if config.REQUIRE_SHIFT_COVERAGE and not covers(
        working_ranges(db, staff_id, appointment_date),
        start_minutes,
        end_minutes,
    ):
        raise ValidationError('The requested time is outside the staff member\'s working hours.')

    conflict = find_conflicting_appointment(
        db,
        staff_id,
        appointment_date,
        start_minutes,
        end_minutes,
        exclude_id=exclude_id,
    )
    if conflict is not None:
        logger.info(
            'Slot conflict for staff %s on %s: requested %s-%s overlaps appointment %s',
            staff_id,
            appointment_date,
            start_minutes,
            end_minutes,
            conflict.id,
        )
        raise SlotConflict()


def _flush_reservation(db: Session) -> None:
    try:
        db.flush()
    except IntegrityError as exc:
        # the partial unique index caught a race the re-read could not see
        raise SlotConflict() from exc


def create_appointment(
    db: Session,
    request: BookingRequest,
    initial_status: AppointmentStatus,
) -> Appointment:
    validate_booking_request(request)
    notes = normalize_notes(request.notes)
    to_minutes(request.start_time)

    with transaction(db):
        if request.staff_id not in lock_staff_schedules(db, [request.staff_id]):
            raise NotFound('Staff member not found.')
        get_staff_member(db, request.business_id, request.staff_id)

        if db.get(User, request.customer_id) is None:
            raise NotFound('Customer not found.')

        quote = quote_services(db, request.business_id, request.service_ids)
        start_minutes, end_minutes = plan_interval(request.start_time, quote.total_duration)

        ensure_slot_is_free(
            db,
            request.staff_id,
            request.appointment_date,
            start_minutes,
            end_minutes,
        )

        appointment = Appointment(
            customer_id=request.customer_id,
            business_id=request.business_id,
            staff_id=request.staff_id,
            appointment_date=request.appointment_date,
            start_time=to_time(start_minutes),
            end_time=to_time(end_minutes),
            total_price=quote.total_price,
            total_duration=quote.total_duration,
            status=initial_status,
            notes=notes,
        )
        appointment.service_links = [AppointmentService(service_id=service.id) for service in quote.services]
        db.add(appointment)
        _flush_reservation(db)

    logger.info(
        'Booked appointment %s for staff %s on %s at %s',
        appointment.id,
        appointment.staff_id,
        appointment.appointment_date,
        appointment.start_time,
    )
    return appointment


def reschedule_appointment(
    db: Session,
    appointment: Appointment,
    request: RescheduleRequest,
    guard: Callable[[Appointment], AppointmentStatus],
) -> Appointment:
    """Move an appointment to a new interval, or leave it untouched.

    ``guard`` runs against the freshly locked row and returns the status the
    appointment should end in; it raises to abort the move.
    """
    if request.appointment_date is None or not request.start_time:
        raise ValidationError('Appointment date and start time are required.')
    if request.service_ids is not None and not request.service_ids:
        raise ValidationError('At least one service is required.')
    to_minutes(request.start_time)

    appointment_id = appointment.id
    current_staff_id = appointment.staff_id
    business_id = appointment.business_id
    target_staff_id = request.staff_id or current_staff_id

    with transaction(db):
        locked = lock_staff_schedules(db, {current_staff_id, target_staff_id})
        if target_staff_id not in locked:
            raise NotFound('Staff member not found.')
        get_staff_member(db, business_id, target_staff_id)

        current = db.execute(
            select(Appointment)
            .where(Appointment.id == appointment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if current is None:
            raise NotFound('Appointment not found.')
        if current.staff_id != current_staff_id:
            raise SlotConflict('This appointment was changed by another request. Please try again.')

        next_status = guard(current)

        service_ids = request.service_ids or [link.service_id for link in current.service_links]
        quote = quote_services(db, business_id, service_ids)
        start_minutes, end_minutes = plan_interval(request.start_time, quote.total_duration)

        ensure_slot_is_free(
            db,
            target_staff_id,
            request.appointment_date,
            start_minutes,
            end_minutes,
            exclude_id=current.id,
        )

        current.staff_id = target_staff_id
        current.appointment_date = request.appointment_date
        current.start_time = to_time(start_minutes)
        current.end_time = to_time(end_minutes)
        current.total_price = quote.total_price
        current.total_duration = quote.total_duration
        current.status = next_status
        if request.service_ids:
            current.service_links.clear()
            _flush_reservation(db)
            current.service_links.extend(
                AppointmentService(service_id=service.id) for service in quote.services
            )
        _flush_reservation(db)

    logger.info(
        'Rescheduled appointment %s to staff %s on %s at %s',
        current.id,
        current.staff_id,
        current.appointment_date,
        current.start_time,
    )
    return current
