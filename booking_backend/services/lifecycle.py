"""Appointment state machine.

Legal moves are listed in ``TRANSITIONS``; anything not listed is rejected.
Side effects (notifications) are explicit calls made after the transaction
that changed the row has committed.
"""

import enum
import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from booking_backend.core import config
from booking_backend.core.errors import Forbidden, InvalidTransition, NotFound
from booking_backend.database import lock_staff_schedules, transaction
from booking_backend.models.appointment import Appointment, AppointmentStatus
from booking_backend.models.staff import StaffMember
from booking_backend.services import notifications
from booking_backend.services.booking import (
    BookingRequest,
    RescheduleRequest,
    create_appointment,
    reschedule_appointment,
)
from booking_backend.services.notifications import (
    AppointmentSnapshot,
    NotificationDispatcher,
    NotificationEvent,
)

logger = logging.getLogger(__name__)


class AppointmentAction(str, enum.Enum):
    CREATE = 'create'
    CONFIRM = 'confirm'
    CANCEL = 'cancel'
    RESCHEDULE = 'reschedule'
    COMPLETE = 'complete'


class Party(str, enum.Enum):
    CUSTOMER = 'customer'
    BUSINESS_OWNER = 'business_owner'


TRANSITIONS: dict[tuple[AppointmentStatus, AppointmentAction], AppointmentStatus] = {
    (AppointmentStatus.PENDING, AppointmentAction.CONFIRM): AppointmentStatus.CONFIRMED,
    (AppointmentStatus.PENDING, AppointmentAction.CANCEL): AppointmentStatus.CANCELLED,
    (AppointmentStatus.PENDING, AppointmentAction.RESCHEDULE): AppointmentStatus.PENDING,
    (AppointmentStatus.CONFIRMED, AppointmentAction.CANCEL): AppointmentStatus.CANCELLED,
    (AppointmentStatus.CONFIRMED, AppointmentAction.RESCHEDULE): AppointmentStatus.PENDING,
    (AppointmentStatus.CONFIRMED, AppointmentAction.COMPLETE): AppointmentStatus.COMPLETED,
}

ALLOWED_PARTIES: dict[AppointmentAction, frozenset[Party]] = {
    AppointmentAction.CONFIRM: frozenset({Party.BUSINESS_OWNER}),
    AppointmentAction.CANCEL: frozenset({Party.CUSTOMER, Party.BUSINESS_OWNER}),
    AppointmentAction.RESCHEDULE: frozenset({Party.CUSTOMER, Party.BUSINESS_OWNER}),
    AppointmentAction.COMPLETE: frozenset({Party.BUSINESS_OWNER}),
}

EVENT_FOR_ACTION = {
    AppointmentAction.CREATE: notifications.APPOINTMENT_CREATED,
    AppointmentAction.CONFIRM: notifications.APPOINTMENT_CONFIRMED,
    AppointmentAction.RESCHEDULE: notifications.APPOINTMENT_RESCHEDULED,
    AppointmentAction.COMPLETE: notifications.APPOINTMENT_COMPLETED,
}


@dataclass(frozen=True)
class ActorContext:
    actor_id: int
    actor_role: str
    owned_business_id: int | None = None


def initial_status() -> AppointmentStatus:
    return AppointmentStatus(config.INITIAL_APPOINTMENT_STATUS)


def next_status(current: AppointmentStatus, action: AppointmentAction) -> AppointmentStatus:
    try:
        return TRANSITIONS[(current, action)]
    except KeyError:
        raise InvalidTransition(f'Cannot {action.value} an appointment that is {current.value}.') from None


def parties_for(actor: ActorContext, appointment: Appointment) -> set[Party]:
    parties: set[Party] = set()
    if actor.actor_id == appointment.customer_id:
        parties.add(Party.CUSTOMER)
    if actor.owned_business_id is not None and actor.owned_business_id == appointment.business_id:
        parties.add(Party.BUSINESS_OWNER)
    return parties


def authorize(actor: ActorContext, appointment: Appointment, action: AppointmentAction) -> set[Party]:
    parties = parties_for(actor, appointment)
    if not parties & ALLOWED_PARTIES[action]:
        raise Forbidden(f'You are not allowed to {action.value} this appointment.')
    return parties


def _load(db: Session, appointment_id: int) -> Appointment:
    appointment = db.get(Appointment, appointment_id)
    if appointment is None:
        raise NotFound('Appointment not found.')
    return appointment


def _notify(dispatcher: NotificationDispatcher | None, kind: str, appointment: Appointment) -> None:
    if dispatcher is None:
        return
    try:
        event = NotificationEvent(kind=kind, appointment=AppointmentSnapshot.from_appointment(appointment))
        dispatcher.dispatch(event)
    except Exception:
        # the transition is already committed
        logger.exception('Notification fan-out failed for appointment %s (%s)', appointment.id, kind)


def book(
    db: Session,
    actor: ActorContext,
    request: BookingRequest,
    dispatcher: NotificationDispatcher | None = None,
) -> Appointment:
    if request.customer_id is None:
        request.customer_id = actor.actor_id
    elif request.customer_id != actor.actor_id and actor.owned_business_id != request.business_id:
        raise Forbidden('Only the business owner can book on behalf of a customer.')

    appointment = create_appointment(db, request, initial_status())
    _notify(dispatcher, EVENT_FOR_ACTION[AppointmentAction.CREATE], appointment)
    return appointment


def _apply_transition(
    db: Session,
    actor: ActorContext,
    appointment_id: int,
    action: AppointmentAction,
) -> tuple[Appointment, set[Party]]:
    staff_id = _load(db, appointment_id).staff_id

    with transaction(db):
        lock_staff_schedules(db, [staff_id])
        current = db.execute(
            select(Appointment)
            .where(Appointment.id == appointment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if current is None:
            raise NotFound('Appointment not found.')

        parties = authorize(actor, current, action)
        previous = current.status
        current.status = next_status(current.status, action)

    logger.info(
        'Appointment %s: %s -> %s by user %s',
        current.id,
        previous.value,
        current.status.value,
        actor.actor_id,
    )
    return current, parties


def confirm(
    db: Session,
    actor: ActorContext,
    appointment_id: int,
    dispatcher: NotificationDispatcher | None = None,
) -> Appointment:
    appointment, _ = _apply_transition(db, actor, appointment_id, AppointmentAction.CONFIRM)
    _notify(dispatcher, EVENT_FOR_ACTION[AppointmentAction.CONFIRM], appointment)
    return appointment


def complete(
    db: Session,
    actor: ActorContext,
    appointment_id: int,
    dispatcher: NotificationDispatcher | None = None,
) -> Appointment:
    appointment, _ = _apply_transition(db, actor, appointment_id, AppointmentAction.COMPLETE)
    _notify(dispatcher, EVENT_FOR_ACTION[AppointmentAction.COMPLETE], appointment)
    return appointment


def cancel(
    db: Session,
    actor: ActorContext,
    appointment_id: int,
    dispatcher: NotificationDispatcher | None = None,
) -> Appointment:
    appointment, parties = _apply_transition(db, actor, appointment_id, AppointmentAction.CANCEL)
    if Party.CUSTOMER in parties:
        kind = notifications.CANCELLED_BY_CUSTOMER
    else:
        kind = notifications.CANCELLED_BY_BUSINESS
    _notify(dispatcher, kind, appointment)
    return appointment


def reschedule(
    db: Session,
    actor: ActorContext,
    appointment_id: int,
    request: RescheduleRequest,
    dispatcher: NotificationDispatcher | None = None,
) -> Appointment:
    appointment = _load(db, appointment_id)
    authorize(actor, appointment, AppointmentAction.RESCHEDULE)
    next_status(appointment.status, AppointmentAction.RESCHEDULE)

    def guard(current: Appointment) -> AppointmentStatus:
        authorize(actor, current, AppointmentAction.RESCHEDULE)
        return next_status(current.status, AppointmentAction.RESCHEDULE)

    appointment = reschedule_appointment(db, appointment, request, guard)
    _notify(dispatcher, EVENT_FOR_ACTION[AppointmentAction.RESCHEDULE], appointment)
    return appointment


def get_appointment_for_actor(db: Session, actor: ActorContext, appointment_id: int) -> Appointment:
    appointment = _load(db, appointment_id)
    if not parties_for(actor, appointment):
        raise Forbidden()
    return appointment


def list_appointments_for_actor(db: Session, actor: ActorContext) -> list[Appointment]:
    query = select(Appointment)
    if actor.owned_business_id is not None:
        query = query.where(Appointment.business_id == actor.owned_business_id)
    elif actor.actor_role == 'staff':
        staff_ids = select(StaffMember.id).where(StaffMember.user_id == actor.actor_id)
        query = query.where(Appointment.staff_id.in_(staff_ids))
    else:
        query = query.where(Appointment.customer_id == actor.actor_id)

    query = query.order_by(Appointment.appointment_date.desc(), Appointment.start_time.desc())
    return list(db.execute(query).scalars().all())
