from datetime import date, datetime, time
from decimal import Decimal

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from booking_backend.auth.dependencies import get_actor_context
from booking_backend.database import get_db
from booking_backend.models.appointment import Appointment
from booking_backend.routes.availability_routes import ensure_database_ready
from booking_backend.services import lifecycle
from booking_backend.services.booking import BookingRequest, RescheduleRequest
from booking_backend.services.lifecycle import ActorContext
from booking_backend.services.notifications import NotificationDispatcher, get_dispatcher

router = APIRouter(tags=['appointments'])


class CreateAppointmentRequest(BaseModel):
    business_id: int
    staff_id: int
    service_ids: list[int]
    date: date
    start_time: str
    notes: str | None = None
    customer_id: int | None = None

    @field_validator('start_time')
    @classmethod
    def normalize_start_time(cls, value: str) -> str:
        return value.strip()


class RescheduleAppointmentRequest(BaseModel):
    date: date
    start_time: str
    staff_id: int | None = None
    service_ids: list[int] | None = None

    @field_validator('start_time')
    @classmethod
    def normalize_start_time(cls, value: str) -> str:
        return value.strip()


class AppointmentResponse(BaseModel):
    id: int
    customer_id: int
    business_id: int
    staff_id: int
    appointment_date: date
    start_time: time
    end_time: time
    total_price: Decimal
    total_duration: int
    status: str
    notes: str | None
    service_ids: list[int]
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


def to_appointment_response(appointment: Appointment) -> AppointmentResponse:
    return AppointmentResponse(
        id=appointment.id,
        customer_id=appointment.customer_id,
        business_id=appointment.business_id,
        staff_id=appointment.staff_id,
        appointment_date=appointment.appointment_date,
        start_time=appointment.start_time,
        end_time=appointment.end_time,
        total_price=appointment.total_price,
        total_duration=appointment.total_duration,
        status=appointment.status.value,
        notes=appointment.notes,
        service_ids=[link.service_id for link in appointment.service_links],
        created_at=appointment.created_at,
        updated_at=appointment.updated_at,
    )


@router.post('', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    payload: CreateAppointmentRequest,
    actor: ActorContext = Depends(get_actor_context),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    request = BookingRequest(
        customer_id=payload.customer_id,
        business_id=payload.business_id,
        staff_id=payload.staff_id,
        service_ids=payload.service_ids,
        appointment_date=payload.date,
        start_time=payload.start_time,
        notes=payload.notes,
    )
    appointment = lifecycle.book(db, actor, request, dispatcher)
    return to_appointment_response(appointment)


@router.get('', response_model=list[AppointmentResponse])
def list_appointments(
    actor: ActorContext = Depends(get_actor_context),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    appointments = lifecycle.list_appointments_for_actor(db, actor)
    return [to_appointment_response(appointment) for appointment in appointments]


@router.get('/{appointment_id}', response_model=AppointmentResponse)
def get_appointment(
    appointment_id: int,
    actor: ActorContext = Depends(get_actor_context),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    return to_appointment_response(lifecycle.get_appointment_for_actor(db, actor, appointment_id))


@router.patch('/{appointment_id}/reschedule', response_model=AppointmentResponse)
def reschedule_appointment(
    appointment_id: int,
    payload: RescheduleAppointmentRequest,
    actor: ActorContext = Depends(get_actor_context),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    request = RescheduleRequest(
        appointment_date=payload.date,
        start_time=payload.start_time,
        staff_id=payload.staff_id,
        service_ids=payload.service_ids,
    )
    appointment = lifecycle.reschedule(db, actor, appointment_id, request, dispatcher)
    return to_appointment_response(appointment)


@router.post('/{appointment_id}/confirm', response_model=AppointmentResponse)
def confirm_appointment(
    appointment_id: int,
    actor: ActorContext = Depends(get_actor_context),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    return to_appointment_response(lifecycle.confirm(db, actor, appointment_id, dispatcher))


@router.post('/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: int,
    actor: ActorContext = Depends(get_actor_context),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    return to_appointment_response(lifecycle.cancel(db, actor, appointment_id, dispatcher))


@router.post('/{appointment_id}/complete', response_model=AppointmentResponse)
def complete_appointment(
    appointment_id: int,
    actor: ActorContext = Depends(get_actor_context),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    return to_appointment_response(lifecycle.complete(db, actor, appointment_id, dispatcher))
