from datetime import date, time

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from booking_backend.database import ensure_appointment_schema, ensure_reminder_schema, get_db
from booking_backend.services.availability import (
    get_available_slots,
    get_booked_slots,
    get_staff_shift_dates,
)

router = APIRouter(tags=['availability'])


class SlotResponse(BaseModel):
    start_time: str
    end_time: str


class AvailableSlotsResponse(BaseModel):
    business_id: int
    staff_id: int
    date: date
    duration_minutes: int
    slot_granularity_minutes: int
    available_slots: list[SlotResponse]


class StaffShiftDatesResponse(BaseModel):
    business_id: int
    staff_id: int
    available_dates: list[date]


class BookedSlotResponse(BaseModel):
    appointment_id: int
    date: date
    start_time: time
    end_time: time
    staff_id: int
    status: str


class BookedSlotsResponse(BaseModel):
    business_id: int
    start_date: date
    end_date: date
    booked_days: list[date]
    booked_slots: list[BookedSlotResponse]


def ensure_database_ready() -> None:
    try:
        ensure_appointment_schema()
        ensure_reminder_schema()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail='Database unavailable. Verify DATABASE_URL and database credentials.',
        ) from exc


@router.get('/slots', response_model=AvailableSlotsResponse)
def list_available_slots(
    business_id: int = Query(...),
    staff_id: int = Query(...),
    slot_date: date = Query(..., alias='date'),
    duration_minutes: int | None = Query(default=None),
    slot_granularity_minutes: int | None = Query(default=None),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    slots = get_available_slots(
        db,
        business_id=business_id,
        staff_id=staff_id,
        slot_date=slot_date,
        duration_minutes=duration_minutes,
        granularity_minutes=slot_granularity_minutes,
    )

    return AvailableSlotsResponse(
        business_id=business_id,
        staff_id=staff_id,
        date=slot_date,
        duration_minutes=slots.duration,
        slot_granularity_minutes=slots.granularity,
        available_slots=[SlotResponse(start_time=slot.start_time, end_time=slot.end_time) for slot in slots],
    )


@router.get('/staff/{staff_id}/dates', response_model=StaffShiftDatesResponse)
def list_staff_shift_dates(
    staff_id: int,
    business_id: int = Query(...),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    available_dates = get_staff_shift_dates(db, business_id, staff_id, start_date, end_date)
    return StaffShiftDatesResponse(business_id=business_id, staff_id=staff_id, available_dates=available_dates)


@router.get('/businesses/{business_id}/booked', response_model=BookedSlotsResponse)
def list_booked_slots(
    business_id: int,
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    return get_booked_slots(db, business_id, start_date, end_date)
