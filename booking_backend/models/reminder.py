"""Appointment reminder model definitions."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from booking_backend.database import Base


class AppointmentReminder(Base):
    """Proof that a reminder horizon was dispatched for an appointment.

    The unique key is the only guard against sending the same reminder twice.
    """
    __tablename__ = "appointment_reminders"
    __table_args__ = (
        UniqueConstraint("appointment_id", "reminder_type", name="uq_appointment_reminders_type"),
    )

    id = Column(Integer, primary_key=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False)
    reminder_type = Column(String(16), nullable=False)
    sent_at = Column(DateTime, nullable=False, server_default=func.now())
