"""Appointment model definitions."""

import enum

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    Time,
    func,
    text,
)
from sqlalchemy.orm import relationship

from booking_backend.database import Base
from booking_backend.models.business import Business
from booking_backend.models.service import Service
from booking_backend.models.staff import StaffMember
from booking_backend.models.user import User


class AppointmentStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED})
INACTIVE_STATUSES = frozenset({AppointmentStatus.CANCELLED})

_ACTIVE_ROW = text("status != 'cancelled'")


class Appointment(Base):
    """Represents a booked interval with one staff member."""
    __tablename__ = "appointments"
    __table_args__ = (
        Index("idx_appointments_staff_date", "staff_id", "appointment_date"),
        Index(
            "uq_appointments_active_staff_start",
            "staff_id",
            "appointment_date",
            "start_time",
            unique=True,
            sqlite_where=_ACTIVE_ROW,
            postgresql_where=_ACTIVE_ROW,
        ),
    )

    id = Column(Integer, primary_key=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    business_id = Column(Integer, ForeignKey("businesses.id"), nullable=False, index=True)
    staff_id = Column(Integer, ForeignKey("staff_members.id"), nullable=False)
    appointment_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)
    total_duration = Column(Integer, nullable=False)  # minutes
    status = Column(
        Enum(
            AppointmentStatus,
            name="appointment_status",
            native_enum=False,
            values_callable=lambda statuses: [member.value for member in statuses],
        ),
        nullable=False,
        default=AppointmentStatus.PENDING,
    )
    notes = Column(Text)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    customer = relationship(User, foreign_keys=[customer_id])
    business = relationship(Business)
    staff = relationship(StaffMember)
    service_links = relationship(
        "AppointmentService",
        back_populates="appointment",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="AppointmentService.id",
    )
    services = relationship(
        Service,
        secondary="appointment_services",
        viewonly=True,
        order_by=Service.id,
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class AppointmentService(Base):
    """Join row between an appointment and one of its services."""
    __tablename__ = "appointment_services"

    id = Column(Integer, primary_key=True)
    appointment_id = Column(
        Integer,
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    service_id = Column(Integer, ForeignKey("services.id"), nullable=False)

    appointment = relationship(Appointment, back_populates="service_links")
