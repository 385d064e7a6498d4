"""Shift model definitions."""

from sqlalchemy import Column, Date, ForeignKey, Index, Integer, Time
from booking_backend.database import Base


class Shift(Base):
    """One staff member's working window on one calendar date."""
    __tablename__ = "shifts"
    __table_args__ = (
        Index("idx_shifts_staff_date", "staff_id", "shift_date"),
    )

    id = Column(Integer, primary_key=True)
    staff_id = Column(Integer, ForeignKey("staff_members.id"), nullable=False)
    business_id = Column(Integer, ForeignKey("businesses.id"), nullable=False)
    shift_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
