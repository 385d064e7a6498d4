"""Service model definitions."""

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Numeric, String
from booking_backend.database import Base


class Service(Base):
    """A bookable service with a fixed price and duration."""
    __tablename__ = "services"

    id = Column(Integer, primary_key=True)
    business_id = Column(Integer, ForeignKey("businesses.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    duration = Column(Integer, nullable=False)  # minutes
    is_active = Column(Boolean, nullable=False, default=True)
