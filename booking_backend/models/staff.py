"""Staff member model definitions."""

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from booking_backend.database import Base
from booking_backend.models.business import Business
from booking_backend.models.user import User


class StaffMember(Base):
    """A user who works for a business and can be booked."""
    __tablename__ = "staff_members"

    id = Column(Integer, primary_key=True)
    business_id = Column(Integer, ForeignKey("businesses.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    position = Column(String)
    is_active = Column(Boolean, nullable=False, default=True)

    business = relationship(Business)
    user = relationship(User)
