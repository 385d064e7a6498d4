"""Business model definitions."""

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from booking_backend.database import Base
from booking_backend.models.user import User


class Business(Base):
    """A tenant that offers services through its staff."""
    __tablename__ = "businesses"

    id = Column(Integer, primary_key=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    business_name = Column(String, nullable=False)
    email = Column(String)
    address = Column(String)
    is_active = Column(Boolean, nullable=False, default=True)

    owner = relationship(User)
