"""Professional model definitions."""

from sqlalchemy import Boolean, Column, ForeignKey, Integer, JSON, Numeric, String
from petconsult.database import Base


class Professional(Base):
    """A veterinarian, trainer or groomer offering paid consultations."""
    __tablename__ = "professionals"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, index=True)
    name = Column(String, nullable=False)
    profession = Column(String, nullable=False, default="veterinarian")
    consultation_fee = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    consultation_modes = Column(JSON, nullable=False, default=lambda: ["video", "chat"])
    appointment_duration_minutes = Column(Integer, nullable=False, default=30)
    cancellation_lead_hours = Column(Integer, nullable=False, default=2)
    is_active = Column(Boolean, nullable=False, default=True)
