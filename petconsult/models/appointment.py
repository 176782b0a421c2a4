"""Appointment model definitions."""

from sqlalchemy import Boolean, Column, Date, DateTime, Float, ForeignKey, Integer, JSON, Numeric, String, Time
from petconsult.database import Base


class Appointment(Base):
    """Represents a paid consultation booked against one slot reservation."""
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True)
    appointment_code = Column(String, unique=True, index=True, nullable=False)
    client_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    professional_id = Column(Integer, ForeignKey("professionals.id"), nullable=False, index=True)
    reservation_id = Column(Integer, ForeignKey("slot_reservations.id"), nullable=True)
    hold_token = Column(String(36), nullable=True)
    hold_expires_at = Column(DateTime, nullable=True)

    pet_name = Column(String, nullable=False)
    pet_species = Column(String, nullable=False)
    pet_breed = Column(String)
    pet_age = Column(Float)
    pet_weight = Column(Float)
    pet_gender = Column(String)
    pet_medical_history = Column(String)
    urgency_level = Column(String, nullable=False, default="Medium")

    reason = Column(String(500), nullable=False)
    media_files = Column(JSON, nullable=False, default=list)
    consultation_type = Column(String, nullable=False)

    scheduled_date = Column(Date, nullable=False, index=True)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=False)

    status = Column(String, nullable=False, index=True)

    payment_amount = Column(Numeric(10, 2), nullable=False)
    payment_currency = Column(String(3), nullable=False, default="USD")
    payment_status = Column(String, nullable=False, default="pending")
    payment_checkout_reference = Column(String)
    payment_external_reference = Column(String)
    refund_status = Column(String, nullable=False, default="not_applicable")

    cancelled_by = Column(String)
    cancellation_reason = Column(String)

    created_at = Column(DateTime, nullable=False)
    confirmed_at = Column(DateTime)
    started_at = Column(DateTime)
    ended_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    exceeded_paid_duration = Column(Boolean, nullable=False, default=False)
