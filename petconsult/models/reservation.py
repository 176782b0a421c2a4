"""Slot reservation model definitions."""

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String, Time, UniqueConstraint
from petconsult.database import Base

RESERVATION_FREE = "free"
RESERVATION_HELD = "held"
RESERVATION_BOOKED = "booked"


class SlotReservation(Base):
    """Tracks the free/held/booked state of one concrete professional slot."""
    __tablename__ = "slot_reservations"
    __table_args__ = (
        UniqueConstraint("professional_id", "slot_date", "start_time", "end_time", name="uq_slot_reservation_key"),
    )

    id = Column(Integer, primary_key=True)
    professional_id = Column(Integer, ForeignKey("professionals.id"), nullable=False)
    slot_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    status = Column(String, nullable=False, default=RESERVATION_FREE)
    holder_id = Column(Integer, nullable=True)
    hold_token = Column(String(36), nullable=True, index=True)
    hold_expires_at = Column(DateTime, nullable=True)
    appointment_id = Column(Integer, nullable=True)
    updated_at = Column(DateTime, nullable=True)
