"""Consultation transcript and closing record definitions."""

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from petconsult.database import Base


class ConsultationMessage(Base):
    """One append-only entry of a consultation session log."""
    __tablename__ = "consultation_messages"
    __table_args__ = (
        UniqueConstraint("appointment_id", "sequence", name="uq_consultation_message_sequence"),
    )

    id = Column(Integer, primary_key=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    sender_role = Column(String, nullable=False)  # client/professional
    message_type = Column(String, nullable=False, default="text")
    body = Column(Text)
    file_url = Column(String)
    sent_at = Column(DateTime)
    received_at = Column(DateTime, nullable=False)


class ConsultationRecord(Base):
    """The professional's closing notes, written once when a session ends."""
    __tablename__ = "consultation_records"

    id = Column(Integer, primary_key=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), unique=True, nullable=False)
    notes = Column(Text)
    diagnosis = Column(Text)
    recommendations = Column(Text)
    follow_up_needed = Column(Boolean, nullable=False, default=False)
    follow_up_date = Column(Date)
    actual_duration_seconds = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False)
