"""Weekly availability template definitions."""

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Time, UniqueConstraint
from sqlalchemy.orm import relationship
from petconsult.database import Base


class AvailabilityDay(Base):
    """One weekday entry of a professional's recurring template (0 = Monday)."""
    __tablename__ = "availability_days"
    __table_args__ = (
        UniqueConstraint("professional_id", "weekday", name="uq_availability_day"),
    )

    id = Column(Integer, primary_key=True)
    professional_id = Column(Integer, ForeignKey("professionals.id"), nullable=False, index=True)
    weekday = Column(Integer, nullable=False)
    is_available = Column(Boolean, nullable=False, default=False)

    windows = relationship(
        "AvailabilityWindow",
        cascade="all, delete-orphan",
        order_by="AvailabilityWindow.start_time",
    )


class AvailabilityWindow(Base):
    """A templated time window; is_booked is only a seed value."""
    __tablename__ = "availability_windows"

    id = Column(Integer, primary_key=True)
    day_id = Column(Integer, ForeignKey("availability_days.id"), nullable=False, index=True)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_booked = Column(Boolean, nullable=False, default=False)
