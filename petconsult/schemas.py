"""Value types shared by the services and the routers."""

from dataclasses import dataclass
from datetime import date, datetime, time

from pydantic import BaseModel, Field, field_validator

WEEKDAY_NAMES = ('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')
URGENCY_LEVELS = ('Low', 'Medium', 'High', 'Emergency')
PET_SPECIES = ('Dog', 'Cat', 'Bird', 'Rabbit', 'Hamster', 'Guinea Pig', 'Fish', 'Reptile', 'Other')
CONSULTATION_MODES = ('video', 'audio', 'chat')
MAX_REASON_LENGTH = 500
MESSAGE_TYPES = ('text', 'image', 'file')


class TimeWindow(BaseModel):
    start_time: time
    end_time: time
    is_booked: bool = False

    class Config:
        from_attributes = True


class DayAvailability(BaseModel):
    is_available: bool = False
    windows: list[TimeWindow] = Field(default_factory=list)


class WeeklyAvailability(BaseModel):
    monday: DayAvailability = Field(default_factory=DayAvailability)
    tuesday: DayAvailability = Field(default_factory=DayAvailability)
    wednesday: DayAvailability = Field(default_factory=DayAvailability)
    thursday: DayAvailability = Field(default_factory=DayAvailability)
    friday: DayAvailability = Field(default_factory=DayAvailability)
    saturday: DayAvailability = Field(default_factory=DayAvailability)
    sunday: DayAvailability = Field(default_factory=DayAvailability)

    def day(self, weekday: int) -> DayAvailability:
        return getattr(self, WEEKDAY_NAMES[weekday])

    def items(self):
        for weekday, name in enumerate(WEEKDAY_NAMES):
            yield weekday, getattr(self, name)


class PetDetails(BaseModel):
    name: str
    species: str
    breed: str | None = None
    age: float | None = Field(default=None, ge=0)
    weight: float | None = Field(default=None, ge=0)
    gender: str | None = None
    medical_history: str | None = None
    urgency_level: str = 'Medium'

    @field_validator('name')
    @classmethod
    def validate_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Pet name is required.')
        return normalized

    @field_validator('species')
    @classmethod
    def validate_species(cls, value: str) -> str:
        normalized = value.strip()
        if normalized not in PET_SPECIES:
            raise ValueError('Unsupported pet species.')
        return normalized

    @field_validator('urgency_level')
    @classmethod
    def validate_urgency_level(cls, value: str) -> str:
        normalized = value.strip().capitalize()
        if normalized not in URGENCY_LEVELS:
            raise ValueError(f'Urgency level must be one of {", ".join(URGENCY_LEVELS)}.')
        return normalized


class MediaReference(BaseModel):
    type: str = 'image'
    url: str
    filename: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class SlotWindow:
    start_time: time
    end_time: time


@dataclass(frozen=True)
class DaySlots:
    date: date
    windows: tuple[SlotWindow, ...]


@dataclass(frozen=True)
class ReservationToken:
    reservation_id: int
    hold_token: str
    expires_at: datetime | None = None


@dataclass(frozen=True)
class PaymentCheckout:
    checkout_reference: str
    url: str | None = None


class ClosingNotes(BaseModel):
    notes: str | None = None
    diagnosis: str | None = None
    recommendations: str | None = None
    follow_up_needed: bool = False
    follow_up_date: date | None = None


class MessagePayload(BaseModel):
    message_type: str = 'text'
    body: str | None = None
    file_url: str | None = None
    sent_at: datetime | None = None

    @field_validator('message_type')
    @classmethod
    def validate_message_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in MESSAGE_TYPES:
            raise ValueError(f'Message type must be one of {", ".join(MESSAGE_TYPES)}.')
        return normalized
