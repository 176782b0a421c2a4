"""Projects weekly templates onto concrete calendar dates."""

from collections.abc import Iterator
from datetime import date, datetime, time, timedelta

from sqlalchemy.orm import Session

from petconsult.core import config
from petconsult.errors import ValidationError
from petconsult.schemas import DaySlots, SlotWindow, TimeWindow
from petconsult.services import reservations
from petconsult.services.availability_store import get_professional, get_weekly_template


def iterate_slot_windows(window: TimeWindow, duration_minutes: int) -> list[SlotWindow]:
    """Cut a template window into consecutive slots of ``duration_minutes``.

    A window shorter than the duration yields nothing and any trailing
    remainder is dropped.
    """
    if duration_minutes <= 0:
        raise ValidationError('Appointment duration must be a positive number of minutes.')

    slots: list[SlotWindow] = []
    day = date.min
    current = datetime.combine(day, window.start_time)
    window_end = datetime.combine(day, window.end_time)
    step = timedelta(minutes=duration_minutes)

    while current + step <= window_end:
        slots.append(SlotWindow(current.time(), (current + step).time()))
        current += step

    return slots


def validate_horizon(horizon_days: int) -> None:
    if horizon_days < 1 or horizon_days > config.SLOT_HORIZON_MAX_DAYS:
        raise ValidationError(f'Horizon must be between 1 and {config.SLOT_HORIZON_MAX_DAYS} days.')


class SlotProjection:
    """Available slots for one professional over a fixed horizon.

    Each iteration re-reads the template and the reservation table, so the
    projection can be walked again after a reservation attempt without
    serving stale availability.
    """

    def __init__(
        self,
        db: Session,
        professional_id: int,
        from_date: date,
        horizon_days: int,
        now: datetime | None = None,
    ):
        validate_horizon(horizon_days)
        self.db = db
        self.professional_id = professional_id
        self.from_date = from_date
        self.horizon_days = horizon_days
        self.now = now

    @property
    def to_date(self) -> date:
        return self.from_date + timedelta(days=self.horizon_days - 1)

    def __iter__(self) -> Iterator[DaySlots]:
        now = self.now or datetime.now()
        professional = get_professional(self.db, self.professional_id)
        template = get_weekly_template(self.db, self.professional_id)
        occupied = reservations.occupied_windows(self.db, self.professional_id, self.from_date, self.to_date, now=now)

        for offset in range(self.horizon_days):
            current_day = self.from_date + timedelta(days=offset)
            day = template.day(current_day.weekday())

            windows: list[SlotWindow] = []
            if day.is_available:
                for template_window in day.windows:
                    for slot in iterate_slot_windows(template_window, professional.appointment_duration_minutes):
                        if datetime.combine(current_day, slot.start_time) <= now:
                            continue
                        if (current_day, slot) in occupied:
                            continue
                        windows.append(slot)

            yield DaySlots(date=current_day, windows=tuple(windows))


def list_available_slots(
    db: Session,
    professional_id: int,
    from_date: date,
    horizon_days: int = config.SLOT_HORIZON_DAYS,
    now: datetime | None = None,
) -> SlotProjection:
    return SlotProjection(db, professional_id, from_date, horizon_days, now=now)


def is_offered(
    db: Session,
    professional_id: int,
    slot_date: date,
    window: SlotWindow,
) -> bool:
    """Whether the current template offers ``window`` on ``slot_date`` at all, booked or not."""
    professional = get_professional(db, professional_id)
    day = get_weekly_template(db, professional_id).day(slot_date.weekday())
    if not day.is_available:
        return False
    return any(
        window in iterate_slot_windows(template_window, professional.appointment_duration_minutes)
        for template_window in day.windows
    )


def slot_start(slot_date: date, window: SlotWindow) -> datetime:
    return datetime.combine(slot_date, window.start_time)


def parse_window(start_time: time, end_time: time) -> SlotWindow:
    if end_time <= start_time:
        raise ValidationError('Slot end time must be after its start time.')
    return SlotWindow(start_time, end_time)
