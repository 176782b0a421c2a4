"""Weekly availability templates.

Templates change rarely and are not time critical, so the last writer wins.
Concrete booking state lives in ``slot_reservations`` and is never touched by
a template edit.
"""

import logging
from datetime import time

from sqlalchemy.orm import Session

from petconsult.errors import NotFound, ValidationError
from petconsult.models.availability import AvailabilityDay, AvailabilityWindow
from petconsult.models.professional import Professional
from petconsult.schemas import WEEKDAY_NAMES, DayAvailability, TimeWindow, WeeklyAvailability

logger = logging.getLogger(__name__)


def get_professional(db: Session, professional_id: int) -> Professional:
    professional = db.get(Professional, professional_id)
    if professional is None:
        raise NotFound('Professional not found.')
    return professional


def validate_template(template: WeeklyAvailability) -> None:
    for weekday, day in template.items():
        day_name = WEEKDAY_NAMES[weekday].capitalize()
        previous_end: time | None = None
        for window in day.windows:
            if window.end_time <= window.start_time:
                raise ValidationError(
                    f'{day_name}: window {window.start_time:%H:%M} must end after it starts.'
                )
            if previous_end is not None and window.start_time < previous_end:
                raise ValidationError(
                    f'{day_name}: windows must be ordered by start time and must not overlap.'
                )
            previous_end = window.end_time


def get_weekly_template(db: Session, professional_id: int) -> WeeklyAvailability:
    get_professional(db, professional_id)

    days = db.query(AvailabilityDay).filter(AvailabilityDay.professional_id == professional_id).all()
    by_weekday = {day.weekday: day for day in days}

    template = WeeklyAvailability()
    for weekday, name in enumerate(WEEKDAY_NAMES):
        stored = by_weekday.get(weekday)
        if stored is None:
            continue
        setattr(
            template,
            name,
            DayAvailability(
                is_available=stored.is_available,
                windows=[TimeWindow.model_validate(window) for window in stored.windows],
            ),
        )

    return template


def set_weekly_template(db: Session, professional_id: int, template: WeeklyAvailability) -> WeeklyAvailability:
    get_professional(db, professional_id)
    validate_template(template)

    existing = {
        day.weekday: day
        for day in db.query(AvailabilityDay).filter(AvailabilityDay.professional_id == professional_id).all()
    }

    for weekday, day in template.items():
        stored = existing.get(weekday)
        if stored is None:
            stored = AvailabilityDay(professional_id=professional_id, weekday=weekday)
            db.add(stored)
        stored.is_available = day.is_available
        stored.windows = [
            AvailabilityWindow(start_time=window.start_time, end_time=window.end_time, is_booked=window.is_booked)
            for window in day.windows
        ]

    db.commit()
    logger.info('Weekly template replaced for professional %s', professional_id)

    return get_weekly_template(db, professional_id)
