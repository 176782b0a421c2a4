from datetime import date, datetime, time
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from petconsult.auth.dependencies import ensure_can_manage_professional, get_current_user, get_db
from petconsult.core import config
from petconsult.database import ensure_message_schema, ensure_reservation_schema
from petconsult.errors import SchedulingError, to_http_exception
from petconsult.models.user import User
from petconsult.schemas import DaySlots, WeeklyAvailability
from petconsult.services import availability_store, slot_resolver
from petconsult.services.appointments import professional_stats

router = APIRouter(tags=['availability'])


class SlotWindowResponse(BaseModel):
    start_time: time
    end_time: time
    start: datetime
    end: datetime


class DaySlotsResponse(BaseModel):
    date: date
    weekday: str
    windows: list[SlotWindowResponse]


class ProfessionalStatsResponse(BaseModel):
    total_appointments: int
    by_status: dict[str, int]
    completed_appointments: int
    cancelled_appointments: int
    no_show_appointments: int
    total_clients: int
    total_earnings: Decimal
    follow_up_rate: float


def ensure_database_ready() -> None:
    try:
        ensure_reservation_schema()
        ensure_message_schema()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail='Database unavailable. Verify DATABASE_URL and database credentials.',
        ) from exc


def to_day_slots_response(day: DaySlots) -> DaySlotsResponse:
    return DaySlotsResponse(
        date=day.date,
        weekday=day.date.strftime('%A').lower(),
        windows=[
            SlotWindowResponse(
                start_time=window.start_time,
                end_time=window.end_time,
                start=datetime.combine(day.date, window.start_time),
                end=datetime.combine(day.date, window.end_time),
            )
            for window in day.windows
        ],
    )


def collect_available_slots(
    db: Session,
    professional_id: int,
    from_date: date,
    days: int,
) -> list[DaySlotsResponse]:
    projection = slot_resolver.list_available_slots(db, professional_id, from_date, days)
    return [to_day_slots_response(day) for day in projection]


@router.get('/{professional_id}/availability', response_model=WeeklyAvailability)
def get_weekly_availability(professional_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return availability_store.get_weekly_template(db, professional_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail='Database unavailable. Verify DATABASE_URL and database credentials.',
        ) from exc


@router.put('/{professional_id}/availability', response_model=WeeklyAvailability)
def replace_weekly_availability(
    professional_id: int,
    template: WeeklyAvailability,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        professional = availability_store.get_professional(db, professional_id)
        ensure_can_manage_professional(current_user, professional)
        return availability_store.set_weekly_template(db, professional_id, template)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail='Database unavailable. Verify DATABASE_URL and database credentials.',
        ) from exc


@router.get('/{professional_id}/slots', response_model=list[DaySlotsResponse])
def list_professional_slots(
    professional_id: int,
    from_date: date | None = Query(default=None),
    days: int = Query(default=config.SLOT_HORIZON_DAYS, ge=1),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return collect_available_slots(db, professional_id, from_date or date.today(), days)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail='Database unavailable. Verify DATABASE_URL and database credentials.',
        ) from exc


@router.get('/{professional_id}/stats', response_model=ProfessionalStatsResponse)
def get_professional_stats(
    professional_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        professional = availability_store.get_professional(db, professional_id)
        ensure_can_manage_professional(current_user, professional)
        return professional_stats(db, professional_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail='Database unavailable. Verify DATABASE_URL and database credentials.',
        ) from exc
