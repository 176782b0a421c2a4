from datetime import date, datetime, time
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from petconsult.auth.dependencies import get_current_user, get_db
from petconsult.errors import PaymentFailed, SchedulingError, SlotUnavailable, to_http_exception
from petconsult.models.appointment import Appointment
from petconsult.models.consultation import ConsultationMessage, ConsultationRecord
from petconsult.models.professional import Professional
from petconsult.models.user import User
from petconsult.routes.availability_routes import DaySlotsResponse, collect_available_slots, ensure_database_ready
from petconsult.schemas import (
    CONSULTATION_MODES,
    MAX_REASON_LENGTH,
    ClosingNotes,
    MediaReference,
    MessagePayload,
    PetDetails,
)
from petconsult.services import appointments, sessions
from petconsult.services.payments import PaymentGateway, get_payment_gateway
from petconsult.services.slot_resolver import parse_window
from petconsult.services.transport import MessageTransport, get_transport

router = APIRouter(tags=['appointments'])

CONFLICT_REFRESH_DAYS = 7
DATABASE_UNAVAILABLE = 'Database unavailable. Verify DATABASE_URL and database credentials.'


class CreateAppointmentRequest(BaseModel):
    professional_id: int
    pet_details: PetDetails
    scheduled_date: date
    start_time: time
    end_time: time
    consultation_type: str
    reason: str
    media_files: list[MediaReference] = Field(default_factory=list)

    @field_validator('consultation_type')
    @classmethod
    def validate_consultation_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in CONSULTATION_MODES:
            raise ValueError('Invalid consultation type.')
        return normalized

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('A reason for the consultation is required.')
        if len(normalized) > MAX_REASON_LENGTH:
            raise ValueError(f'Reason must be {MAX_REASON_LENGTH} characters or fewer.')
        return normalized


class CancelAppointmentRequest(BaseModel):
    reason: str | None = None


class PaymentResponse(BaseModel):
    amount: Decimal
    currency: str
    status: str
    checkout_reference: str | None = None
    external_reference: str | None = None
    refund_status: str


class AppointmentResponse(BaseModel):
    id: int
    appointment_code: str
    client_id: int
    professional_id: int
    pet_details: PetDetails
    reason: str
    media_files: list[MediaReference]
    consultation_type: str
    scheduled_date: date
    start_time: time
    end_time: time
    duration_minutes: int
    status: str
    payment: PaymentResponse
    hold_expires_at: datetime | None = None
    created_at: datetime
    confirmed_at: datetime | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancelled_by: str | None = None
    cancellation_reason: str | None = None
    exceeded_paid_duration: bool
    time_until_appointment: str
    can_cancel: bool
    can_join: bool


class CreateAppointmentResponse(BaseModel):
    appointment: AppointmentResponse
    checkout_reference: str
    checkout_url: str | None = None


class PaginationResponse(BaseModel):
    current_page: int
    total_pages: int
    total_appointments: int
    has_next: bool
    has_prev: bool


class AppointmentListResponse(BaseModel):
    appointments: list[AppointmentResponse]
    pagination: PaginationResponse


class ConsultationRecordResponse(BaseModel):
    appointment_id: int
    notes: str | None = None
    diagnosis: str | None = None
    recommendations: str | None = None
    follow_up_needed: bool
    follow_up_date: date | None = None
    actual_duration_seconds: int
    created_at: datetime

    class Config:
        from_attributes = True


class MessageResponse(BaseModel):
    id: int
    sequence: int
    sender_role: str
    message_type: str
    body: str | None = None
    file_url: str | None = None
    sent_at: datetime | None = None
    received_at: datetime

    class Config:
        from_attributes = True


class PostMessageResponse(BaseModel):
    message: MessageResponse
    delivered: bool


class MessageListResponse(BaseModel):
    messages: list[MessageResponse]
    has_more: bool


class SessionTimingResponse(BaseModel):
    appointment_id: int
    status: str
    started_at: datetime | None = None
    ended_at: datetime | None = None
    elapsed_seconds: int
    paid_duration_seconds: int
    exceeds_paid_duration: bool
    overrun_seconds: int


def to_appointment_response(db: Session, appointment: Appointment, now: datetime | None = None) -> AppointmentResponse:
    now = now or datetime.now()
    professional = db.get(Professional, appointment.professional_id)

    return AppointmentResponse(
        id=appointment.id,
        appointment_code=appointment.appointment_code,
        client_id=appointment.client_id,
        professional_id=appointment.professional_id,
        pet_details=PetDetails(
            name=appointment.pet_name,
            species=appointment.pet_species,
            breed=appointment.pet_breed,
            age=appointment.pet_age,
            weight=appointment.pet_weight,
            gender=appointment.pet_gender,
            medical_history=appointment.pet_medical_history,
            urgency_level=appointment.urgency_level,
        ),
        reason=appointment.reason,
        media_files=[MediaReference(**media) for media in appointment.media_files or []],
        consultation_type=appointment.consultation_type,
        scheduled_date=appointment.scheduled_date,
        start_time=appointment.start_time,
        end_time=appointment.end_time,
        duration_minutes=appointment.duration_minutes,
        status=appointment.status,
        payment=PaymentResponse(
            amount=appointment.payment_amount,
            currency=appointment.payment_currency,
            status=appointment.payment_status,
            checkout_reference=appointment.payment_checkout_reference,
            external_reference=appointment.payment_external_reference,
            refund_status=appointment.refund_status,
        ),
        hold_expires_at=appointment.hold_expires_at,
        created_at=appointment.created_at,
        confirmed_at=appointment.confirmed_at,
        started_at=appointment.started_at,
        ended_at=appointment.ended_at,
        cancelled_at=appointment.cancelled_at,
        cancelled_by=appointment.cancelled_by,
        cancellation_reason=appointment.cancellation_reason,
        exceeded_paid_duration=bool(appointment.exceeded_paid_duration),
        time_until_appointment=appointments.time_until_start(appointment, now),
        can_cancel=appointments.can_cancel(appointment, professional, now),
        can_join=appointments.can_join(appointment, now),
    )


def database_unavailable(db: Session) -> HTTPException:
    db.rollback()
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=DATABASE_UNAVAILABLE)


def slot_conflict_detail(db: Session, professional_id: int, scheduled_date: date, message: str) -> dict:
    refreshed: list[DaySlotsResponse] = collect_available_slots(
        db,
        professional_id,
        max(scheduled_date, date.today()),
        CONFLICT_REFRESH_DAYS,
    )
    return {
        'message': message,
        'available_slots': [day.model_dump(mode='json') for day in refreshed],
    }


@router.get('', response_model=AppointmentListResponse)
def list_my_appointments(
    status_filter: str | None = Query(default=None, alias='status'),
    upcoming: bool = Query(default=False),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        items, total = appointments.list_appointments(
            db,
            current_user,
            status=status_filter,
            upcoming=upcoming,
            page=page,
            limit=limit,
        )
        total_pages = (total + limit - 1) // limit
        return AppointmentListResponse(
            appointments=[to_appointment_response(db, appointment) for appointment in items],
            pagination=PaginationResponse(
                current_page=page,
                total_pages=total_pages,
                total_appointments=total,
                has_next=page < total_pages,
                has_prev=page > 1,
            ),
        )
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.post('', response_model=CreateAppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: CreateAppointmentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    ensure_database_ready()

    if current_user.role != 'client':
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Only clients can book consultations.')

    try:
        window = parse_window(data.start_time, data.end_time)
        appointment, checkout = appointments.create_appointment(
            db,
            current_user,
            data.professional_id,
            data.pet_details,
            data.scheduled_date,
            window,
            data.consultation_type,
            data.reason,
            media_files=data.media_files,
            gateway=gateway,
        )
        return CreateAppointmentResponse(
            appointment=to_appointment_response(db, appointment),
            checkout_reference=checkout.checkout_reference,
            checkout_url=checkout.url,
        )
    except SlotUnavailable as exc:
        raise HTTPException(
            status_code=exc.status_code,
            detail=slot_conflict_detail(db, data.professional_id, data.scheduled_date, exc.message),
        ) from exc
    except PaymentFailed as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.get('/{appointment_id}', response_model=AppointmentResponse)
def get_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointment = appointments.get_appointment(db, appointment_id, actor=current_user)
        return to_appointment_response(db, appointment)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.post('/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: int,
    data: CancelAppointmentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointment = appointments.cancel_appointment(db, appointment_id, current_user, reason=data.reason)
        return to_appointment_response(db, appointment)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.post('/{appointment_id}/start', response_model=AppointmentResponse)
def start_session(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointment = appointments.start_session(db, appointment_id, current_user)
        return to_appointment_response(db, appointment)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.post('/{appointment_id}/end', response_model=ConsultationRecordResponse)
def end_session(
    appointment_id: int,
    closing: ClosingNotes,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        record: ConsultationRecord = appointments.end_session(db, appointment_id, current_user, closing)
        return record
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.post('/{appointment_id}/no-show', response_model=AppointmentResponse)
def mark_no_show(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointment = appointments.mark_no_show(db, appointment_id, current_user)
        return to_appointment_response(db, appointment)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.post('/{appointment_id}/interrupt', response_model=AppointmentResponse)
def interrupt_session(
    appointment_id: int,
    data: CancelAppointmentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointment = appointments.interrupt_session(db, appointment_id, current_user, reason=data.reason)
        return to_appointment_response(db, appointment)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.get('/{appointment_id}/messages', response_model=MessageListResponse)
def list_messages(
    appointment_id: int,
    after_sequence: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=sessions.MAX_MESSAGE_PAGE),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointments.get_appointment(db, appointment_id, actor=current_user)
        messages, has_more = sessions.list_messages(db, appointment_id, after_sequence=after_sequence, limit=limit)
        return MessageListResponse(
            messages=[MessageResponse.model_validate(message) for message in messages],
            has_more=has_more,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.post('/{appointment_id}/messages', response_model=PostMessageResponse, status_code=status.HTTP_201_CREATED)
def post_message(
    appointment_id: int,
    payload: MessagePayload,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    transport: MessageTransport = Depends(get_transport),
):
    ensure_database_ready()

    try:
        appointment = appointments.get_appointment(db, appointment_id)
        sender_role = appointments.participant_role(db, appointment, current_user)
        if sender_role == appointments.ROLE_ADMIN:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Only consultation participants can post messages.',
            )

        message: ConsultationMessage
        message, delivered = sessions.post_message(db, appointment_id, sender_role, payload, transport=transport)
        return PostMessageResponse(message=MessageResponse.model_validate(message), delivered=delivered)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.get('/{appointment_id}/session', response_model=SessionTimingResponse)
def get_session_timing(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointment = appointments.get_appointment(db, appointment_id, actor=current_user)
        timing = sessions.session_timing(db, appointment_id)
        return SessionTimingResponse(
            appointment_id=appointment.id,
            status=appointment.status,
            started_at=timing.started_at,
            ended_at=timing.ended_at,
            elapsed_seconds=timing.elapsed_seconds,
            paid_duration_seconds=timing.paid_duration_seconds,
            exceeds_paid_duration=timing.exceeds_paid_duration,
            overrun_seconds=timing.overrun_seconds,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc
