"""Appointment lifecycle.

    pending_hold -> pending_payment -> confirmed -> in_progress -> completed
    pending_payment -> cancelled          (payment failed, timed out or cancelled)
    confirmed -> cancelled                (explicit cancellation)
    in_progress -> no_show | cancelled

Transitions on one appointment are serialised by a per-appointment lock and
checked against TRANSITIONS; anything else raises InvalidTransition. Payment
notifications may arrive late or more than once, so both payment handlers are
idempotent.
"""

import logging
import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from petconsult.core import config
from petconsult.core.locks import KeyedLocks
from petconsult.errors import (
    CancellationDenied,
    ExpiredHold,
    Forbidden,
    InvalidTransition,
    NotFound,
    PaymentFailed,
    ValidationError,
)
from petconsult.models.appointment import Appointment
from petconsult.models.consultation import ConsultationMessage, ConsultationRecord
from petconsult.models.professional import Professional
from petconsult.models.user import User
from petconsult.schemas import (
    MAX_REASON_LENGTH,
    ClosingNotes,
    MediaReference,
    PaymentCheckout,
    PetDetails,
    ReservationToken,
    SlotWindow,
)
from petconsult.services import reservations
from petconsult.services.availability_store import get_professional
from petconsult.services.payments import PaymentGateway, get_payment_gateway, initiate_with_timeout
from petconsult.services.slot_resolver import is_offered, slot_start

logger = logging.getLogger(__name__)

PENDING_HOLD = 'pending_hold'
PENDING_PAYMENT = 'pending_payment'
CONFIRMED = 'confirmed'
IN_PROGRESS = 'in_progress'
COMPLETED = 'completed'
CANCELLED = 'cancelled'
NO_SHOW = 'no_show'

TRANSITIONS = {
    PENDING_HOLD: {PENDING_PAYMENT, CANCELLED},
    PENDING_PAYMENT: {CONFIRMED, CANCELLED},
    CONFIRMED: {IN_PROGRESS, CANCELLED},
    IN_PROGRESS: {COMPLETED, NO_SHOW, CANCELLED},
    COMPLETED: set(),
    CANCELLED: set(),
    NO_SHOW: set(),
}
TERMINAL_STATUSES = {status for status, targets in TRANSITIONS.items() if not targets}
PAID_STATUSES = {CONFIRMED, IN_PROGRESS, COMPLETED, NO_SHOW}
CANCELLABLE_STATUSES = {PENDING_PAYMENT, CONFIRMED}
HOLD_LAPSE_REASONS = {'hold_expired', 'payment_timeout'}

ROLE_CLIENT = 'client'
ROLE_PROFESSIONAL = 'professional'
ROLE_ADMIN = 'admin'

appointment_locks = KeyedLocks()


def _transition(appointment: Appointment, target: str) -> None:
    if target not in TRANSITIONS.get(appointment.status, set()):
        raise InvalidTransition(f'Appointment {appointment.id} cannot move from {appointment.status} to {target}.')
    logger.info('Appointment %s: %s -> %s', appointment.id, appointment.status, target)
    appointment.status = target


def load_appointment(db: Session, appointment_id: int) -> Appointment:
    appointment = db.execute(
        select(Appointment)
        .where(Appointment.id == appointment_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if appointment is None:
        raise NotFound('Appointment not found.')
    return appointment


def _token(appointment: Appointment) -> ReservationToken:
    return ReservationToken(
        reservation_id=appointment.reservation_id,
        hold_token=appointment.hold_token,
        expires_at=appointment.hold_expires_at,
    )


def _commit(db: Session) -> None:
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception('Failed to persist appointment change')
        raise


def generate_appointment_code(now: datetime) -> str:
    return f'APT-{int(now.timestamp() * 1000)}-{uuid.uuid4().hex[:9].upper()}'


def scheduled_start(appointment: Appointment) -> datetime:
    return datetime.combine(appointment.scheduled_date, appointment.start_time)


def participant_role(db: Session, appointment: Appointment, user: User) -> str:
    if user.role == ROLE_ADMIN:
        return ROLE_ADMIN
    if appointment.client_id == user.id:
        return ROLE_CLIENT
    professional = db.get(Professional, appointment.professional_id)
    if professional is not None and professional.user_id is not None and professional.user_id == user.id:
        return ROLE_PROFESSIONAL
    raise Forbidden('Only participants of this appointment can access it.')


def _require_professional_side(role: str) -> None:
    if role not in (ROLE_PROFESSIONAL, ROLE_ADMIN):
        raise Forbidden('Only the professional can perform this action.')


def create_appointment(
    db: Session,
    client: User,
    professional_id: int,
    pet: PetDetails,
    slot_date: date,
    window: SlotWindow,
    consultation_type: str,
    reason: str,
    media_files: list[MediaReference] | None = None,
    gateway: PaymentGateway | None = None,
    now: datetime | None = None,
    hold_timeout: timedelta | None = None,
) -> tuple[Appointment, PaymentCheckout]:
    """Hold the slot, record a pending appointment and start the checkout.

    SlotUnavailable leaves nothing behind. If the checkout cannot be started
    the appointment is cancelled, the slot released, and PaymentFailed raised.
    """
    now = now or datetime.now()
    gateway = gateway or get_payment_gateway()
    if hold_timeout is None:
        hold_timeout = timedelta(minutes=config.HOLD_TIMEOUT_MINUTES)

    professional = get_professional(db, professional_id)
    if not professional.is_active:
        raise NotFound('Professional not available.')

    consultation_type = (consultation_type or '').strip().lower()
    if consultation_type not in (professional.consultation_modes or []):
        raise ValidationError('This professional does not offer that consultation type.')

    reason = (reason or '').strip()
    if not reason:
        raise ValidationError('A reason for the consultation is required.')
    if len(reason) > MAX_REASON_LENGTH:
        raise ValidationError(f'Reason must be {MAX_REASON_LENGTH} characters or fewer.')

    if slot_start(slot_date, window) <= now:
        raise ValidationError('Appointment time must be in the future.')

    if not is_offered(db, professional_id, slot_date, window):
        raise ValidationError('The selected time is not offered by this professional.')

    token = reservations.hold(db, professional_id, slot_date, window, client.id, hold_timeout, now=now)

    appointment = Appointment(
        appointment_code=generate_appointment_code(now),
        client_id=client.id,
        professional_id=professional_id,
        reservation_id=token.reservation_id,
        hold_token=token.hold_token,
        hold_expires_at=token.expires_at,
        pet_name=pet.name,
        pet_species=pet.species,
        pet_breed=pet.breed,
        pet_age=pet.age,
        pet_weight=pet.weight,
        pet_gender=pet.gender,
        pet_medical_history=pet.medical_history,
        urgency_level=pet.urgency_level,
        reason=reason,
        media_files=[media.model_dump() for media in media_files or []],
        consultation_type=consultation_type,
        scheduled_date=slot_date,
        start_time=window.start_time,
        end_time=window.end_time,
        duration_minutes=professional.appointment_duration_minutes,
        status=PENDING_HOLD,
        payment_amount=Decimal(professional.consultation_fee),
        payment_currency=professional.currency or 'USD',
        payment_status='pending',
        refund_status='not_applicable',
        created_at=now,
    )

    try:
        db.add(appointment)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception('Failed to record appointment; releasing hold %s', token.hold_token)
        reservations.release(db, token, now=now)
        raise

    with appointment_locks.hold(appointment.id):
        appointment = load_appointment(db, appointment.id)
        _transition(appointment, PENDING_PAYMENT)
        _commit(db)

    try:
        checkout = initiate_with_timeout(
            gateway,
            appointment.payment_amount,
            appointment.payment_currency,
            appointment.id,
        )
    except PaymentFailed:
        on_payment_failed(db, appointment.id, reason='payment_initiation_failed', now=now)
        raise

    with appointment_locks.hold(appointment.id):
        appointment = load_appointment(db, appointment.id)
        if appointment.status == PENDING_PAYMENT:
            appointment.payment_checkout_reference = checkout.checkout_reference
            appointment.payment_status = 'processing'
            _commit(db)

    logger.info('Appointment %s awaiting payment, checkout=%s', appointment.id, checkout.checkout_reference)
    return appointment, checkout


def on_payment_succeeded(
    db: Session,
    appointment_id: int,
    external_reference: str | None = None,
    gateway: PaymentGateway | None = None,
    now: datetime | None = None,
) -> Appointment:
    """Confirm a paid appointment; repeated notifications are no-ops.

    When the hold already lapsed the appointment ends cancelled, a refund is
    signalled to the payment collaborator and ExpiredHold is raised.
    """
    now = now or datetime.now()
    gateway = gateway or get_payment_gateway()
    hold_lapsed = False

    with appointment_locks.hold(appointment_id):
        appointment = load_appointment(db, appointment_id)

        if appointment.status in PAID_STATUSES:
            logger.info('Duplicate payment notification for appointment %s ignored', appointment_id)
            return appointment

        if appointment.status == PENDING_PAYMENT:
            try:
                reservations.confirm(db, _token(appointment), appointment.id, now=now)
            except ExpiredHold:
                hold_lapsed = True
                appointment = load_appointment(db, appointment_id)
                _transition(appointment, CANCELLED)
                appointment.cancelled_by = 'system'
                appointment.cancellation_reason = 'hold_expired'
                appointment.cancelled_at = now
            else:
                appointment = load_appointment(db, appointment_id)
                _transition(appointment, CONFIRMED)
                appointment.confirmed_at = now
                appointment.hold_expires_at = None
                appointment.payment_status = 'completed'
                appointment.payment_external_reference = external_reference
                _commit(db)
                return appointment
        elif appointment.status != CANCELLED:
            raise InvalidTransition(f'Appointment {appointment_id} is not awaiting payment.')

        # cancelled before the money arrived: keep it cancelled and refund
        needs_refund = appointment.refund_status != 'requested'
        appointment.payment_status = 'completed'
        appointment.payment_external_reference = external_reference or appointment.payment_external_reference
        if needs_refund:
            appointment.refund_status = 'required'
        _commit(db)

        if hold_lapsed:
            reservations.release(db, _token(appointment), now=now)

    if needs_refund:
        gateway.request_refund(appointment.id, appointment.payment_external_reference, appointment.payment_amount)
        with appointment_locks.hold(appointment_id):
            appointment = load_appointment(db, appointment_id)
            appointment.refund_status = 'requested'
            _commit(db)
        logger.warning('Payment for cancelled appointment %s received; refund requested', appointment_id)

    if hold_lapsed or appointment.cancellation_reason in HOLD_LAPSE_REASONS:
        raise ExpiredHold('The reservation hold expired before payment completed. A refund has been requested.')
    raise ExpiredHold('The appointment was cancelled before payment completed. A refund has been requested.')


def on_payment_failed(
    db: Session,
    appointment_id: int,
    reason: str = 'payment_failed',
    now: datetime | None = None,
) -> Appointment:
    """Cancel an unpaid appointment and free its slot; repeats are no-ops."""
    now = now or datetime.now()

    with appointment_locks.hold(appointment_id):
        appointment = load_appointment(db, appointment_id)

        if appointment.status == CANCELLED:
            return appointment
        if appointment.status not in (PENDING_HOLD, PENDING_PAYMENT):
            raise InvalidTransition(f'Appointment {appointment_id} is no longer awaiting payment.')

        _transition(appointment, CANCELLED)
        appointment.payment_status = 'failed'
        appointment.cancelled_by = 'system'
        appointment.cancellation_reason = reason
        appointment.cancelled_at = now
        appointment.hold_expires_at = None
        _commit(db)

        reservations.release(db, _token(appointment), now=now)

    logger.info('Appointment %s cancelled: %s', appointment_id, reason)
    return appointment


def expire_pending_payments(db: Session, now: datetime | None = None) -> list[int]:
    """Cancel appointments whose hold lapsed before payment arrived."""
    now = now or datetime.now()

    stale_ids = db.execute(
        select(Appointment.id).where(
            Appointment.status.in_((PENDING_HOLD, PENDING_PAYMENT)),
            Appointment.hold_expires_at <= now,
        )
    ).scalars().all()

    expired: list[int] = []
    for appointment_id in stale_ids:
        try:
            on_payment_failed(db, appointment_id, reason='payment_timeout', now=now)
        except InvalidTransition:
            # confirmed between the query and the lock
            continue
        expired.append(appointment_id)

    reservations.expire_holds(db, now=now)
    return expired


def cancel_appointment(
    db: Session,
    appointment_id: int,
    actor: User,
    reason: str | None = None,
    now: datetime | None = None,
) -> Appointment:
    now = now or datetime.now()

    with appointment_locks.hold(appointment_id):
        appointment = load_appointment(db, appointment_id)
        role = participant_role(db, appointment, actor)

        if appointment.status not in CANCELLABLE_STATUSES:
            raise InvalidTransition(f'Appointment cannot be cancelled while {appointment.status}.')

        refund_status = 'not_applicable' if appointment.status == PENDING_PAYMENT else 'pending'

        if role == ROLE_CLIENT and appointment.status == CONFIRMED:
            professional = db.get(Professional, appointment.professional_id)
            hours_until = (scheduled_start(appointment) - now).total_seconds() / 3600
            if hours_until < professional.cancellation_lead_hours:
                if config.LATE_CANCELLATION_POLICY == 'partial_refund':
                    refund_status = 'partial'
                else:
                    raise CancellationDenied(
                        f'Appointments can only be cancelled at least '
                        f'{professional.cancellation_lead_hours} hours in advance.'
                    )

        _transition(appointment, CANCELLED)
        appointment.cancelled_by = role
        appointment.cancellation_reason = (reason or '').strip() or f'Cancelled by {role}'
        appointment.cancelled_at = now
        appointment.refund_status = refund_status
        if appointment.payment_status != 'completed':
            appointment.payment_status = 'failed'
        appointment.hold_expires_at = None
        _commit(db)

        reservations.release(db, _token(appointment), now=now)

    return appointment


def start_session(
    db: Session,
    appointment_id: int,
    actor: User,
    now: datetime | None = None,
) -> Appointment:
    now = now or datetime.now()

    with appointment_locks.hold(appointment_id):
        appointment = load_appointment(db, appointment_id)
        participant_role(db, appointment, actor)

        if appointment.status != CONFIRMED:
            raise InvalidTransition(f'Consultation cannot be started while {appointment.status}.')

        opens_at = scheduled_start(appointment) - timedelta(minutes=config.START_GRACE_MINUTES)
        if now < opens_at:
            raise InvalidTransition(f'Consultation can be started from {opens_at:%Y-%m-%d %H:%M}.')

        _transition(appointment, IN_PROGRESS)
        appointment.started_at = now
        _commit(db)

    return appointment


def end_session(
    db: Session,
    appointment_id: int,
    actor: User,
    closing: ClosingNotes,
    now: datetime | None = None,
) -> ConsultationRecord:
    """Close a live session; the only place a ConsultationRecord is written."""
    now = now or datetime.now()

    with appointment_locks.hold(appointment_id):
        appointment = load_appointment(db, appointment_id)
        _require_professional_side(participant_role(db, appointment, actor))

        if appointment.status != IN_PROGRESS:
            raise InvalidTransition('Consultation is not in progress.')

        actual_duration_seconds = max(0, int((now - appointment.started_at).total_seconds()))

        _transition(appointment, COMPLETED)
        appointment.ended_at = now
        appointment.exceeded_paid_duration = actual_duration_seconds > appointment.duration_minutes * 60

        record = ConsultationRecord(
            appointment_id=appointment.id,
            notes=closing.notes,
            diagnosis=closing.diagnosis,
            recommendations=closing.recommendations,
            follow_up_needed=closing.follow_up_needed,
            follow_up_date=closing.follow_up_date,
            actual_duration_seconds=actual_duration_seconds,
            created_at=now,
        )
        db.add(record)
        _commit(db)
        db.refresh(record)

    return record


def mark_no_show(
    db: Session,
    appointment_id: int,
    actor: User,
    now: datetime | None = None,
) -> Appointment:
    now = now or datetime.now()

    with appointment_locks.hold(appointment_id):
        appointment = load_appointment(db, appointment_id)
        _require_professional_side(participant_role(db, appointment, actor))

        if appointment.status != IN_PROGRESS:
            raise InvalidTransition('Only a consultation in progress can be marked as a no-show.')

        grace_ends = appointment.started_at + timedelta(minutes=config.NO_SHOW_GRACE_MINUTES)
        if now < grace_ends:
            raise InvalidTransition(f'The client can still join until {grace_ends:%H:%M}.')

        client_messages = db.execute(
            select(func.count(ConsultationMessage.id)).where(
                ConsultationMessage.appointment_id == appointment_id,
                ConsultationMessage.sender_role == ROLE_CLIENT,
            )
        ).scalar_one()
        if client_messages:
            raise InvalidTransition('The client has joined this consultation.')

        _transition(appointment, NO_SHOW)
        appointment.ended_at = now
        _commit(db)

    return appointment


def interrupt_session(
    db: Session,
    appointment_id: int,
    actor: User,
    reason: str | None = None,
    now: datetime | None = None,
) -> Appointment:
    now = now or datetime.now()

    with appointment_locks.hold(appointment_id):
        appointment = load_appointment(db, appointment_id)
        role = participant_role(db, appointment, actor)

        if appointment.status != IN_PROGRESS:
            raise InvalidTransition('Consultation is not in progress.')

        _transition(appointment, CANCELLED)
        appointment.cancelled_by = role
        appointment.cancellation_reason = (reason or '').strip() or 'Session interrupted'
        appointment.cancelled_at = now
        appointment.ended_at = now
        appointment.refund_status = 'pending'
        _commit(db)

        reservations.release(db, _token(appointment), now=now)

    return appointment


def get_appointment(db: Session, appointment_id: int, actor: User | None = None) -> Appointment:
    appointment = load_appointment(db, appointment_id)
    if actor is not None:
        participant_role(db, appointment, actor)
    return appointment


def list_appointments(
    db: Session,
    actor: User,
    status: str | None = None,
    upcoming: bool = False,
    page: int = 1,
    limit: int = 10,
    now: datetime | None = None,
) -> tuple[list[Appointment], int]:
    now = now or datetime.now()
    query = db.query(Appointment)

    if actor.role == ROLE_PROFESSIONAL:
        professional = db.query(Professional).filter(Professional.user_id == actor.id).first()
        if professional is None:
            return [], 0
        query = query.filter(Appointment.professional_id == professional.id)
    elif actor.role != ROLE_ADMIN:
        query = query.filter(Appointment.client_id == actor.id)

    if upcoming:
        query = query.filter(
            Appointment.scheduled_date >= now.date(),
            Appointment.status.in_((PENDING_PAYMENT, CONFIRMED)),
        )
    elif status:
        query = query.filter(Appointment.status == status)

    total = query.count()
    order = (Appointment.scheduled_date.asc(), Appointment.start_time.asc()) if upcoming else (
        Appointment.scheduled_date.desc(),
        Appointment.start_time.desc(),
    )
    items = query.order_by(*order).offset((page - 1) * limit).limit(limit).all()
    return items, total


def time_until_start(appointment: Appointment, now: datetime) -> str:
    delta = scheduled_start(appointment) - now
    if delta.total_seconds() < 0:
        return 'Past'

    minutes = int(delta.total_seconds() // 60)
    hours = minutes // 60
    days = hours // 24
    if minutes < 60:
        return f'{minutes}m'
    if hours < 24:
        return f'{hours}h {minutes % 60}m'
    return f'{days}d {hours % 24}h'


def can_cancel(appointment: Appointment, professional: Professional, now: datetime) -> bool:
    if appointment.status == PENDING_PAYMENT:
        return True
    if appointment.status != CONFIRMED:
        return False
    if config.LATE_CANCELLATION_POLICY == 'partial_refund':
        return True
    hours_until = (scheduled_start(appointment) - now).total_seconds() / 3600
    return hours_until >= professional.cancellation_lead_hours


def can_join(appointment: Appointment, now: datetime) -> bool:
    if appointment.status == IN_PROGRESS:
        return True
    opens_at = scheduled_start(appointment) - timedelta(minutes=config.START_GRACE_MINUTES)
    return appointment.status == CONFIRMED and now >= opens_at


def professional_stats(db: Session, professional_id: int) -> dict:
    get_professional(db, professional_id)

    counts = dict(
        db.query(Appointment.status, func.count(Appointment.id))
        .filter(Appointment.professional_id == professional_id)
        .group_by(Appointment.status)
        .all()
    )
    earnings = db.query(func.coalesce(func.sum(Appointment.payment_amount), 0)).filter(
        Appointment.professional_id == professional_id,
        Appointment.status == COMPLETED,
    ).scalar()
    total_clients = db.query(func.count(func.distinct(Appointment.client_id))).filter(
        Appointment.professional_id == professional_id,
        Appointment.status.in_(tuple(PAID_STATUSES)),
    ).scalar()
    follow_ups = db.query(func.count(ConsultationRecord.id)).join(
        Appointment, Appointment.id == ConsultationRecord.appointment_id
    ).filter(
        Appointment.professional_id == professional_id,
        ConsultationRecord.follow_up_needed.is_(True),
    ).scalar()

    completed = counts.get(COMPLETED, 0)
    return {
        'total_appointments': sum(counts.values()),
        'by_status': counts,
        'completed_appointments': completed,
        'cancelled_appointments': counts.get(CANCELLED, 0),
        'no_show_appointments': counts.get(NO_SHOW, 0),
        'total_clients': total_clients,
        'total_earnings': Decimal(str(earnings)),
        'follow_up_rate': round(100 * follow_ups / completed, 1) if completed else 0.0,
    }
