"""Live consultation sessions: the message log and session timing.

Messages are ordered by the sequence assigned on arrival, never by the
sender's clock. The engine reports sessions that run past the paid duration
but never ends them; the professional closes the session explicitly.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from petconsult.errors import InvalidTransition, MessageAppendFailed, ValidationError
from petconsult.models.consultation import ConsultationMessage
from petconsult.schemas import MessagePayload
from petconsult.services.appointments import (
    IN_PROGRESS,
    ROLE_CLIENT,
    ROLE_PROFESSIONAL,
    appointment_locks,
    load_appointment,
)
from petconsult.services.transport import MessageTransport, get_transport

logger = logging.getLogger(__name__)

SENDER_ROLES = (ROLE_CLIENT, ROLE_PROFESSIONAL)
MAX_MESSAGE_PAGE = 200


@dataclass(frozen=True)
class SessionTiming:
    started_at: datetime | None
    ended_at: datetime | None
    elapsed_seconds: int
    paid_duration_seconds: int
    exceeds_paid_duration: bool
    overrun_seconds: int


def serialize_message(message: ConsultationMessage) -> dict:
    return {
        'id': message.id,
        'appointment_id': message.appointment_id,
        'sequence': message.sequence,
        'sender_role': message.sender_role,
        'message_type': message.message_type,
        'body': message.body,
        'file_url': message.file_url,
        'sent_at': message.sent_at.isoformat() if message.sent_at else None,
        'received_at': message.received_at.isoformat(),
    }


def _validate_payload(payload: MessagePayload) -> None:
    if payload.message_type == 'text':
        if not (payload.body or '').strip():
            raise ValidationError('Text messages need a body.')
    elif not payload.file_url:
        raise ValidationError(f'{payload.message_type.capitalize()} messages need a file reference.')


def post_message(
    db: Session,
    appointment_id: int,
    sender_role: str,
    payload: MessagePayload,
    transport: MessageTransport | None = None,
    now: datetime | None = None,
) -> tuple[ConsultationMessage, bool]:
    """Append a message to a live session and hand it to the transport.

    Returns the stored message and whether the transport accepted it. A
    message that could not be stored raises MessageAppendFailed.
    """
    now = now or datetime.now()
    transport = transport or get_transport()

    if sender_role not in SENDER_ROLES:
        raise ValidationError('Sender must be the client or the professional.')
    _validate_payload(payload)

    with appointment_locks.hold(appointment_id):
        appointment = load_appointment(db, appointment_id)
        if appointment.status != IN_PROGRESS:
            raise InvalidTransition('Consultation is not active.')

        try:
            last_sequence = db.execute(
                select(func.coalesce(func.max(ConsultationMessage.sequence), 0)).where(
                    ConsultationMessage.appointment_id == appointment_id
                )
            ).scalar_one()
            message = ConsultationMessage(
                appointment_id=appointment_id,
                sequence=last_sequence + 1,
                sender_role=sender_role,
                message_type=payload.message_type,
                body=payload.body,
                file_url=payload.file_url,
                sent_at=payload.sent_at,
                received_at=now,
            )
            db.add(message)
            db.commit()
            db.refresh(message)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception('Failed to append message to appointment %s', appointment_id)
            raise MessageAppendFailed('Message could not be delivered. Please resend it.') from exc

    delivered = True
    try:
        transport.publish(appointment_id, serialize_message(message))
    except Exception:
        # the stored log stays authoritative; participants can re-read it
        delivered = False
        logger.exception('Transport publish failed for appointment %s message %s', appointment_id, message.sequence)

    return message, delivered


def list_messages(
    db: Session,
    appointment_id: int,
    after_sequence: int = 0,
    limit: int = 50,
) -> tuple[list[ConsultationMessage], bool]:
    """Messages in arrival order, with whether more follow this page."""
    load_appointment(db, appointment_id)
    limit = max(1, min(limit, MAX_MESSAGE_PAGE))

    rows = db.execute(
        select(ConsultationMessage)
        .where(
            ConsultationMessage.appointment_id == appointment_id,
            ConsultationMessage.sequence > after_sequence,
        )
        .order_by(ConsultationMessage.sequence.asc())
        .limit(limit + 1)
    ).scalars().all()

    return list(rows[:limit]), len(rows) > limit


def session_timing(db: Session, appointment_id: int, now: datetime | None = None) -> SessionTiming:
    now = now or datetime.now()
    appointment = load_appointment(db, appointment_id)
    paid_duration_seconds = appointment.duration_minutes * 60

    if appointment.started_at is None:
        return SessionTiming(
            started_at=None,
            ended_at=None,
            elapsed_seconds=0,
            paid_duration_seconds=paid_duration_seconds,
            exceeds_paid_duration=False,
            overrun_seconds=0,
        )

    until = appointment.ended_at or now
    elapsed_seconds = max(0, int((until - appointment.started_at).total_seconds()))
    overrun_seconds = max(0, elapsed_seconds - paid_duration_seconds)

    if overrun_seconds and appointment.status == IN_PROGRESS:
        logger.info('Appointment %s running %ss past its paid duration', appointment_id, overrun_seconds)

    return SessionTiming(
        started_at=appointment.started_at,
        ended_at=appointment.ended_at,
        elapsed_seconds=elapsed_seconds,
        paid_duration_seconds=paid_duration_seconds,
        exceeds_paid_duration=overrun_seconds > 0,
        overrun_seconds=overrun_seconds,
    )
