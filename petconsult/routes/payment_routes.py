import asyncio
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from petconsult.auth.dependencies import get_db
from petconsult.core import config
from petconsult.errors import ExpiredHold, InvalidTransition, NotFound, SchedulingError, to_http_exception
from petconsult.routes.availability_routes import ensure_database_ready
from petconsult.services import appointments
from petconsult.services.payments import PaymentGateway, StripeCheckoutGateway, get_payment_gateway

router = APIRouter(tags=['payments'])

logger = logging.getLogger(__name__)

SUCCEEDED_EVENTS = {'checkout.session.completed', 'checkout.session.async_payment_succeeded'}
FAILED_EVENTS = {'checkout.session.async_payment_failed', 'checkout.session.expired'}


def event_appointment_id(session: dict) -> int | None:
    metadata = session.get('metadata') or {}
    raw = metadata.get('appointment_id') or session.get('client_reference_id')
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def dispatch_payment_event(db: Session, event: dict, gateway: PaymentGateway) -> dict:
    """Apply one provider event to its appointment.

    Late or repeated notifications are acknowledged so the provider stops
    retrying; the appointment state already reflects them.
    """
    event_type = event.get('type')
    session = (event.get('data') or {}).get('object') or {}

    if event_type not in SUCCEEDED_EVENTS and event_type not in FAILED_EVENTS:
        return {'received': True, 'handled': False}

    appointment_id = event_appointment_id(session)
    if appointment_id is None:
        logger.warning('Payment event %s without an appointment id', event.get('id'))
        return {'received': True, 'handled': False}

    try:
        if event_type in SUCCEEDED_EVENTS:
            if session.get('payment_status') not in (None, 'paid', 'no_payment_required'):
                return {'received': True, 'handled': False}
            appointment = appointments.on_payment_succeeded(
                db,
                appointment_id,
                external_reference=session.get('payment_intent'),
                gateway=gateway,
            )
        else:
            appointment = appointments.on_payment_failed(db, appointment_id, reason='payment_failed')
    except ExpiredHold as exc:
        return {'received': True, 'handled': True, 'appointment_id': appointment_id, 'detail': exc.message}
    except (InvalidTransition, NotFound) as exc:
        logger.warning('Payment event %s for appointment %s ignored: %s', event_type, appointment_id, exc.message)
        return {'received': True, 'handled': False, 'appointment_id': appointment_id, 'detail': exc.message}

    return {'received': True, 'handled': True, 'appointment_id': appointment_id, 'status': appointment.status}


@router.post('/webhook')
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    if not isinstance(gateway, StripeCheckoutGateway):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Webhook not enabled for this provider.')

    payload = await request.body()
    signature = request.headers.get('stripe-signature', '')

    try:
        event = gateway.parse_webhook(payload, signature)
    except (ValueError, stripe.SignatureVerificationError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid webhook signature.') from exc

    await asyncio.to_thread(ensure_database_ready)
    try:
        return await asyncio.to_thread(dispatch_payment_event, db, event, gateway)
    except SQLAlchemyError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail='Database unavailable. Verify DATABASE_URL and database credentials.',
        ) from exc


def ensure_mock_provider() -> None:
    if config.PAYMENT_PROVIDER != 'mock':
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Mock payments are disabled.')


@router.post('/mock/{appointment_id}/succeeded')
def mock_payment_succeeded(
    appointment_id: int,
    reference: str | None = None,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    ensure_mock_provider()
    ensure_database_ready()

    try:
        appointment = appointments.on_payment_succeeded(
            db,
            appointment_id,
            external_reference=reference or f'mock_pi_{appointment_id}',
            gateway=gateway,
        )
        return {'appointment_id': appointment.id, 'status': appointment.status}
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.post('/mock/{appointment_id}/failed')
def mock_payment_failed(appointment_id: int, db: Session = Depends(get_db)):
    ensure_mock_provider()
    ensure_database_ready()

    try:
        appointment = appointments.on_payment_failed(db, appointment_id, reason='payment_failed')
        return {'appointment_id': appointment.id, 'status': appointment.status}
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
