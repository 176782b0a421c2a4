"""Payment collaborator adapters.

The core only needs two calls: start a checkout for an appointment and signal
that a captured payment must be refunded. Success and failure come back later
through the webhook, keyed by appointment id, and may be delayed or repeated.
"""

import json
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from decimal import Decimal
from typing import Protocol, runtime_checkable

import stripe

from petconsult.core import config
from petconsult.errors import PaymentFailed
from petconsult.schemas import PaymentCheckout

logger = logging.getLogger(__name__)

_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix='payment-gateway')


@runtime_checkable
class PaymentGateway(Protocol):
    def initiate(self, amount: Decimal, currency: str, appointment_id: int) -> PaymentCheckout: ...

    def request_refund(self, appointment_id: int, external_reference: str | None, amount: Decimal) -> None: ...


class MockPaymentGateway:
    """Local gateway; payments are settled through the mock callback routes."""

    def __init__(self) -> None:
        self.refund_requests: list[dict] = []

    def initiate(self, amount: Decimal, currency: str, appointment_id: int) -> PaymentCheckout:
        reference = f'mock_cs_{uuid.uuid4().hex}'
        logger.info('[MOCK PAYMENT] checkout=%s appointment=%s amount=%s %s', reference, appointment_id, amount, currency)
        return PaymentCheckout(
            checkout_reference=reference,
            url=f'{config.PUBLIC_BASE_URL}/appointments/payment/mock?appointment_id={appointment_id}',
        )

    def request_refund(self, appointment_id: int, external_reference: str | None, amount: Decimal) -> None:
        logger.info('[MOCK PAYMENT] refund requested appointment=%s reference=%s', appointment_id, external_reference)
        self.refund_requests.append(
            {'appointment_id': appointment_id, 'external_reference': external_reference, 'amount': amount}
        )


class StripeCheckoutGateway:
    def __init__(self, api_key: str | None = None, webhook_secret: str | None = None):
        self.api_key = api_key or config.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or config.STRIPE_WEBHOOK_SECRET
        if not self.api_key:
            raise RuntimeError('STRIPE_SECRET_KEY not configured')
        stripe.api_key = self.api_key

    def initiate(self, amount: Decimal, currency: str, appointment_id: int) -> PaymentCheckout:
        session = stripe.checkout.Session.create(
            payment_method_types=['card'],
            line_items=[
                {
                    'price_data': {
                        'currency': currency.lower(),
                        'product_data': {'name': f'Pet consultation #{appointment_id}'},
                        'unit_amount': int((Decimal(amount) * 100).to_integral_value()),
                    },
                    'quantity': 1,
                }
            ],
            mode='payment',
            client_reference_id=str(appointment_id),
            success_url=f'{config.PUBLIC_BASE_URL}/appointments/payment/success?appointment_id={appointment_id}',
            cancel_url=f'{config.PUBLIC_BASE_URL}/appointments/payment/cancel?appointment_id={appointment_id}',
            metadata={'appointment_id': str(appointment_id)},
        )
        return PaymentCheckout(checkout_reference=session.id, url=session.url)

    def request_refund(self, appointment_id: int, external_reference: str | None, amount: Decimal) -> None:
        if not external_reference:
            logger.warning('Refund for appointment %s has no payment reference; flagged only', appointment_id)
            return
        stripe.Refund.create(
            payment_intent=external_reference,
            metadata={'appointment_id': str(appointment_id), 'reason': 'hold_expired'},
        )

    def parse_webhook(self, payload: bytes, signature: str) -> dict:
        """Verify the Stripe signature and return the decoded event."""
        stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        return json.loads(payload)


_gateway: PaymentGateway | None = None


def get_payment_gateway() -> PaymentGateway:
    global _gateway

    if _gateway is None:
        if config.PAYMENT_PROVIDER == 'stripe':
            _gateway = StripeCheckoutGateway()
        else:
            _gateway = MockPaymentGateway()
    return _gateway


def initiate_with_timeout(
    gateway: PaymentGateway,
    amount: Decimal,
    currency: str,
    appointment_id: int,
    timeout_seconds: float | None = None,
) -> PaymentCheckout:
    """Call ``gateway.initiate`` bounded by an explicit timeout.

    A timeout and a gateway error are both reported as PaymentFailed.
    """
    timeout_seconds = config.PAYMENT_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
    future = _executor.submit(gateway.initiate, amount, currency, appointment_id)

    try:
        return future.result(timeout=timeout_seconds)
    except FuturesTimeoutError as exc:
        future.cancel()
        logger.warning('Payment initiation timed out after %ss for appointment %s', timeout_seconds, appointment_id)
        raise PaymentFailed('The payment provider did not respond in time. No slot is reserved.') from exc
    except Exception as exc:
        logger.exception('Payment initiation failed for appointment %s', appointment_id)
        raise PaymentFailed('Payment could not be started. No slot is reserved.') from exc
