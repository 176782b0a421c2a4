import time as time_module
from datetime import date, datetime, time, timedelta
from decimal import Decimal

import pytest

from petconsult.errors import (
    CancellationDenied,
    ExpiredHold,
    Forbidden,
    InvalidTransition,
    PaymentFailed,
    SlotUnavailable,
    ValidationError,
)
from petconsult.models.reservation import RESERVATION_BOOKED, RESERVATION_FREE
from petconsult.schemas import ClosingNotes, MessagePayload, PaymentCheckout, SlotWindow
from petconsult.services import appointments, reservations, sessions
from petconsult.services.payments import MockPaymentGateway
from petconsult.services.slot_resolver import list_available_slots

MONDAY = date(2030, 1, 7)
NOW = datetime(2030, 1, 6, 12, 0)
NINE = SlotWindow(time(9, 0), time(9, 30))
NINE_THIRTY = SlotWindow(time(9, 30), time(10, 0))
SLOT_START = datetime(2030, 1, 7, 9, 0)


class SlowGateway:
    def __init__(self, delay: float):
        self.delay = delay

    def initiate(self, amount, currency, appointment_id):
        time_module.sleep(self.delay)
        return PaymentCheckout(checkout_reference='too_late')

    def request_refund(self, appointment_id, external_reference, amount):
        raise AssertionError('no refund expected')


class BrokenGateway:
    def initiate(self, amount, currency, appointment_id):
        raise RuntimeError('provider down')

    def request_refund(self, appointment_id, external_reference, amount):
        raise AssertionError('no refund expected')


@pytest.fixture
def gateway() -> MockPaymentGateway:
    return MockPaymentGateway()


@pytest.fixture
def book(db, professional, client_user, pet, gateway):
    def _book(window: SlotWindow = NINE, client=None, now: datetime = NOW):
        appointment, _ = appointments.create_appointment(
            db,
            client or client_user,
            professional.id,
            pet,
            MONDAY,
            window,
            'video',
            'Limping on the front left leg',
            gateway=gateway,
            now=now,
        )
        return appointment

    return _book


@pytest.fixture
def confirmed(db, book, gateway):
    appointment = book()
    return appointments.on_payment_succeeded(db, appointment.id, external_reference='pi_1', gateway=gateway, now=NOW)


@pytest.fixture
def in_progress(db, confirmed, client_user):
    return appointments.start_session(db, confirmed.id, client_user, now=SLOT_START)


def _monday_windows(db, professional_id: int, now: datetime):
    return next(iter(list_available_slots(db, professional_id, MONDAY, horizon_days=1, now=now))).windows


def test_create_appointment_holds_slot_and_awaits_payment(db, professional, book) -> None:
    appointment = book()

    assert appointment.status == appointments.PENDING_PAYMENT
    assert appointment.payment_status == 'processing'
    assert appointment.payment_amount == Decimal('45.00')
    assert appointment.payment_checkout_reference.startswith('mock_cs_')
    assert appointment.hold_expires_at == NOW + timedelta(minutes=15)
    assert appointment.appointment_code.startswith('APT-')
    assert _monday_windows(db, professional.id, NOW) == (NINE_THIRTY,)


def test_create_appointment_rejects_unsupported_consultation_type(db, professional, client_user, pet) -> None:
    with pytest.raises(ValidationError):
        appointments.create_appointment(
            db, client_user, professional.id, pet, MONDAY, NINE, 'audio', 'Check-up', gateway=MockPaymentGateway(), now=NOW
        )


def test_create_appointment_rejects_window_not_in_template(db, professional, client_user, pet) -> None:
    with pytest.raises(ValidationError):
        appointments.create_appointment(
            db,
            client_user,
            professional.id,
            pet,
            MONDAY,
            SlotWindow(time(9, 15), time(9, 45)),
            'video',
            'Check-up',
            gateway=MockPaymentGateway(),
            now=NOW,
        )


def test_create_appointment_rejects_past_slot(db, professional, client_user, pet) -> None:
    with pytest.raises(ValidationError):
        appointments.create_appointment(
            db, client_user, professional.id, pet, MONDAY, NINE, 'video', 'Check-up', gateway=MockPaymentGateway(), now=SLOT_START
        )


def test_two_clients_racing_for_nine_oclock(db, professional, book, other_client, gateway) -> None:
    first = book()

    assert _monday_windows(db, professional.id, NOW) == (NINE_THIRTY,)
    with pytest.raises(SlotUnavailable):
        book(client=other_client)

    confirmed = appointments.on_payment_succeeded(db, first.id, external_reference='pi_a', gateway=gateway, now=NOW)

    assert confirmed.status == appointments.CONFIRMED
    assert _monday_windows(db, professional.id, NOW + timedelta(hours=1)) == (NINE_THIRTY,)

    second = book(window=NINE_THIRTY, client=other_client)
    assert second.status == appointments.PENDING_PAYMENT


def test_payment_success_is_idempotent(db, book, gateway) -> None:
    appointment = book()

    first = appointments.on_payment_succeeded(db, appointment.id, external_reference='pi_1', gateway=gateway, now=NOW)
    confirmed_at = first.confirmed_at
    second = appointments.on_payment_succeeded(
        db, appointment.id, external_reference='pi_1', gateway=gateway, now=NOW + timedelta(minutes=5)
    )

    assert second.status == appointments.CONFIRMED
    assert second.confirmed_at == confirmed_at
    assert second.payment_status == 'completed'
    assert reservations.reservation_status(db, appointment.professional_id, MONDAY, NINE, now=NOW) == RESERVATION_BOOKED


def test_payment_after_hold_expired_cancels_and_requests_refund(db, professional, book, other_client, gateway) -> None:
    appointment = book()
    late = NOW + timedelta(minutes=16)

    with pytest.raises(ExpiredHold) as exception_info:
        appointments.on_payment_succeeded(db, appointment.id, external_reference='pi_late', gateway=gateway, now=late)

    stored = appointments.load_appointment(db, appointment.id)
    assert 'hold expired' in exception_info.value.message
    assert stored.status == appointments.CANCELLED
    assert stored.cancellation_reason == 'hold_expired'
    assert stored.refund_status == 'requested'
    assert gateway.refund_requests == [
        {'appointment_id': appointment.id, 'external_reference': 'pi_late', 'amount': Decimal('45.00')}
    ]
    assert NINE in _monday_windows(db, professional.id, late)


def test_payment_after_reaper_cancelled_requests_refund_once(db, book, gateway) -> None:
    appointment = book()
    late = NOW + timedelta(minutes=20)

    assert appointments.expire_pending_payments(db, now=late) == [appointment.id]

    for _ in range(2):
        with pytest.raises(ExpiredHold):
            appointments.on_payment_succeeded(db, appointment.id, external_reference='pi_late', gateway=gateway, now=late)

    assert len(gateway.refund_requests) == 1


def test_payment_after_client_cancelled_reports_cancellation(db, book, client_user, gateway) -> None:
    appointment = book()
    appointments.cancel_appointment(db, appointment.id, client_user, reason='Vet visit booked instead', now=NOW)

    with pytest.raises(ExpiredHold) as exception_info:
        appointments.on_payment_succeeded(db, appointment.id, external_reference='pi_after_cancel', gateway=gateway, now=NOW)

    assert exception_info.value.message == (
        'The appointment was cancelled before payment completed. A refund has been requested.'
    )
    assert appointments.load_appointment(db, appointment.id).refund_status == 'requested'
    assert len(gateway.refund_requests) == 1


def test_payment_failure_cancels_and_frees_slot(db, professional, book) -> None:
    appointment = book()

    cancelled = appointments.on_payment_failed(db, appointment.id, now=NOW)
    repeated = appointments.on_payment_failed(db, appointment.id, now=NOW)

    assert cancelled.status == appointments.CANCELLED
    assert repeated.status == appointments.CANCELLED
    assert cancelled.payment_status == 'failed'
    assert _monday_windows(db, professional.id, NOW) == (NINE, NINE_THIRTY)


def test_payment_failure_after_confirmation_is_rejected(db, confirmed) -> None:
    with pytest.raises(InvalidTransition):
        appointments.on_payment_failed(db, confirmed.id, now=NOW)


def test_payment_initiation_timeout_leaves_no_reservation(db, professional, client_user, pet, monkeypatch) -> None:
    monkeypatch.setattr('petconsult.core.config.PAYMENT_TIMEOUT_SECONDS', 0.05)

    with pytest.raises(PaymentFailed) as exception_info:
        appointments.create_appointment(
            db, client_user, professional.id, pet, MONDAY, NINE, 'video', 'Check-up', gateway=SlowGateway(0.5), now=NOW
        )

    assert 'No slot is reserved' in exception_info.value.message
    assert reservations.reservation_status(db, professional.id, MONDAY, NINE, now=NOW) == RESERVATION_FREE
    items, total = appointments.list_appointments(db, client_user, status=appointments.CANCELLED, now=NOW)
    assert total == 1
    assert items[0].cancellation_reason == 'payment_initiation_failed'


def test_payment_initiation_error_is_reported_as_payment_failed(db, professional, client_user, pet) -> None:
    with pytest.raises(PaymentFailed):
        appointments.create_appointment(
            db, client_user, professional.id, pet, MONDAY, NINE, 'video', 'Check-up', gateway=BrokenGateway(), now=NOW
        )

    assert reservations.reservation_status(db, professional.id, MONDAY, NINE, now=NOW) == RESERVATION_FREE


def test_expire_pending_payments_skips_live_holds(db, book) -> None:
    appointment = book()

    assert appointments.expire_pending_payments(db, now=NOW + timedelta(minutes=5)) == []
    assert appointments.load_appointment(db, appointment.id).status == appointments.PENDING_PAYMENT


def test_client_cannot_cancel_inside_lead_time(db, confirmed, client_user) -> None:
    with pytest.raises(CancellationDenied):
        appointments.cancel_appointment(db, confirmed.id, client_user, now=SLOT_START - timedelta(hours=1))


def test_late_cancellation_partial_refund_policy(db, confirmed, client_user, monkeypatch) -> None:
    monkeypatch.setattr('petconsult.core.config.LATE_CANCELLATION_POLICY', 'partial_refund')

    cancelled = appointments.cancel_appointment(db, confirmed.id, client_user, now=SLOT_START - timedelta(hours=1))

    assert cancelled.status == appointments.CANCELLED
    assert cancelled.refund_status == 'partial'


def test_professional_can_cancel_late_and_slot_is_freed(db, professional, confirmed, professional_user) -> None:
    cancelled = appointments.cancel_appointment(
        db, confirmed.id, professional_user, reason='Emergency surgery', now=SLOT_START - timedelta(minutes=30)
    )

    assert cancelled.cancelled_by == appointments.ROLE_PROFESSIONAL
    assert cancelled.cancellation_reason == 'Emergency surgery'
    assert cancelled.refund_status == 'pending'
    assert NINE in _monday_windows(db, professional.id, SLOT_START - timedelta(minutes=30))


def test_outsider_cannot_cancel(db, confirmed, other_client) -> None:
    with pytest.raises(Forbidden):
        appointments.cancel_appointment(db, confirmed.id, other_client, now=NOW)


def test_start_session_respects_grace_window(db, confirmed, client_user) -> None:
    with pytest.raises(InvalidTransition):
        appointments.start_session(db, confirmed.id, client_user, now=SLOT_START - timedelta(minutes=11))

    started = appointments.start_session(db, confirmed.id, client_user, now=SLOT_START - timedelta(minutes=10))

    assert started.status == appointments.IN_PROGRESS
    assert started.started_at == SLOT_START - timedelta(minutes=10)


def test_unpaid_appointment_cannot_start(db, book, client_user) -> None:
    appointment = book()

    with pytest.raises(InvalidTransition):
        appointments.start_session(db, appointment.id, client_user, now=SLOT_START)


def test_end_session_writes_record_and_flags_overrun(db, in_progress, professional_user, client_user) -> None:
    with pytest.raises(Forbidden):
        appointments.end_session(db, in_progress.id, client_user, ClosingNotes(), now=SLOT_START + timedelta(minutes=40))

    record = appointments.end_session(
        db,
        in_progress.id,
        professional_user,
        ClosingNotes(diagnosis='Mild sprain', follow_up_needed=True),
        now=SLOT_START + timedelta(minutes=40),
    )

    stored = appointments.load_appointment(db, in_progress.id)
    assert record.actual_duration_seconds == 40 * 60
    assert record.diagnosis == 'Mild sprain'
    assert stored.status == appointments.COMPLETED
    assert stored.exceeded_paid_duration is True


def test_completed_appointment_cannot_move_again(db, in_progress, professional_user, client_user) -> None:
    appointments.end_session(db, in_progress.id, professional_user, ClosingNotes(), now=SLOT_START + timedelta(minutes=20))

    with pytest.raises(InvalidTransition):
        appointments.cancel_appointment(db, in_progress.id, client_user, now=SLOT_START + timedelta(minutes=21))
    with pytest.raises(InvalidTransition):
        appointments.start_session(db, in_progress.id, client_user, now=SLOT_START + timedelta(minutes=21))


def test_cancelled_appointment_cannot_move_again(db, book, client_user, professional_user) -> None:
    appointment = book()
    appointments.on_payment_failed(db, appointment.id, now=NOW)
    later = SLOT_START + timedelta(minutes=15)

    with pytest.raises(InvalidTransition):
        appointments.cancel_appointment(db, appointment.id, client_user, now=NOW)
    with pytest.raises(InvalidTransition):
        appointments.start_session(db, appointment.id, client_user, now=SLOT_START)
    with pytest.raises(InvalidTransition):
        appointments.end_session(db, appointment.id, professional_user, ClosingNotes(), now=later)
    with pytest.raises(InvalidTransition):
        appointments.mark_no_show(db, appointment.id, professional_user, now=later)
    with pytest.raises(InvalidTransition):
        appointments.interrupt_session(db, appointment.id, client_user, now=later)

    assert appointments.load_appointment(db, appointment.id).status == appointments.CANCELLED


def test_no_show_requires_grace_and_silent_client(db, in_progress, professional_user) -> None:
    with pytest.raises(InvalidTransition):
        appointments.mark_no_show(db, in_progress.id, professional_user, now=SLOT_START + timedelta(minutes=5))

    marked = appointments.mark_no_show(db, in_progress.id, professional_user, now=SLOT_START + timedelta(minutes=15))

    assert marked.status == appointments.NO_SHOW
    assert reservations.reservation_status(db, marked.professional_id, MONDAY, NINE, now=NOW) == RESERVATION_BOOKED


def test_no_show_rejected_once_client_has_spoken(db, in_progress, professional_user) -> None:
    sessions.post_message(
        db,
        in_progress.id,
        appointments.ROLE_CLIENT,
        MessagePayload(body='Sorry, connecting now'),
        transport=None,
        now=SLOT_START + timedelta(minutes=2),
    )

    with pytest.raises(InvalidTransition):
        appointments.mark_no_show(db, in_progress.id, professional_user, now=SLOT_START + timedelta(minutes=20))


def test_interrupted_session_is_cancelled_and_slot_released(db, professional, in_progress, client_user) -> None:
    interrupted = appointments.interrupt_session(
        db, in_progress.id, client_user, reason='Connection lost', now=SLOT_START + timedelta(minutes=3)
    )

    assert interrupted.status == appointments.CANCELLED
    assert interrupted.refund_status == 'pending'
    assert reservations.reservation_status(db, professional.id, MONDAY, NINE, now=NOW) == RESERVATION_FREE


def test_list_appointments_scopes_by_role(db, book, client_user, other_client, professional_user, admin_user) -> None:
    book()
    book(window=NINE_THIRTY, client=other_client)

    assert appointments.list_appointments(db, client_user, now=NOW)[1] == 1
    assert appointments.list_appointments(db, professional_user, now=NOW)[1] == 2
    assert appointments.list_appointments(db, admin_user, now=NOW)[1] == 2
    upcoming, total = appointments.list_appointments(db, professional_user, upcoming=True, now=NOW)
    assert total == 2
    assert [item.start_time for item in upcoming] == [time(9, 0), time(9, 30)]


def test_computed_flags(db, confirmed, professional) -> None:
    assert appointments.time_until_start(confirmed, SLOT_START - timedelta(hours=26)) == '1d 2h'
    assert appointments.time_until_start(confirmed, SLOT_START - timedelta(minutes=45)) == '45m'
    assert appointments.time_until_start(confirmed, SLOT_START + timedelta(minutes=1)) == 'Past'
    assert appointments.can_cancel(confirmed, professional, SLOT_START - timedelta(hours=3)) is True
    assert appointments.can_cancel(confirmed, professional, SLOT_START - timedelta(hours=1)) is False
    assert appointments.can_join(confirmed, SLOT_START - timedelta(minutes=5)) is True
    assert appointments.can_join(confirmed, SLOT_START - timedelta(minutes=30)) is False


def test_professional_stats(db, professional, in_progress, professional_user) -> None:
    appointments.end_session(
        db,
        in_progress.id,
        professional_user,
        ClosingNotes(follow_up_needed=True),
        now=SLOT_START + timedelta(minutes=25),
    )

    stats = appointments.professional_stats(db, professional.id)

    assert stats['total_appointments'] == 1
    assert stats['completed_appointments'] == 1
    assert stats['total_clients'] == 1
    assert stats['total_earnings'] == Decimal('45.00')
    assert stats['follow_up_rate'] == 100.0
