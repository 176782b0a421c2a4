import asyncio
from datetime import time, timedelta

import pytest

from petconsult.schemas import SlotWindow
from petconsult.services import appointments, reaper
from petconsult.services.payments import MockPaymentGateway


def test_reap_expired_holds_uses_fresh_session(session_factory, monkeypatch: pytest.MonkeyPatch) -> None:
    calls = []
    monkeypatch.setattr(reaper, 'SessionLocal', session_factory)
    monkeypatch.setattr(reaper, 'expire_pending_payments', lambda db: calls.append(db) or [3])

    assert reaper.reap_expired_holds() == [3]
    assert len(calls) == 1


def test_reaper_cancels_unpaid_appointment(
    db, session_factory, professional, client_user, pet, upcoming_monday, monkeypatch: pytest.MonkeyPatch
) -> None:
    appointment, _ = appointments.create_appointment(
        db,
        client_user,
        professional.id,
        pet,
        upcoming_monday,
        SlotWindow(time(9, 0), time(9, 30)),
        'video',
        'Coughing at night',
        gateway=MockPaymentGateway(),
        hold_timeout=timedelta(milliseconds=1),
    )
    monkeypatch.setattr(reaper, 'SessionLocal', session_factory)

    assert reaper.reap_expired_holds() == [appointment.id]
    assert appointments.load_appointment(db, appointment.id).status == appointments.CANCELLED


def test_run_hold_reaper_stops_on_cancel(monkeypatch: pytest.MonkeyPatch) -> None:
    iterations = []
    monkeypatch.setattr(reaper, 'reap_expired_holds', lambda: iterations.append(1) or [])

    async def run_briefly():
        task = asyncio.create_task(reaper.run_hold_reaper(poll_interval_seconds=0.01))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run_briefly())

    assert iterations


def test_run_hold_reaper_survives_failed_iteration(monkeypatch: pytest.MonkeyPatch) -> None:
    iterations = []

    def flaky_reap():
        iterations.append(1)
        if len(iterations) == 1:
            raise RuntimeError('transient')
        return []

    monkeypatch.setattr(reaper, 'reap_expired_holds', flaky_reap)

    async def run_briefly():
        task = asyncio.create_task(reaper.run_hold_reaper(poll_interval_seconds=0.01))
        await asyncio.sleep(0.2)
        assert not task.done()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run_briefly())

    assert len(iterations) > 1
