import asyncio
import logging

from petconsult.core import config
from petconsult.database import SessionLocal
from petconsult.services.appointments import expire_pending_payments

log = logging.getLogger('reservation.reaper')


def reap_expired_holds() -> list[int]:
    db = SessionLocal()
    try:
        return expire_pending_payments(db)
    finally:
        db.close()


async def run_hold_reaper(poll_interval_seconds: float | None = None):
    interval = poll_interval_seconds or config.HOLD_REAPER_INTERVAL_SECONDS
    log.info('Hold reaper started, interval=%ss', interval)
    try:
        while True:
            try:
                expired = await asyncio.to_thread(reap_expired_holds)
                if expired:
                    log.info('Cancelled %d appointment(s) whose payment never arrived: %s', len(expired), expired)
            except Exception:
                log.exception('Hold reaper iteration failed')
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        log.info('Hold reaper cancelled; shutting down')
        raise
