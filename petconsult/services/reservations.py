"""Slot reservations keyed by (professional, date, window).

Every state change is a conditional UPDATE against the reservation row, so two
writers racing on the same key can never both win. Inside one process, holds
on the same key are additionally serialised by a per-key lock; different keys
never share a lock.
"""

import logging
import uuid
from datetime import date, datetime, timedelta

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from petconsult.core.locks import KeyedLocks
from petconsult.errors import ExpiredHold, SlotUnavailable
from petconsult.models.reservation import (
    RESERVATION_BOOKED,
    RESERVATION_FREE,
    RESERVATION_HELD,
    SlotReservation,
)
from petconsult.schemas import ReservationToken, SlotWindow

logger = logging.getLogger(__name__)

_key_locks = KeyedLocks()


def _key_filter(professional_id: int, slot_date: date, window: SlotWindow):
    return and_(
        SlotReservation.professional_id == professional_id,
        SlotReservation.slot_date == slot_date,
        SlotReservation.start_time == window.start_time,
        SlotReservation.end_time == window.end_time,
    )


def _claimable(now: datetime):
    return or_(
        SlotReservation.status == RESERVATION_FREE,
        and_(SlotReservation.status == RESERVATION_HELD, SlotReservation.hold_expires_at <= now),
    )


def _compare_and_hold(
    db: Session,
    professional_id: int,
    slot_date: date,
    window: SlotWindow,
    holder_id: int,
    hold_token: str,
    expires_at: datetime,
    now: datetime,
) -> bool:
    result = db.execute(
        update(SlotReservation)
        .where(_key_filter(professional_id, slot_date, window), _claimable(now))
        .values(
            status=RESERVATION_HELD,
            holder_id=holder_id,
            hold_token=hold_token,
            hold_expires_at=expires_at,
            appointment_id=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def hold(
    db: Session,
    professional_id: int,
    slot_date: date,
    window: SlotWindow,
    holder_id: int,
    hold_timeout: timedelta,
    now: datetime | None = None,
) -> ReservationToken:
    """Claim a free slot for ``holder_id`` until ``now + hold_timeout``.

    Raises SlotUnavailable when the slot is held or booked by someone else.
    Callers must re-query availability instead of retrying the same slot.
    """
    now = now or datetime.now()
    hold_token = str(uuid.uuid4())
    expires_at = now + hold_timeout
    key = (professional_id, slot_date, window.start_time, window.end_time)

    with _key_locks.hold(key):
        claimed = _compare_and_hold(db, professional_id, slot_date, window, holder_id, hold_token, expires_at, now)

        if not claimed:
            exists = db.execute(
                select(SlotReservation.id).where(_key_filter(professional_id, slot_date, window))
            ).first()
            if exists is not None:
                raise SlotUnavailable('This time slot was just taken. Please choose another slot.')

            db.add(
                SlotReservation(
                    professional_id=professional_id,
                    slot_date=slot_date,
                    start_time=window.start_time,
                    end_time=window.end_time,
                    status=RESERVATION_HELD,
                    holder_id=holder_id,
                    hold_token=hold_token,
                    hold_expires_at=expires_at,
                    updated_at=now,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                # another process inserted the row first; fall back to compare-and-set
                db.rollback()
                if not _compare_and_hold(db, professional_id, slot_date, window, holder_id, hold_token, expires_at, now):
                    raise SlotUnavailable('This time slot was just taken. Please choose another slot.')

    reservation_id = db.execute(
        select(SlotReservation.id).where(SlotReservation.hold_token == hold_token)
    ).scalar_one()

    logger.info(
        'Slot held: professional=%s date=%s window=%s-%s holder=%s expires=%s',
        professional_id,
        slot_date.isoformat(),
        window.start_time.strftime('%H:%M'),
        window.end_time.strftime('%H:%M'),
        holder_id,
        expires_at.isoformat(),
    )

    return ReservationToken(reservation_id=reservation_id, hold_token=hold_token, expires_at=expires_at)


def confirm(
    db: Session,
    token: ReservationToken,
    appointment_id: int,
    now: datetime | None = None,
) -> SlotReservation:
    """Promote a live hold to booked; raises ExpiredHold once the hold lapsed."""
    now = now or datetime.now()

    result = db.execute(
        update(SlotReservation)
        .where(
            SlotReservation.id == token.reservation_id,
            SlotReservation.hold_token == token.hold_token,
            SlotReservation.status == RESERVATION_HELD,
            SlotReservation.hold_expires_at > now,
        )
        .values(
            status=RESERVATION_BOOKED,
            appointment_id=appointment_id,
            hold_expires_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    reservation = db.get(SlotReservation, token.reservation_id)
    if reservation is not None:
        db.refresh(reservation)

    if result.rowcount == 1:
        logger.info('Slot booked: reservation=%s appointment=%s', token.reservation_id, appointment_id)
        return reservation

    if (
        reservation is not None
        and reservation.status == RESERVATION_BOOKED
        and reservation.hold_token == token.hold_token
    ):
        return reservation

    raise ExpiredHold('The reservation hold expired before payment completed.')


def release(db: Session, token: ReservationToken, now: datetime | None = None) -> bool:
    """Return a held or booked slot to free.

    Only the reservation still carrying ``token`` is released, so a stale
    token can never free a slot that has since been claimed by someone else.
    """
    now = now or datetime.now()

    result = db.execute(
        update(SlotReservation)
        .where(
            SlotReservation.id == token.reservation_id,
            SlotReservation.hold_token == token.hold_token,
            SlotReservation.status.in_((RESERVATION_HELD, RESERVATION_BOOKED)),
        )
        .values(
            status=RESERVATION_FREE,
            holder_id=None,
            hold_token=None,
            hold_expires_at=None,
            appointment_id=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    released = result.rowcount == 1
    if released:
        logger.info('Slot released: reservation=%s', token.reservation_id)
    return released


def expire_holds(db: Session, now: datetime | None = None) -> list[str]:
    """Flip every lapsed hold back to free and return the freed hold tokens."""
    now = now or datetime.now()

    expired = db.execute(
        select(SlotReservation.id, SlotReservation.hold_token).where(
            SlotReservation.status == RESERVATION_HELD,
            SlotReservation.hold_expires_at <= now,
        )
    ).all()

    freed: list[str] = []
    for reservation_id, hold_token in expired:
        if release(db, ReservationToken(reservation_id=reservation_id, hold_token=hold_token), now=now):
            freed.append(hold_token)

    if freed:
        logger.info('Expired %d reservation hold(s)', len(freed))

    return freed


def occupied_windows(
    db: Session,
    professional_id: int,
    from_date: date,
    to_date: date,
    now: datetime | None = None,
) -> set[tuple[date, SlotWindow]]:
    now = now or datetime.now()

    rows = db.execute(
        select(SlotReservation.slot_date, SlotReservation.start_time, SlotReservation.end_time).where(
            SlotReservation.professional_id == professional_id,
            SlotReservation.slot_date >= from_date,
            SlotReservation.slot_date <= to_date,
            or_(
                SlotReservation.status == RESERVATION_BOOKED,
                and_(SlotReservation.status == RESERVATION_HELD, SlotReservation.hold_expires_at > now),
            ),
        )
    ).all()

    return {(slot_date, SlotWindow(start_time, end_time)) for slot_date, start_time, end_time in rows}


def reservation_status(
    db: Session,
    professional_id: int,
    slot_date: date,
    window: SlotWindow,
    now: datetime | None = None,
) -> str:
    """Effective status of one slot; a lapsed hold already reads as free."""
    now = now or datetime.now()

    reservation = db.execute(
        select(SlotReservation)
        .where(_key_filter(professional_id, slot_date, window))
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()

    if reservation is None:
        return RESERVATION_FREE
    if reservation.status == RESERVATION_HELD and reservation.hold_expires_at <= now:
        return RESERVATION_FREE
    return reservation.status
