"""
Slot ledger: per-resource, per-day record of held and committed intervals.

Every mutation for a (resource_key, date) pair runs inside that pair's
lock and commits before the lock is released, so two overlapping holds
can never both be written.
"""
import logging
import uuid
from datetime import timedelta

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from models import db
from models.slot_hold import SlotHold, HoldState
from services.errors import Conflict, NotFound
from services.locks import locks
from utils.clock import utcnow

logger = logging.getLogger(__name__)


def overlaps(a, b, c, d) -> bool:
    """[a, b) and [c, d) share at least one instant."""
    return a < d and c < b


def _day_key(resource_key: str, day) -> str:
    return f"slot:{resource_key}:{day.isoformat()}"


def _live_filter(now):
    return or_(
        SlotHold.state == HoldState.COMMITTED,
        SlotHold.expires_at > now,
    )


def try_hold(resource_key: str, day, start, end, hold_for: timedelta, now=None) -> str:
    """
    Claim [start, end) on `day` for `resource_key`; returns the hold token.

    Overlapping HELD entries that have already expired are deleted here,
    under the same lock, rather than waiting for the sweeper. The table
    therefore never holds two overlapping rows for one resource and day.
    """
    now = now or utcnow()

    with locks.acquire(_day_key(resource_key, day)):
        reaped = (
            SlotHold.query
            .filter(
                SlotHold.resource_key == resource_key,
                SlotHold.date == day,
                SlotHold.start_time < end,
                SlotHold.end_time > start,
                SlotHold.state == HoldState.HELD,
                SlotHold.expires_at <= now,
            )
            .delete(synchronize_session=False)
        )
        if reaped:
            logger.info("Reaped %d expired holds on %s %s", reaped, resource_key, day)

        clash = (
            SlotHold.query
            .filter(
                SlotHold.resource_key == resource_key,
                SlotHold.date == day,
                SlotHold.start_time < end,
                SlotHold.end_time > start,
                _live_filter(now),
            )
            .first()
        )
        if clash:
            db.session.commit()
            logger.info("Hold conflict on %s %s %s-%s", resource_key, day, start, end)
            raise Conflict(f"Selected time slot is already booked for {resource_key}")

        token = uuid.uuid4().hex
        hold = SlotHold(
            token=token,
            resource_key=resource_key,
            date=day,
            start_time=start,
            end_time=end,
            state=HoldState.HELD,
            expires_at=now + hold_for,
        )
        db.session.add(hold)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise Conflict(f"Selected time slot is already booked for {resource_key}")

        return token


def hold_all(resource_keys, day, start, end, hold_for: timedelta, now=None) -> list:
    """
    Hold the same interval on every resource, or on none of them.

    Holds are taken one after another; when a later hold fails the earlier
    ones are released before the error propagates.
    """
    tokens = []
    try:
        for key in resource_keys:
            tokens.append(try_hold(key, day, start, end, hold_for, now=now))
    except Exception:
        for token in tokens:
            release(token)
        raise
    return tokens


def _get(token: str):
    return SlotHold.query.filter_by(token=token).first()


def commit(token: str, now=None) -> SlotHold:
    now = now or utcnow()
    hold = _get(token)
    if not hold:
        raise NotFound("Hold not found")

    with locks.acquire(_day_key(hold.resource_key, hold.date)):
        db.session.refresh(hold)
        if hold.state == HoldState.COMMITTED:
            return hold
        if hold.expires_at is None or hold.expires_at <= now:
            raise NotFound("Hold has expired")

        hold.state = HoldState.COMMITTED
        hold.expires_at = None
        db.session.commit()
        return hold


def release(token: str) -> bool:
    hold = _get(token)
    if not hold:
        return False

    with locks.acquire(_day_key(hold.resource_key, hold.date)):
        deleted = SlotHold.query.filter_by(token=token).delete()
        db.session.commit()
        return deleted > 0


def attach(tokens, booking_id: str):
    """Link freshly created holds to their booking (same transaction as the booking)."""
    if not tokens:
        return
    (
        SlotHold.query
        .filter(SlotHold.token.in_(list(tokens)))
        .update({SlotHold.booking_id: booking_id}, synchronize_session=False)
    )


def tokens_for_booking(booking_id: str) -> list:
    rows = SlotHold.query.filter_by(booking_id=booking_id).all()
    return [h.token for h in rows]


def sweep(now=None) -> int:
    """Drop every HELD entry whose expiry has passed."""
    now = now or utcnow()
    stale = (
        SlotHold.query
        .filter(SlotHold.state == HoldState.HELD, SlotHold.expires_at <= now)
        .all()
    )
    removed = 0
    for hold in stale:
        with locks.acquire(_day_key(hold.resource_key, hold.date)):
            removed += (
                SlotHold.query
                .filter(
                    SlotHold.id == hold.id,
                    SlotHold.state == HoldState.HELD,
                    SlotHold.expires_at <= now,
                )
                .delete()
            )
            db.session.commit()
    if removed:
        logger.info("Swept %d expired holds", removed)
    return removed


def day_entries(resource_key: str, day, now=None) -> list:
    now = now or utcnow()
    return (
        SlotHold.query
        .filter(
            SlotHold.resource_key == resource_key,
            SlotHold.date == day,
            _live_filter(now),
        )
        .order_by(SlotHold.start_time.asc())
        .all()
    )
