"""
Booking lifecycle.

    PENDING_PAYMENT -> CONFIRMED -> IN_PROGRESS -> COMPLETED
    PENDING_PAYMENT -> CANCELLED   (expiry sweep or player cancel)
    CONFIRMED       -> CANCELLED   (player cancel before start)

Every transition runs under the booking's lock and is written as a
conditional update on the expected current status, so when a payment
confirmation and the expiry sweep race, the second one to arrive finds the
status already moved and does nothing.
"""
import logging
import secrets
from datetime import date, datetime, time, timedelta
from typing import NamedTuple

from flask import current_app

from models import db
from models.booking import Booking, BookingStatus
from models.payment import PayeeType
from services import catalog, payment_ledger, promo_engine, slot_ledger
from services.errors import InvalidRequest, InvalidState, NotFound, PromoInvalid
from services.locks import locks
from utils.audit import log_event
from utils.clock import utcnow

logger = logging.getLogger(__name__)


class SweepResult(NamedTuple):
    expired: int
    completed: int
    orphan_holds: int


def parse_date(value) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (TypeError, ValueError):
        raise InvalidRequest("Invalid date. Use YYYY-MM-DD")


def parse_time(value) -> time:
    if isinstance(value, time):
        return value
    try:
        return datetime.strptime(str(value), "%H:%M").time()
    except (TypeError, ValueError):
        raise InvalidRequest("Invalid time. Use HH:MM")


def _minutes(start: time, end: time) -> int:
    return (end.hour * 60 + end.minute) - (start.hour * 60 + start.minute)


def _lock_key(booking_id: str) -> str:
    return f"booking:{booking_id}"


def get_booking(booking_id: str) -> Booking:
    booking = db.session.get(Booking, booking_id) if booking_id else None
    if not booking:
        raise NotFound("Booking not found")
    return booking


def status(booking_id: str) -> str:
    return get_booking(booking_id).status


def _transition(booking_id: str, from_states, extra_filters=(), **values) -> bool:
    """Conditional status update; True only if this caller moved the booking."""
    changed = (
        Booking.query
        .filter(Booking.id == booking_id, Booking.status.in_(list(from_states)), *extra_filters)
        .update(values, synchronize_session=False)
    )
    return changed > 0


def _release_holds(booking_id: str) -> int:
    released = 0
    for token in slot_ledger.tokens_for_booking(booking_id):
        if slot_ledger.release(token):
            released += 1
    return released


def _queue_refunds(booking_id: str, now) -> list:
    queued = []
    for payment in payment_ledger.for_booking(booking_id):
        if payment_ledger.request_refund(payment, now=now):
            queued.append(payment.id)
    return queued


def _new_check_in_code() -> str:
    size = current_app.config.get("CHECK_IN_CODE_BYTES", 4)
    while True:
        code = secrets.token_hex(size).upper()
        if not Booking.query.filter_by(check_in_code=code).first():
            return code


# ---------- creation ----------

def initiate(
    player_id,
    venue_id,
    sport: str,
    day,
    start,
    end,
    coach_id=None,
    dependent_id=None,
    promo_code: str = None,
    now=None,
) -> Booking:
    """
    Hold the slot and open the payment legs for a new booking.

    All validation happens before the first hold; any failure after the
    holds are taken releases them before the error propagates.
    """
    now = now or utcnow()
    day = parse_date(day)
    start = parse_time(start)
    end = parse_time(end)
    sport = (sport or "").strip()

    if not player_id:
        raise InvalidRequest("player_id is required")
    if not venue_id:
        raise InvalidRequest("venue_id is required")
    if not sport:
        raise InvalidRequest("sport is required")
    if end <= start:
        raise InvalidRequest("end_time must be after start_time")
    if datetime.combine(day, start) <= now:
        raise InvalidRequest("Cannot book past/started slots")

    venue = catalog.get_venue(venue_id)
    minutes = _minutes(start, end)
    venue_amount = catalog.charge_for(catalog.venue_rate(venue, sport), minutes)

    coach = None
    coach_amount = 0
    if coach_id:
        coach = catalog.get_coach(coach_id)
        coach_amount = catalog.charge_for(catalog.coach_rate(coach, venue, sport), minutes)

    subtotal = venue_amount + coach_amount
    venue_net, coach_net, discount = venue_amount, coach_amount, 0
    promo = None
    if promo_code:
        result = promo_engine.check(
            promo_code,
            player_id,
            subtotal,
            coach is not None,
            now=now,
            payee_amounts={PayeeType.VENUE: venue_amount, PayeeType.COACH: coach_amount},
        )
        promo = result.promo
        venue_net, coach_net, discount = payment_ledger.apportion(
            venue_amount, coach_amount, result.discount, promo.applicable_to
        )

    resource_keys = [f"venue:{venue.id}"]
    if coach:
        resource_keys.append(f"coach:{coach.id}")
    hold_for = timedelta(minutes=current_app.config.get("HOLD_WINDOW_MINUTES", 10))
    tokens = slot_ledger.hold_all(resource_keys, day, start, end, hold_for, now=now)

    try:
        booking = Booking(
            player_id=str(player_id),
            venue_id=venue.id,
            coach_id=coach.id if coach else None,
            dependent_id=str(dependent_id) if dependent_id else None,
            sport=sport,
            date=day,
            start_time=start,
            end_time=end,
            status=BookingStatus.PENDING_PAYMENT,
            hold_expires_at=now + hold_for,
            subtotal_amount=subtotal,
            discount_amount=discount,
            total_amount=venue_net + coach_net,
            promo_code_id=promo.id if promo else None,
            created_at=now,
        )
        db.session.add(booking)

        charges = [(PayeeType.VENUE, venue.owner_user_id, venue_net)]
        if coach:
            charges.append((PayeeType.COACH, coach.user_id, coach_net))
        payment_ledger.open_payments(booking, charges, currency=current_app.config.get("CURRENCY", "INR"))

        db.session.flush()
        slot_ledger.attach(tokens, booking.id)
        log_event(
            "BOOKING_INITIATE",
            user_id=player_id,
            entity="booking",
            entity_id=booking.id,
            metadata={"venue_id": venue.id, "coach_id": booking.coach_id, "total": booking.total_amount},
            commit=False,
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        for token in tokens:
            slot_ledger.release(token)
        raise

    booking_id = booking.id
    logger.info("Booking %s held until %s", booking_id, booking.hold_expires_at)

    # Legs fully covered by the discount have nothing to collect
    for payment in payment_ledger.for_booking(booking_id):
        if payment.amount == 0:
            settle_payment(payment.id, succeeded=True, now=now)

    return get_booking(booking_id)


# ---------- settlement ----------

def _confirm_if_settled(booking: Booking, now) -> bool:
    if booking.status != BookingStatus.PENDING_PAYMENT:
        return False
    if not payment_ledger.all_paid(booking.id):
        return False
    if booking.hold_expires_at is None or booking.hold_expires_at <= now:
        # Paid too late; the sweep cancels and refunds
        logger.warning("Booking %s fully paid after its hold expired", booking.id)
        return False

    try:
        for token in slot_ledger.tokens_for_booking(booking.id):
            slot_ledger.commit(token, now=now)
    except NotFound:
        logger.warning("Booking %s lost its hold before confirmation", booking.id)
        return False

    booking_id = booking.id
    moved = _transition(
        booking_id,
        [BookingStatus.PENDING_PAYMENT],
        status=BookingStatus.CONFIRMED,
        confirmed_at=now,
        check_in_code=_new_check_in_code(),
    )
    if not moved:
        db.session.rollback()
        return False

    log_event("BOOKING_CONFIRMED", user_id=booking.player_id, entity="booking", entity_id=booking_id, commit=False)
    db.session.commit()
    logger.info("Booking %s confirmed", booking_id)

    booking = get_booking(booking_id)
    if booking.promo_code_id:
        _redeem_promo(booking, now)
    return True


def _redeem_promo(booking: Booking, now):
    promo = promo_engine.get_promo(booking.promo_code_id)
    try:
        promo_engine.redeem(promo.code, booking.player_id, booking.id, booking.discount_amount, now=now)
    except PromoInvalid as exc:
        # The discounted price was already collected; record the overrun
        logger.warning("Promo %s not redeemed for booking %s: %s", promo.code, booking.id, exc.reason)
        log_event(
            "PROMO_REDEEM_OVERFLOW",
            user_id=booking.player_id,
            entity="promo_code",
            entity_id=promo.id,
            metadata={"booking_id": booking.id, "reason": exc.reason},
        )
        return
    log_event(
        "PROMO_REDEEM",
        user_id=booking.player_id,
        entity="promo_code",
        entity_id=promo.id,
        metadata={"booking_id": booking.id, "discount": booking.discount_amount},
    )


def settle_payment(payment_id: int, succeeded: bool, reason: str = None, now=None) -> Booking:
    """
    Payment collaborator callback for one payment leg.

    Success on the last outstanding leg confirms the booking. Failure is
    recorded on the leg only; the booking keeps waiting until its hold
    expires or the leg is retried.
    """
    now = now or utcnow()
    payment = payment_ledger.get(payment_id)
    booking_id = payment.booking_id

    with locks.acquire(_lock_key(booking_id)):
        db.session.refresh(payment)
        booking = get_booking(booking_id)
        db.session.refresh(booking)

        if succeeded:
            if payment_ledger.mark_paid(payment, now=now):
                log_event("PAYMENT_PAID", user_id=None, entity="payment", entity_id=payment.id, metadata={"booking_id": booking_id})
            if booking.status == BookingStatus.CANCELLED:
                payment_ledger.request_refund(payment, now=now)
            else:
                _confirm_if_settled(booking, now)
        else:
            if payment_ledger.mark_failed(payment, reason=reason, now=now):
                log_event(
                    "PAYMENT_FAILED",
                    user_id=None,
                    entity="payment",
                    entity_id=payment.id,
                    metadata={"booking_id": booking_id, "reason": reason},
                )

    return get_booking(booking_id)


def retry_payment(payment_id: int, requester_id, now=None):
    now = now or utcnow()
    payment = payment_ledger.get(payment_id)
    booking = get_booking(payment.booking_id)
    if booking.player_id != str(requester_id):
        raise NotFound("Payment not found")

    with locks.acquire(_lock_key(booking.id)):
        db.session.refresh(booking)
        if booking.status != BookingStatus.PENDING_PAYMENT:
            raise InvalidState("Booking is not awaiting payment")
        if booking.hold_expires_at <= now:
            raise InvalidState("Booking hold has expired")
        payment_ledger.reopen(payment)

    log_event("PAYMENT_RETRY", user_id=requester_id, entity="payment", entity_id=payment.id)
    return payment


def refund_settled(payment_id: int, actor_id=None, now=None):
    payment = payment_ledger.get(payment_id)
    with locks.acquire(_lock_key(payment.booking_id)):
        db.session.refresh(payment)
        changed = payment_ledger.mark_refunded(payment, now=now)
    if changed:
        log_event("PAYMENT_REFUNDED", user_id=actor_id, entity="payment", entity_id=payment.id)
    return payment


# ---------- player / venue actions ----------

def cancel(booking_id: str, requester_id, reason: str = None, now=None, as_admin: bool = False) -> Booking:
    now = now or utcnow()
    booking = get_booking(booking_id)
    if not as_admin and booking.player_id != str(requester_id):
        raise NotFound("Booking not found")

    with locks.acquire(_lock_key(booking.id)):
        db.session.refresh(booking)
        current = booking.status

        if current == BookingStatus.CONFIRMED:
            cutoff = timedelta(hours=current_app.config.get("CANCEL_CUTOFF_HOURS", 0))
            if now >= booking.starts_at - cutoff:
                raise InvalidState("Cancellation is no longer allowed for this booking")
        elif current != BookingStatus.PENDING_PAYMENT:
            raise InvalidState("Booking not cancellable")

        moved = _transition(
            booking.id,
            [current],
            status=BookingStatus.CANCELLED,
            cancelled_at=now,
            cancel_reason=(reason or "Cancelled by player")[:120],
        )
        if not moved:
            db.session.rollback()
            raise InvalidState("Booking changed state, try again")
        db.session.commit()

        _release_holds(booking.id)
        refunds = _queue_refunds(booking.id, now)

    log_event(
        "BOOKING_CANCEL",
        user_id=requester_id,
        entity="booking",
        entity_id=booking.id,
        metadata={"from": current, "reason": reason, "refunds": refunds},
    )
    return get_booking(booking.id)


def check_in(code: str, venue_owner_id=None, now=None) -> Booking:
    now = now or utcnow()
    normalized = (code or "").strip().upper()
    booking = Booking.query.filter_by(check_in_code=normalized).first() if normalized else None
    if not booking:
        raise NotFound("Invalid check-in code")
    if venue_owner_id is not None:
        venue = catalog.get_venue(booking.venue_id)
        if venue.owner_user_id != str(venue_owner_id):
            raise NotFound("Invalid check-in code")

    with locks.acquire(_lock_key(booking.id)):
        db.session.refresh(booking)
        if booking.status != BookingStatus.CONFIRMED:
            raise InvalidState(f"Booking is {booking.status}")
        if now < booking.starts_at:
            raise InvalidState("Check-in opens at the booking start time")
        if now >= booking.ends_at:
            raise InvalidState("Booking has already ended")

        moved = _transition(
            booking.id,
            [BookingStatus.CONFIRMED],
            status=BookingStatus.IN_PROGRESS,
            checked_in_at=now,
        )
        if not moved:
            db.session.rollback()
            raise InvalidState("Booking changed state, try again")
        db.session.commit()

    log_event("BOOKING_CHECK_IN", user_id=venue_owner_id, entity="booking", entity_id=booking.id)
    return get_booking(booking.id)


# ---------- background ----------

def _expire(booking_id: str, now) -> bool:
    with locks.acquire(_lock_key(booking_id)):
        moved = _transition(
            booking_id,
            [BookingStatus.PENDING_PAYMENT],
            extra_filters=(Booking.hold_expires_at <= now,),
            status=BookingStatus.CANCELLED,
            cancelled_at=now,
            cancel_reason="Payment window expired",
        )
        if not moved:
            db.session.rollback()
            return False
        log_event("BOOKING_EXPIRED", user_id=None, entity="booking", entity_id=booking_id, commit=False)
        db.session.commit()

        _release_holds(booking_id)
        refunds = _queue_refunds(booking_id, now)

    if refunds:
        logger.info("Expired booking %s had paid legs %s queued for refund", booking_id, refunds)
    return True


def _complete(booking_id: str, now) -> bool:
    with locks.acquire(_lock_key(booking_id)):
        moved = _transition(
            booking_id,
            [BookingStatus.IN_PROGRESS],
            status=BookingStatus.COMPLETED,
            completed_at=now,
        )
        if not moved:
            db.session.rollback()
            return False
        log_event("BOOKING_COMPLETED", user_id=None, entity="booking", entity_id=booking_id, commit=False)
        db.session.commit()
    return True


def sweep(now=None) -> SweepResult:
    """Expire unpaid bookings, close finished sessions, drop orphaned holds."""
    now = now or utcnow()

    due = (
        Booking.query
        .filter(
            Booking.status == BookingStatus.PENDING_PAYMENT,
            Booking.hold_expires_at <= now,
        )
        .all()
    )
    expired = sum(1 for booking_id in [b.id for b in due] if _expire(booking_id, now))

    running = (
        Booking.query
        .filter(
            Booking.status == BookingStatus.IN_PROGRESS,
            Booking.date <= now.date(),
        )
        .all()
    )
    finished = [b.id for b in running if b.ends_at <= now]
    completed = sum(1 for booking_id in finished if _complete(booking_id, now))

    orphans = slot_ledger.sweep(now)

    if expired or completed or orphans:
        logger.info("Sweep: %d expired, %d completed, %d orphan holds", expired, completed, orphans)
    return SweepResult(expired, completed, orphans)


# ---------- queries ----------

def availability(resource_type: str, resource_id, day, now=None) -> dict:
    now = now or utcnow()
    day = parse_date(day)
    if resource_type == "venue":
        catalog.get_venue(resource_id)
    elif resource_type == "coach":
        catalog.get_coach(resource_id)
    else:
        raise InvalidRequest("resource type must be venue or coach")

    entries = slot_ledger.day_entries(f"{resource_type}:{int(resource_id)}", day, now=now)
    booked = [
        {
            "start": e.start_time.strftime("%H:%M"),
            "end": e.end_time.strftime("%H:%M"),
            "state": e.state,
        }
        for e in entries
    ]

    opening = current_app.config.get("OPENING_HOUR", 6)
    closing = current_app.config.get("CLOSING_HOUR", 23)
    available = []
    for hour in range(opening, closing):
        slot_start = time(hour, 0)
        slot_end = time(hour + 1, 0) if hour < 23 else time(23, 59)
        if datetime.combine(day, slot_start) <= now:
            continue
        if any(slot_ledger.overlaps(slot_start, slot_end, e.start_time, e.end_time) for e in entries):
            continue
        available.append(slot_start.strftime("%H:%M"))

    return {"date": day.isoformat(), "available_slots": available, "booked_slots": booked}


def player_bookings(player_id, status: str = None) -> list:
    q = Booking.query.filter_by(player_id=str(player_id))
    if status:
        q = q.filter_by(status=status)
    return q.order_by(Booking.date.desc(), Booking.start_time.desc()).all()
