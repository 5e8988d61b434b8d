"""
Payment ledger: one payment record per payee of a booking.

Records move PENDING -> PAID, PENDING -> FAILED or PAID -> REFUNDED, and
are never deleted. The one deliberate extension to that forward-only
lifecycle is reopen(): a failed leg may be re-armed (FAILED -> PENDING)
by the payer while the booking is still awaiting payment. No other
backward transition exists.
"""
import logging

from models import db
from models.payment import Payment, PayeeType, PaymentStatus
from models.promo_code import Applicability
from services.errors import InvalidRequest, InvalidState, NotFound
from utils.clock import utcnow

logger = logging.getLogger(__name__)


def apportion(venue_amount: int, coach_amount: int, discount: int, applicable_to: str):
    """
    Split a booking-level discount across payees.

    Returns (venue_net, coach_net, applied). ALL drains the venue share
    first and then the coach share; scoped codes touch only their payee.
    No share ever goes below zero.
    """
    discount = max(int(discount or 0), 0)
    venue_amount = int(venue_amount)
    coach_amount = int(coach_amount or 0)

    if applicable_to == Applicability.VENUE_ONLY:
        off_venue, off_coach = min(discount, venue_amount), 0
    elif applicable_to == Applicability.COACH_ONLY:
        off_venue, off_coach = 0, min(discount, coach_amount)
    else:
        off_venue = min(discount, venue_amount)
        off_coach = min(discount - off_venue, coach_amount)

    return venue_amount - off_venue, coach_amount - off_coach, off_venue + off_coach


def open_payments(booking, charges, currency: str = "INR") -> list:
    """
    Create one PENDING record per (payee_type, payee_id, amount) charge.

    Adds to the session without committing; the caller commits together
    with the booking.
    """
    seen = set()
    records = []
    for payee_type, payee_id, amount in charges:
        if payee_type not in (PayeeType.VENUE, PayeeType.COACH):
            raise InvalidRequest(f"Unknown payee type {payee_type}")
        if payee_type in seen:
            raise InvalidRequest(f"Duplicate {payee_type} payment")
        if amount < 0:
            raise InvalidRequest("Payment amount cannot be negative")
        seen.add(payee_type)

        record = Payment(
            booking=booking,
            payee_type=payee_type,
            payee_id=str(payee_id) if payee_id is not None else None,
            amount=int(amount),
            currency=currency,
            status=PaymentStatus.PENDING,
        )
        db.session.add(record)
        records.append(record)
    return records


def get(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if not payment:
        raise NotFound("Payment not found")
    return payment


def mark_paid(payment: Payment, now=None) -> bool:
    """Returns True when the record changed; redelivered successes are no-ops."""
    if payment.status in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
        return False
    if payment.status != PaymentStatus.PENDING:
        raise InvalidState(f"Cannot mark a {payment.status} payment as paid")

    payment.status = PaymentStatus.PAID
    payment.paid_at = now or utcnow()
    payment.failure_reason = None
    db.session.commit()
    return True


def mark_failed(payment: Payment, reason: str = None, now=None) -> bool:
    if payment.status == PaymentStatus.FAILED:
        return False
    if payment.status != PaymentStatus.PENDING:
        raise InvalidState(f"Cannot mark a {payment.status} payment as failed")

    payment.status = PaymentStatus.FAILED
    payment.failed_at = now or utcnow()
    payment.failure_reason = (reason or "Payment failed")[:255]
    db.session.commit()
    return True


def mark_refunded(payment: Payment, now=None) -> bool:
    if payment.status == PaymentStatus.REFUNDED:
        return False
    if payment.status != PaymentStatus.PAID:
        raise InvalidState(f"Cannot refund a {payment.status} payment")

    payment.status = PaymentStatus.REFUNDED
    payment.refunded_at = now or utcnow()
    db.session.commit()
    return True


def request_refund(payment: Payment, now=None) -> bool:
    """Queue a PAID record for refund by the payment collaborator."""
    if payment.status != PaymentStatus.PAID or payment.refund_requested_at is not None:
        return False
    payment.refund_requested_at = now or utcnow()
    db.session.commit()
    logger.info("Refund queued for payment %s (%s %s)", payment.id, payment.amount, payment.currency)
    return True


def reopen(payment: Payment) -> Payment:
    if payment.status != PaymentStatus.FAILED:
        raise InvalidState("Only failed payments can be retried")

    payment.status = PaymentStatus.PENDING
    payment.attempts += 1
    payment.failed_at = None
    payment.stripe_session_id = None
    db.session.commit()
    return payment


def for_booking(booking_id: str) -> list:
    return Payment.query.filter_by(booking_id=booking_id).order_by(Payment.id.asc()).all()


def all_paid(booking_id: str) -> bool:
    rows = for_booking(booking_id)
    return bool(rows) and all(p.status == PaymentStatus.PAID for p in rows)


def pending_refunds() -> list:
    return (
        Payment.query
        .filter(
            Payment.status == PaymentStatus.PAID,
            Payment.refund_requested_at.isnot(None),
        )
        .order_by(Payment.refund_requested_at.asc())
        .all()
    )
