from models.db import db
from utils.clock import utcnow


class PayeeType:
    VENUE = "VENUE"
    COACH = "COACH"


class PaymentStatus:
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.String(32), db.ForeignKey("bookings.id"), nullable=False, index=True)

    payee_type = db.Column(db.String(10), nullable=False)  # VENUE, COACH
    payee_id = db.Column(db.String(64), nullable=True)

    provider = db.Column(db.String(20), nullable=False, default="STRIPE")
    amount = db.Column(db.Integer, nullable=False)   # smallest unit
    currency = db.Column(db.String(10), nullable=False, default="INR")

    status = db.Column(db.String(20), nullable=False, default=PaymentStatus.PENDING)  # PENDING, PAID, FAILED, REFUNDED
    attempts = db.Column(db.Integer, nullable=False, default=1)
    failure_reason = db.Column(db.String(255), nullable=True)

    stripe_session_id = db.Column(db.String(255), nullable=True, unique=True, index=True)
    stripe_payment_intent_id = db.Column(db.String(255), nullable=True, index=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    paid_at = db.Column(db.DateTime, nullable=True)
    failed_at = db.Column(db.DateTime, nullable=True)
    refund_requested_at = db.Column(db.DateTime, nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        # At most one payment leg per payee type on a booking
        db.UniqueConstraint("booking_id", "payee_type", name="uq_payment_booking_payee"),
    )
