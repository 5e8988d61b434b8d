from models.db import db
from utils.clock import utcnow


class DiscountType:
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"


class Applicability:
    ALL = "ALL"
    VENUE_ONLY = "VENUE_ONLY"
    COACH_ONLY = "COACH_ONLY"


class PromoCode(db.Model):
    __tablename__ = "promo_codes"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(40), unique=True, nullable=False, index=True)  # stored upper-case
    description = db.Column(db.String(255), nullable=False, default="")

    discount_type = db.Column(db.String(20), nullable=False)
    discount_value = db.Column(db.Integer, nullable=False)
    max_discount_amount = db.Column(db.Integer, nullable=True)  # cap for percentage discounts

    applicable_to = db.Column(db.String(20), nullable=False, default=Applicability.ALL)
    min_booking_amount = db.Column(db.Integer, nullable=True)

    valid_from = db.Column(db.DateTime, nullable=False)
    valid_until = db.Column(db.DateTime, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    max_usage_total = db.Column(db.Integer, nullable=True)
    max_usage_per_user = db.Column(db.Integer, nullable=True, default=1)
    current_usage_count = db.Column(db.Integer, nullable=False, default=0)

    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        db.Index("ix_promo_codes_active_until", "is_active", "valid_until"),
    )


class PromoRedemption(db.Model):
    """Append-only usage log; rows are never updated or deleted."""

    __tablename__ = "promo_redemptions"

    id = db.Column(db.Integer, primary_key=True)
    promo_code_id = db.Column(db.Integer, db.ForeignKey("promo_codes.id"), nullable=False, index=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    booking_id = db.Column(db.String(32), db.ForeignKey("bookings.id"), nullable=False)
    discount_applied = db.Column(db.Integer, nullable=False)
    used_at = db.Column(db.DateTime, default=utcnow, nullable=False)
