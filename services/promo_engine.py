"""
Promo codes: ordered validation, discount arithmetic and redemption.

Validation is a pure read. Redemption consumes a usage slot and must only
happen once the discounted charge has actually been collected.
"""
import logging
from typing import NamedTuple, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError

from models import db
from models.promo_code import PromoCode, PromoRedemption, DiscountType, Applicability
from models.payment import PayeeType
from services.errors import InvalidRequest, NotFound, PromoInvalid
from services.locks import locks
from utils.clock import utcnow

logger = logging.getLogger(__name__)


class PromoCheck(NamedTuple):
    ok: bool
    discount: int
    reason: str
    promo: Optional[PromoCode] = None


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def find(code: str):
    return PromoCode.query.filter_by(code=normalize_code(code)).first()


def round_half_up(numerator: int, denominator: int) -> int:
    return (2 * numerator + denominator) // (2 * denominator)


def compute_discount(promo: PromoCode, base: int) -> int:
    base = max(int(base), 0)
    if promo.discount_type == DiscountType.PERCENTAGE:
        discount = round_half_up(base * promo.discount_value, 100)
        if promo.max_discount_amount is not None:
            discount = min(discount, promo.max_discount_amount)
    else:
        discount = min(promo.discount_value, base)
    return max(discount, 0)


def _user_usage(promo_id: int, user_id: str) -> int:
    return PromoRedemption.query.filter_by(promo_code_id=promo_id, user_id=str(user_id)).count()


def _rejected(reason: str, promo=None) -> PromoCheck:
    return PromoCheck(False, 0, reason, promo)


def validate(code, user_id, booking_amount: int, has_coach: bool, now=None, payee_amounts=None) -> PromoCheck:
    """
    Check a code against a prospective charge; first failing rule wins.

    `payee_amounts` maps payee type to that payee's share; when given, a
    payee-scoped code discounts only that share.
    """
    now = now or utcnow()

    promo = find(code)
    if not promo:
        return _rejected("Invalid promo code")
    if not promo.is_active:
        return _rejected("Promo code is inactive", promo)
    if now < promo.valid_from:
        return _rejected("Promo code not yet valid", promo)
    if now > promo.valid_until:
        return _rejected("Promo code has expired", promo)
    if promo.min_booking_amount is not None and booking_amount < promo.min_booking_amount:
        return _rejected(f"Minimum booking amount is {promo.min_booking_amount}", promo)
    if promo.max_usage_total is not None and promo.current_usage_count >= promo.max_usage_total:
        return _rejected("Promo code usage limit reached", promo)
    if promo.max_usage_per_user is not None and _user_usage(promo.id, user_id) >= promo.max_usage_per_user:
        return _rejected("You've already used this promo code", promo)
    if promo.applicable_to == Applicability.COACH_ONLY and not has_coach:
        return _rejected("This promo code only applies to coach bookings", promo)
    if promo.applicable_to == Applicability.VENUE_ONLY and has_coach:
        return _rejected("This promo code only applies to venue-only bookings", promo)

    base = booking_amount
    if payee_amounts is not None:
        if promo.applicable_to == Applicability.VENUE_ONLY:
            base = payee_amounts.get(PayeeType.VENUE, 0)
        elif promo.applicable_to == Applicability.COACH_ONLY:
            base = payee_amounts.get(PayeeType.COACH, 0)

    discount = compute_discount(promo, base)
    return PromoCheck(True, discount, f"Discount of {discount} applied", promo)


def check(code, user_id, booking_amount: int, has_coach: bool, now=None, payee_amounts=None) -> PromoCheck:
    """Like validate(), but raises PromoInvalid on failure."""
    result = validate(code, user_id, booking_amount, has_coach, now=now, payee_amounts=payee_amounts)
    if not result.ok:
        raise PromoInvalid(result.reason)
    return result


def redeem(code, user_id, booking_id: str, discount_applied: int, now=None) -> PromoRedemption:
    now = now or utcnow()
    promo = find(code)
    if not promo:
        raise NotFound("Promo code not found")

    with locks.acquire(f"promo:{promo.id}"):
        db.session.refresh(promo)
        if promo.max_usage_per_user is not None and _user_usage(promo.id, user_id) >= promo.max_usage_per_user:
            raise PromoInvalid("You've already used this promo code")

        bumped = (
            PromoCode.query
            .filter(
                PromoCode.id == promo.id,
                or_(
                    PromoCode.max_usage_total.is_(None),
                    PromoCode.current_usage_count < PromoCode.max_usage_total,
                ),
            )
            .update(
                {PromoCode.current_usage_count: PromoCode.current_usage_count + 1},
                synchronize_session=False,
            )
        )
        if not bumped:
            db.session.rollback()
            raise PromoInvalid("Promo code usage limit reached")

        row = PromoRedemption(
            promo_code_id=promo.id,
            user_id=str(user_id),
            booking_id=booking_id,
            discount_applied=int(discount_applied),
            used_at=now,
        )
        db.session.add(row)
        db.session.commit()

    db.session.refresh(promo)
    logger.info("Redeemed promo %s for booking %s (%s)", promo.code, booking_id, discount_applied)
    return row


def create_promo(
    code: str,
    discount_type: str,
    discount_value: int,
    valid_from,
    valid_until,
    description: str = "",
    applicable_to: str = Applicability.ALL,
    min_booking_amount=None,
    max_discount_amount=None,
    max_usage_total=None,
    max_usage_per_user=1,
    created_by=None,
) -> PromoCode:
    normalized = normalize_code(code)
    if not normalized:
        raise InvalidRequest("code is required")
    if discount_type not in (DiscountType.PERCENTAGE, DiscountType.FIXED_AMOUNT):
        raise InvalidRequest("discount_type must be PERCENTAGE or FIXED_AMOUNT")
    if applicable_to not in (Applicability.ALL, Applicability.VENUE_ONLY, Applicability.COACH_ONLY):
        raise InvalidRequest("applicable_to must be ALL, VENUE_ONLY or COACH_ONLY")

    discount_value = int(discount_value)
    if discount_type == DiscountType.PERCENTAGE:
        if discount_value < 0 or discount_value > 100:
            raise InvalidRequest("Percentage discount must be between 0 and 100")
    elif discount_value < 0:
        raise InvalidRequest("Fixed discount amount must be positive")

    if valid_until <= valid_from:
        raise InvalidRequest("valid_until must be after valid_from")
    for name, value in (("max_usage_total", max_usage_total), ("max_usage_per_user", max_usage_per_user)):
        if value is not None and int(value) < 1:
            raise InvalidRequest(f"{name} must be at least 1")
    for name, value in (("min_booking_amount", min_booking_amount), ("max_discount_amount", max_discount_amount)):
        if value is not None and int(value) < 0:
            raise InvalidRequest(f"{name} cannot be negative")

    if find(normalized):
        raise InvalidRequest("Promo code already exists")

    promo = PromoCode(
        code=normalized,
        description=description or "",
        discount_type=discount_type,
        discount_value=discount_value,
        applicable_to=applicable_to,
        min_booking_amount=min_booking_amount,
        max_discount_amount=max_discount_amount,
        valid_from=valid_from,
        valid_until=valid_until,
        max_usage_total=max_usage_total,
        max_usage_per_user=max_usage_per_user,
        created_by=str(created_by) if created_by is not None else None,
    )
    db.session.add(promo)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise InvalidRequest("Promo code already exists")
    return promo


def get_promo(promo_id: int) -> PromoCode:
    promo = db.session.get(PromoCode, promo_id)
    if not promo:
        raise NotFound("Promo code not found")
    return promo


def list_promos() -> list:
    return PromoCode.query.order_by(PromoCode.created_at.desc(), PromoCode.id.desc()).all()


def list_active(now=None) -> list:
    now = now or utcnow()
    return (
        PromoCode.query
        .filter(
            PromoCode.is_active.is_(True),
            PromoCode.valid_from <= now,
            PromoCode.valid_until >= now,
            or_(
                PromoCode.max_usage_total.is_(None),
                PromoCode.current_usage_count < PromoCode.max_usage_total,
            ),
        )
        .order_by(PromoCode.created_at.desc(), PromoCode.id.desc())
        .all()
    )


def deactivate(promo_id: int) -> PromoCode:
    promo = get_promo(promo_id)
    promo.is_active = False
    db.session.commit()
    return promo


def usage_stats(promo_id: int) -> dict:
    promo = get_promo(promo_id)

    total_discount = (
        db.session.query(func.coalesce(func.sum(PromoRedemption.discount_applied), 0))
        .filter(PromoRedemption.promo_code_id == promo.id)
        .scalar()
    )
    unique_users = (
        db.session.query(func.count(func.distinct(PromoRedemption.user_id)))
        .filter(PromoRedemption.promo_code_id == promo.id)
        .scalar()
    )
    recent = (
        PromoRedemption.query
        .filter_by(promo_code_id=promo.id)
        .order_by(PromoRedemption.used_at.desc(), PromoRedemption.id.desc())
        .limit(10)
        .all()
    )

    return {
        "code": promo.code,
        "total_usage": promo.current_usage_count,
        "total_discount_given": int(total_discount or 0),
        "unique_users": int(unique_users or 0),
        "recent_usages": [
            {
                "user_id": r.user_id,
                "booking_id": r.booking_id,
                "discount_applied": r.discount_applied,
                "used_at": r.used_at.isoformat(),
            }
            for r in recent
        ],
    }
