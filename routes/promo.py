from datetime import datetime

from flask import Blueprint, request, jsonify, g

from models.promo_code import Applicability
from security.rbac import require_roles
from services import promo_engine
from utils.auth_context import login_required
from utils.audit import log_event

promo_bp = Blueprint("promo", __name__, url_prefix="/promo-codes")


def _parse_iso(dt_str: str):
    # Expect ISO format like "2026-01-20T18:00:00"
    return datetime.fromisoformat(dt_str)


def _opt_int(value):
    if value is None or value == "":
        return None
    return int(value)


def promo_dict(p, admin: bool = False) -> dict:
    out = {
        "id": p.id,
        "code": p.code,
        "description": p.description,
        "discount_type": p.discount_type,
        "discount_value": p.discount_value,
        "max_discount_amount": p.max_discount_amount,
        "applicable_to": p.applicable_to,
        "min_booking_amount": p.min_booking_amount,
        "valid_from": p.valid_from.isoformat(),
        "valid_until": p.valid_until.isoformat(),
    }
    if admin:
        out.update({
            "is_active": p.is_active,
            "max_usage_total": p.max_usage_total,
            "max_usage_per_user": p.max_usage_per_user,
            "current_usage_count": p.current_usage_count,
            "created_by": p.created_by,
            "created_at": p.created_at.isoformat(),
        })
    return out


# ---------- ADMIN: create promo code ----------
@promo_bp.post("")
@require_roles("ADMIN")
def create_promo():
    data = request.get_json(silent=True) or {}
    required = ("code", "discount_type", "discount_value", "valid_from", "valid_until")
    missing = [k for k in required if data.get(k) in (None, "")]
    if missing:
        return jsonify(error=f"{', '.join(missing)} required"), 400

    try:
        valid_from = _parse_iso(data["valid_from"])
        valid_until = _parse_iso(data["valid_until"])
    except (TypeError, ValueError):
        return jsonify(error="Invalid datetime format. Use ISO e.g. 2026-01-20T18:00:00"), 400

    try:
        numbers = {
            "discount_value": int(data["discount_value"]),
            "min_booking_amount": _opt_int(data.get("min_booking_amount")),
            "max_discount_amount": _opt_int(data.get("max_discount_amount")),
            "max_usage_total": _opt_int(data.get("max_usage_total")),
            "max_usage_per_user": _opt_int(data.get("max_usage_per_user", 1)),
        }
    except (TypeError, ValueError):
        return jsonify(error="Numeric fields must be integers"), 400

    promo = promo_engine.create_promo(
        code=data["code"],
        discount_type=(data.get("discount_type") or "").upper(),
        valid_from=valid_from,
        valid_until=valid_until,
        description=(data.get("description") or "").strip(),
        applicable_to=(data.get("applicable_to") or Applicability.ALL).upper(),
        created_by=g.user_id,
        **numbers,
    )

    log_event("PROMO_CREATE", user_id=g.user_id, entity="promo_code", entity_id=promo.id, metadata={"code": promo.code})
    return jsonify(promo_dict(promo, admin=True)), 201


# ---------- ADMIN: list all promo codes ----------
@promo_bp.get("")
@require_roles("ADMIN")
def list_promos():
    return jsonify([promo_dict(p, admin=True) for p in promo_engine.list_promos()]), 200


# ---------- PLAYERS: currently usable promo codes ----------
@promo_bp.get("/active")
@login_required
def list_active():
    return jsonify([promo_dict(p) for p in promo_engine.list_active()]), 200


# ---------- PLAYERS: preview a code against an amount ----------
@promo_bp.post("/validate")
@login_required
def validate_promo():
    data = request.get_json(silent=True) or {}
    code = (data.get("code") or "").strip()
    if not code:
        return jsonify(error="code required"), 400
    try:
        amount = int(data.get("booking_amount") or 0)
    except (TypeError, ValueError):
        return jsonify(error="booking_amount must be an integer"), 400

    result = promo_engine.validate(code, g.user_id, amount, bool(data.get("has_coach")))
    return jsonify(ok=result.ok, discount=result.discount, reason=result.reason), 200


# ---------- ADMIN: soft-deactivate ----------
@promo_bp.post("/<int:promo_id>/deactivate")
@require_roles("ADMIN")
def deactivate_promo(promo_id: int):
    promo = promo_engine.deactivate(promo_id)
    log_event("PROMO_DEACTIVATE", user_id=g.user_id, entity="promo_code", entity_id=promo.id)
    return jsonify(promo_dict(promo, admin=True)), 200


# ---------- ADMIN: usage stats ----------
@promo_bp.get("/<int:promo_id>/stats")
@require_roles("ADMIN")
def promo_stats(promo_id: int):
    return jsonify(promo_engine.usage_stats(promo_id)), 200
