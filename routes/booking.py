from flask import Blueprint, request, jsonify, g

from models.booking import BookingStatus
from security.rbac import has_role
from services import booking_service
from utils.auth_context import login_required

booking_bp = Blueprint("booking", __name__)


def payment_dict(p) -> dict:
    return {
        "id": p.id,
        "payee_type": p.payee_type,
        "amount": p.amount,
        "currency": p.currency,
        "status": p.status,
        "attempts": p.attempts,
        "failure_reason": p.failure_reason,
        "paid_at": p.paid_at.isoformat() if p.paid_at else None,
        "refund_requested": p.refund_requested_at is not None,
        "refunded_at": p.refunded_at.isoformat() if p.refunded_at else None,
    }


def booking_dict(b, show_code: bool = False) -> dict:
    return {
        "id": b.id,
        "status": b.status,
        "player_id": b.player_id,
        "venue_id": b.venue_id,
        "coach_id": b.coach_id,
        "dependent_id": b.dependent_id,
        "sport": b.sport,
        "date": b.date.isoformat(),
        "start_time": b.start_time.strftime("%H:%M"),
        "end_time": b.end_time.strftime("%H:%M"),
        "hold_expires_at": b.hold_expires_at.isoformat() if b.hold_expires_at else None,
        "subtotal_amount": b.subtotal_amount,
        "discount_amount": b.discount_amount,
        "total_amount": b.total_amount,
        "payments": [payment_dict(p) for p in b.payments],
        "check_in_code": b.check_in_code if show_code else None,
        "created_at": b.created_at.isoformat(),
        "cancelled_at": b.cancelled_at.isoformat() if b.cancelled_at else None,
        "cancel_reason": b.cancel_reason,
    }


# ---------- PLAYERS: initiate booking (hold + payment legs) ----------
@booking_bp.post("/bookings")
@login_required
def initiate_booking():
    data = request.get_json(silent=True) or {}
    required = ("venue_id", "sport", "date", "start_time", "end_time")
    missing = [k for k in required if not data.get(k)]
    if missing:
        return jsonify(error=f"{', '.join(missing)} required"), 400

    booking = booking_service.initiate(
        player_id=g.user_id,
        venue_id=data.get("venue_id"),
        coach_id=data.get("coach_id"),
        sport=data.get("sport"),
        day=data.get("date"),
        start=data.get("start_time"),
        end=data.get("end_time"),
        dependent_id=data.get("dependent_id"),
        promo_code=(data.get("promo_code") or "").strip() or None,
    )

    instructions = [
        {
            "payment_id": p.id,
            "payee_type": p.payee_type,
            "amount": p.amount,
            "currency": p.currency,
            "status": p.status,
            "checkout_path": f"/payments/{p.id}/checkout",
        }
        for p in booking.payments
    ]
    return jsonify(
        booking_id=booking.id,
        status=booking.status,
        subtotal_amount=booking.subtotal_amount,
        discount_amount=booking.discount_amount,
        total_amount=booking.total_amount,
        hold_expires_at=booking.hold_expires_at.isoformat(),
        payment_instructions=instructions,
    ), 201


# ---------- PLAYERS: booking status ----------
@booking_bp.get("/bookings/<booking_id>")
@login_required
def booking_status(booking_id: str):
    booking = booking_service.get_booking(booking_id)
    is_owner = booking.player_id == g.user_id
    if not is_owner and not has_role("ADMIN"):
        return jsonify(error="Booking not found"), 404

    show_code = is_owner and booking.status == BookingStatus.CONFIRMED
    return jsonify(booking_dict(booking, show_code=show_code)), 200


# ---------- PLAYERS: view my bookings ----------
@booking_bp.get("/bookings/me")
@login_required
def my_bookings():
    status = request.args.get("status")
    rows = booking_service.player_bookings(g.user_id, status=status)
    return jsonify([
        booking_dict(b, show_code=b.status == BookingStatus.CONFIRMED) for b in rows
    ]), 200


# ---------- PLAYERS: cancel booking ----------
@booking_bp.post("/bookings/<booking_id>/cancel")
@login_required
def cancel_booking(booking_id: str):
    data = request.get_json(silent=True) or {}
    reason = (data.get("reason") or "").strip() or None

    booking = booking_service.cancel(booking_id, g.user_id, reason=reason, as_admin=has_role("ADMIN"))
    return jsonify(message="Cancelled", booking=booking_dict(booking)), 200


# ---------- VENUE: check-in at the gate ----------
@booking_bp.post("/bookings/check-in")
@login_required
def check_in():
    data = request.get_json(silent=True) or {}
    code = (data.get("code") or "").strip()
    if not code:
        return jsonify(error="code required"), 400

    owner = None if has_role("ADMIN") else g.user_id
    booking = booking_service.check_in(code, venue_owner_id=owner)
    return jsonify(id=booking.id, status=booking.status), 200


# ---------- PUBLIC: slot availability ----------
@booking_bp.get("/availability/<resource_type>/<int:resource_id>")
def availability(resource_type: str, resource_id: int):
    date_str = request.args.get("date")
    if not date_str:
        return jsonify(error="Date parameter is required"), 400

    return jsonify(booking_service.availability(resource_type, resource_id, date_str)), 200
