import logging

from flask import Blueprint, jsonify, g

from models import db
from models.booking import BookingStatus
from models.payment import PaymentStatus
from routes.booking import payment_dict
from security.rbac import require_roles
from services import booking_service, payment_ledger, stripe_gateway
from services.stripe_gateway import GatewayNotConfigured
from utils.auth_context import login_required
from utils.audit import log_event

logger = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")


def _own_payment(payment_id: int):
    payment = payment_ledger.get(payment_id)
    booking = booking_service.get_booking(payment.booking_id)
    if booking.player_id != g.user_id:
        return None, None
    return payment, booking


@payments_bp.post("/<int:payment_id>/checkout")
@login_required
def start_checkout(payment_id: int):
    payment, booking = _own_payment(payment_id)
    if not payment:
        return jsonify(error="Payment not found"), 404
    if booking.status != BookingStatus.PENDING_PAYMENT:
        return jsonify(error="Booking is not awaiting payment"), 409
    if payment.status != PaymentStatus.PENDING:
        return jsonify(error=f"Payment is {payment.status}"), 409

    try:
        session = stripe_gateway.create_checkout_session(payment, booking)
    except GatewayNotConfigured as exc:
        return jsonify(error=str(exc)), 500

    payment.stripe_session_id = session["id"]
    db.session.commit()

    log_event("PAYMENT_SESSION_CREATED", user_id=g.user_id, entity="payment", entity_id=payment.id, metadata={"stripe_session_id": session["id"]})
    return jsonify(checkout_url=session["url"], payment_id=payment.id), 200


@payments_bp.post("/<int:payment_id>/retry")
@login_required
def retry_payment(payment_id: int):
    payment = booking_service.retry_payment(payment_id, g.user_id)
    return jsonify(payment_dict(payment)), 200


@payments_bp.get("/refunds/pending")
@require_roles("ADMIN")
def pending_refunds():
    rows = payment_ledger.pending_refunds()
    return jsonify([
        dict(payment_dict(p), booking_id=p.booking_id, stripe_payment_intent_id=p.stripe_payment_intent_id)
        for p in rows
    ]), 200


@payments_bp.post("/<int:payment_id>/refunded")
@require_roles("ADMIN")
def mark_refunded(payment_id: int):
    payment = booking_service.refund_settled(payment_id, actor_id=g.user_id)
    return jsonify(payment_dict(payment)), 200
