import logging

from flask import Blueprint, request, jsonify

from models import db
from models.payment import Payment
from services import booking_service, stripe_gateway
from services.errors import BookingError
from services.stripe_gateway import GatewayNotConfigured
from utils.audit import log_event

logger = logging.getLogger(__name__)

webhook_bp = Blueprint("webhook", __name__, url_prefix="/webhooks")

SUCCESS_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")
FAILURE_EVENTS = ("checkout.session.expired", "checkout.session.async_payment_failed")


def _find_payment(meta: dict, session_id=None, intent_id=None):
    payment_id = meta.get("payment_id")
    payment = None
    if payment_id:
        try:
            payment = db.session.get(Payment, int(payment_id))
        except ValueError:
            payment = None
    if not payment and session_id:
        payment = Payment.query.filter_by(stripe_session_id=session_id).first()
    if not payment and intent_id:
        payment = Payment.query.filter_by(stripe_payment_intent_id=intent_id).first()
    return payment


@webhook_bp.post("/stripe")
def stripe_webhook():
    sig_header = request.headers.get("Stripe-Signature")
    payload = request.data

    try:
        event = stripe_gateway.construct_event(payload, sig_header)
    except GatewayNotConfigured:
        return jsonify(error="Webhook secret not configured"), 500
    except Exception:
        return jsonify(error="Invalid webhook signature"), 400

    event_type = event.get("type")
    obj = event["data"]["object"]
    meta = obj.get("metadata", {}) or {}

    if event_type in SUCCESS_EVENTS or event_type in FAILURE_EVENTS:
        payment = _find_payment(meta, session_id=obj.get("id"))
    elif event_type == "charge.refunded":
        payment = _find_payment(meta, intent_id=obj.get("payment_intent"))
    else:
        return jsonify(received=True), 200

    if not payment:
        logger.warning("Stripe %s for unknown payment (metadata=%s)", event_type, meta)
        return jsonify(received=True), 200

    try:
        if event_type in SUCCESS_EVENTS:
            if obj.get("payment_status") not in (None, "paid", "no_payment_required"):
                # async methods settle later through async_payment_succeeded/failed
                return jsonify(received=True), 200
            intent_id = obj.get("payment_intent")
            if isinstance(intent_id, str) and payment.stripe_payment_intent_id != intent_id:
                payment.stripe_payment_intent_id = intent_id
                db.session.commit()
            booking_service.settle_payment(payment.id, succeeded=True)
        elif event_type in FAILURE_EVENTS:
            if payment.stripe_session_id and payment.stripe_session_id != obj.get("id"):
                # session superseded by a retry
                return jsonify(received=True), 200
            booking_service.settle_payment(payment.id, succeeded=False, reason=event_type)
        else:
            booking_service.refund_settled(payment.id)
    except BookingError as exc:
        # Out-of-order or duplicate delivery: acknowledge so Stripe stops retrying
        logger.warning("Stripe %s not applied to payment %s: %s", event_type, payment.id, exc.message)
        log_event(
            "PAYMENT_WEBHOOK_REJECTED",
            user_id=None,
            entity="payment",
            entity_id=payment.id,
            metadata={"event": event_type, "error": exc.message},
        )

    return jsonify(received=True), 200
