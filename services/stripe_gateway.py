from urllib.parse import urlencode, urlparse, parse_qsl, urlunparse

import stripe
from flask import current_app

from services.errors import InvalidRequest


class GatewayNotConfigured(RuntimeError):
    pass


def _append_query(url: str, params: dict) -> str:
    if not url:
        return url
    parts = urlparse(url)
    query = dict(parse_qsl(parts.query))
    query.update({k: v for k, v in params.items() if v is not None})
    new_query = urlencode(query)
    return urlunparse(parts._replace(query=new_query))


def _configure():
    api_key = current_app.config.get("STRIPE_SECRET_KEY")
    if not api_key:
        raise GatewayNotConfigured("Stripe secret key missing (STRIPE_SECRET_KEY)")
    stripe.api_key = api_key


def create_checkout_session(payment, booking):
    """Open a Stripe Checkout session charging one payment record."""
    _configure()
    success_url = current_app.config.get("STRIPE_SUCCESS_URL")
    cancel_url = current_app.config.get("STRIPE_CANCEL_URL")
    if not success_url or not cancel_url:
        raise GatewayNotConfigured("Stripe success/cancel URLs not configured")
    if payment.amount <= 0:
        raise InvalidRequest("Nothing to charge for this payment")

    metadata = {
        "booking_id": booking.id,
        "payment_id": str(payment.id),
        "payee_type": payment.payee_type,
        "user_id": booking.player_id,
    }
    params = {"booking_id": booking.id, "payment_id": str(payment.id)}

    # amounts are stored in the smallest currency unit already
    return stripe.checkout.Session.create(
        mode="payment",
        line_items=[{
            "price_data": {
                "currency": payment.currency.lower(),
                "product_data": {"name": f"{payment.payee_type.title()} fee (booking {booking.id[:8]})"},
                "unit_amount": payment.amount,
            },
            "quantity": 1,
        }],
        success_url=_append_query(success_url, params),
        cancel_url=_append_query(cancel_url, params),
        metadata=metadata,
        payment_intent_data={
            "metadata": metadata,
            "transfer_group": f"booking_{booking.id}",
        },
    )


def construct_event(payload: bytes, sig_header: str):
    endpoint_secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not endpoint_secret:
        raise GatewayNotConfigured("Webhook secret not configured")
    return stripe.Webhook.construct_event(payload, sig_header, endpoint_secret)
