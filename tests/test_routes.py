from datetime import timedelta

import pytest
import stripe

from conftest import auth
from models.audit_log import AuditLog
from models.booking import BookingStatus
from models.payment import PaymentStatus
from services import payment_ledger, stripe_gateway
from utils.clock import utcnow

PLAYER = auth("player-1")
ADMIN = auth("admin-1", "ADMIN")
OWNER = auth("owner-1", "VENUE_OWNER")

pytestmark = pytest.mark.usefixtures("app")


def _play_day():
    return (utcnow() + timedelta(days=2)).date().isoformat()


def _book(client, venue, coach=None, headers=PLAYER, **extra):
    body = {
        "venue_id": venue.id,
        "sport": "futsal",
        "date": _play_day(),
        "start_time": "18:00",
        "end_time": "20:00",
    }
    if coach:
        body["coach_id"] = coach.id
    body.update(extra)
    return client.post("/bookings", json=body, headers=headers)


def _event(event_type, obj):
    return {"type": event_type, "data": {"object": obj}}


@pytest.fixture
def webhook(client, monkeypatch):
    """Posts a Stripe event to the webhook, skipping signature verification."""
    def _send(event):
        monkeypatch.setattr(stripe_gateway, "construct_event", lambda payload, sig: event)
        return client.post("/webhooks/stripe", data=b"{}", headers={"Stripe-Signature": "t=1,v1=x"})

    return _send


def _paid(payment_id, session_id=None, intent="pi_1"):
    return _event("checkout.session.completed", {
        "id": session_id or f"cs_{payment_id}",
        "payment_status": "paid",
        "payment_intent": intent,
        "metadata": {"payment_id": str(payment_id)},
    })


class TestAuth:
    def test_anonymous_requests_are_rejected(self, client, venue):
        assert _book(client, venue, headers={}).status_code == 401
        assert client.get("/bookings/me").status_code == 401

    def test_admin_endpoints_need_role(self, client):
        assert client.get("/promo-codes", headers=PLAYER).status_code == 403
        assert client.get("/promo-codes", headers=auth("root", "SUPER_ADMIN")).status_code == 200

    def test_health_is_public(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.get_json()["sweeper_running"] is False


class TestBookingFlow:
    def test_initiate_returns_payment_instructions(self, client, venue, coach):
        resp = _book(client, venue, coach)
        assert resp.status_code == 201
        data = resp.get_json()
        assert data["status"] == BookingStatus.PENDING_PAYMENT
        assert data["total_amount"] == 3000
        assert [(i["payee_type"], i["amount"]) for i in data["payment_instructions"]] == [
            ("VENUE", 2000),
            ("COACH", 1000),
        ]
        assert data["payment_instructions"][0]["checkout_path"].startswith("/payments/")

    def test_missing_fields(self, client, venue):
        resp = client.post("/bookings", json={"venue_id": venue.id}, headers=PLAYER)
        assert resp.status_code == 400

    def test_conflict_maps_to_409(self, client, venue):
        _book(client, venue)
        resp = _book(client, venue, headers=auth("player-2"))
        assert resp.status_code == 409
        assert resp.get_json()["code"] == "CONFLICT"

    def test_bad_promo_maps_to_422(self, client, venue):
        resp = _book(client, venue, promo_code="NOPE")
        assert resp.status_code == 422
        assert resp.get_json()["error"] == "Invalid promo code"

    def test_status_visible_to_owner_and_admin_only(self, client, venue):
        booking_id = _book(client, venue).get_json()["booking_id"]
        assert client.get(f"/bookings/{booking_id}", headers=PLAYER).status_code == 200
        assert client.get(f"/bookings/{booking_id}", headers=ADMIN).status_code == 200
        assert client.get(f"/bookings/{booking_id}", headers=auth("player-2")).status_code == 404

    def test_webhook_confirms_and_reveals_code(self, client, venue, webhook):
        data = _book(client, venue).get_json()
        payment_id = data["payment_instructions"][0]["payment_id"]

        assert webhook(_paid(payment_id)).status_code == 200

        body = client.get(f"/bookings/{data['booking_id']}", headers=PLAYER).get_json()
        assert body["status"] == BookingStatus.CONFIRMED
        assert body["check_in_code"]
        assert body["payments"][0]["status"] == PaymentStatus.PAID
        assert payment_ledger.get(payment_id).stripe_payment_intent_id == "pi_1"

        admin_view = client.get(f"/bookings/{data['booking_id']}", headers=ADMIN).get_json()
        assert admin_view["check_in_code"] is None

        mine = client.get("/bookings/me", headers=PLAYER).get_json()
        assert [b["id"] for b in mine] == [data["booking_id"]]

    def test_duplicate_webhook_is_acknowledged(self, client, venue, webhook):
        data = _book(client, venue).get_json()
        payment_id = data["payment_instructions"][0]["payment_id"]
        webhook(_paid(payment_id))
        assert webhook(_paid(payment_id)).status_code == 200

    def test_failed_then_late_success_is_rejected_quietly(self, client, venue, webhook):
        data = _book(client, venue).get_json()
        payment_id = data["payment_instructions"][0]["payment_id"]

        webhook(_event("checkout.session.expired", {"id": f"cs_{payment_id}", "metadata": {"payment_id": str(payment_id)}}))
        assert payment_ledger.get(payment_id).status == PaymentStatus.FAILED

        resp = webhook(_paid(payment_id))
        assert resp.status_code == 200
        assert AuditLog.query.filter_by(action="PAYMENT_WEBHOOK_REJECTED").count() == 1

    def test_retry_endpoint(self, client, venue, webhook):
        data = _book(client, venue).get_json()
        payment_id = data["payment_instructions"][0]["payment_id"]
        webhook(_event("checkout.session.async_payment_failed", {"id": "cs_x", "metadata": {"payment_id": str(payment_id)}}))

        resp = client.post(f"/payments/{payment_id}/retry", headers=PLAYER)
        assert resp.status_code == 200
        assert resp.get_json()["attempts"] == 2
        assert client.post(f"/payments/{payment_id}/retry", headers=PLAYER).status_code == 409

    def test_cancel_and_refund_queue(self, client, venue, webhook):
        data = _book(client, venue).get_json()
        payment_id = data["payment_instructions"][0]["payment_id"]
        webhook(_paid(payment_id))

        resp = client.post(f"/bookings/{data['booking_id']}/cancel", json={"reason": "rain"}, headers=PLAYER)
        assert resp.status_code == 200
        assert resp.get_json()["booking"]["status"] == BookingStatus.CANCELLED

        pending = client.get("/payments/refunds/pending", headers=ADMIN).get_json()
        assert [p["id"] for p in pending] == [payment_id]

        webhook(_event("charge.refunded", {"payment_intent": "pi_1", "metadata": {}}))
        assert payment_ledger.get(payment_id).status == PaymentStatus.REFUNDED
        assert client.get("/payments/refunds/pending", headers=ADMIN).get_json() == []

    def test_cancel_twice(self, client, venue):
        booking_id = _book(client, venue).get_json()["booking_id"]
        client.post(f"/bookings/{booking_id}/cancel", headers=PLAYER)
        resp = client.post(f"/bookings/{booking_id}/cancel", headers=PLAYER)
        assert resp.status_code == 409
        assert resp.get_json()["code"] == "INVALID_STATE"

    def test_check_in_needs_venue_owner(self, client, venue, webhook):
        data = _book(client, venue).get_json()
        webhook(_paid(data["payment_instructions"][0]["payment_id"]))
        code = client.get(f"/bookings/{data['booking_id']}", headers=PLAYER).get_json()["check_in_code"]

        resp = client.post("/bookings/check-in", json={"code": code}, headers=auth("owner-9"))
        assert resp.status_code == 404
        # play starts in two days
        resp = client.post("/bookings/check-in", json={"code": code}, headers=OWNER)
        assert resp.status_code == 409

    def test_availability(self, client, venue):
        _book(client, venue)
        resp = client.get(f"/availability/venue/{venue.id}?date={_play_day()}")
        assert resp.status_code == 200
        assert resp.get_json()["booked_slots"][0]["start"] == "18:00"
        assert client.get(f"/availability/venue/{venue.id}").status_code == 400
        assert client.get(f"/availability/venue/999?date={_play_day()}").status_code == 404


class TestWebhookGuards:
    def test_bad_signature(self, client, monkeypatch):
        def boom(payload, sig):
            raise ValueError("No signatures found matching the expected signature")

        monkeypatch.setattr(stripe_gateway, "construct_event", boom)
        resp = client.post("/webhooks/stripe", data=b"{}", headers={"Stripe-Signature": "nope"})
        assert resp.status_code == 400

    def test_missing_secret(self, app, client):
        app.config["STRIPE_WEBHOOK_SECRET"] = None
        resp = client.post("/webhooks/stripe", data=b"{}", headers={"Stripe-Signature": "x"})
        assert resp.status_code == 500

    def test_unknown_payment_is_acknowledged(self, webhook):
        assert webhook(_paid(12345)).status_code == 200


class TestCheckout:
    def test_creates_stripe_session(self, client, venue, monkeypatch):
        captured = {}

        def fake_create(**kwargs):
            captured.update(kwargs)
            return {"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"}

        monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
        data = _book(client, venue).get_json()
        payment_id = data["payment_instructions"][0]["payment_id"]

        resp = client.post(f"/payments/{payment_id}/checkout", headers=PLAYER)
        assert resp.status_code == 200
        assert resp.get_json()["checkout_url"].endswith("cs_test_1")
        assert captured["line_items"][0]["price_data"]["unit_amount"] == 2000
        assert captured["metadata"]["payment_id"] == str(payment_id)
        assert payment_ledger.get(payment_id).stripe_session_id == "cs_test_1"

    def test_other_players_payment(self, client, venue):
        data = _book(client, venue).get_json()
        payment_id = data["payment_instructions"][0]["payment_id"]
        assert client.post(f"/payments/{payment_id}/checkout", headers=auth("player-2")).status_code == 404


class TestPromoAdmin:
    def _create(self, client, **extra):
        now = utcnow()
        body = {
            "code": "welcome10",
            "discount_type": "percentage",
            "discount_value": 10,
            "valid_from": (now - timedelta(days=1)).isoformat(),
            "valid_until": (now + timedelta(days=10)).isoformat(),
            "max_discount_amount": 150,
        }
        body.update(extra)
        return client.post("/promo-codes", json=body, headers=ADMIN)

    def test_create_list_deactivate(self, client):
        resp = self._create(client)
        assert resp.status_code == 201
        promo = resp.get_json()
        assert promo["code"] == "WELCOME10"

        assert [p["code"] for p in client.get("/promo-codes/active", headers=PLAYER).get_json()] == ["WELCOME10"]

        resp = client.post(f"/promo-codes/{promo['id']}/deactivate", headers=ADMIN)
        assert resp.get_json()["is_active"] is False
        assert client.get("/promo-codes/active", headers=PLAYER).get_json() == []
        assert AuditLog.query.filter_by(action="PROMO_DEACTIVATE").count() == 1

    def test_create_validation_errors(self, client):
        assert self._create(client, valid_from="yesterday").status_code == 400
        assert self._create(client, discount_value=150).status_code == 400
        assert self._create(client, code="").status_code == 400

    def test_validate_preview(self, client):
        self._create(client)
        resp = client.post("/promo-codes/validate", json={"code": "Welcome10", "booking_amount": 3000}, headers=PLAYER)
        assert resp.get_json() == {"ok": True, "discount": 150, "reason": "Discount of 150 applied"}

    def test_booking_with_promo_feeds_stats(self, client, venue, webhook):
        promo = self._create(client).get_json()
        data = _book(client, venue, promo_code="WELCOME10").get_json()
        assert data["discount_amount"] == 150
        webhook(_paid(data["payment_instructions"][0]["payment_id"]))

        stats = client.get(f"/promo-codes/{promo['id']}/stats", headers=ADMIN).get_json()
        assert stats["total_usage"] == 1
        assert stats["total_discount_given"] == 150
        assert stats["unique_users"] == 1


class TestAuditLogs:
    def test_booking_trail(self, client, venue, webhook):
        data = _book(client, venue).get_json()
        webhook(_paid(data["payment_instructions"][0]["payment_id"]))

        resp = client.get(f"/admin/audit-logs?entity=booking&entity_id={data['booking_id']}", headers=ADMIN)
        assert resp.status_code == 200
        actions = [row["action"] for row in resp.get_json()]
        assert set(actions) == {"BOOKING_INITIATE", "BOOKING_CONFIRMED"}

        assert client.get("/admin/audit-logs", headers=PLAYER).status_code == 403
        assert len(client.get("/admin/audit-logs?limit=1", headers=ADMIN).get_json()) == 1
