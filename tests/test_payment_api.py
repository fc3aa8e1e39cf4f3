"""Tests for the payment blueprint (/api/payment/*).

Covers:
- Bearer token authentication
- create-subscription: success, replay, 409 + Retry-After, validation
- subscription, status, cancel-subscription, products, health
- Security headers
"""

import json
from datetime import timedelta
from unittest.mock import patch

import pytest

from paygate.auth import issue_token
from paygate.extensions import db
from paygate.models.order import SubscriptionOrder
from paygate.products import get_product
from paygate.services import order_service
from paygate.timeutil import utcnow


def _create(client, headers, **body):
    return client.post(
        "/api/payment/create-subscription",
        data=json.dumps(body),
        content_type="application/json",
        headers=headers,
    )


@pytest.fixture
def user_order(app, db_session):
    """Active order for user_1 with a live Stripe subscription."""
    product = get_product("monthly-plan", app.config)
    order = order_service.create_order("user_1", product)
    order_service.update_order(
        order,
        status="active",
        provider_session_id="cs_paid",
        provider_subscription_id="sub_live",
        expires_at=utcnow() + timedelta(days=20),
    )
    db_session.commit()
    return order


class TestAuthentication:

    def test_missing_token_returns_401(self, client):
        resp = _create(client, {}, product_id="monthly-plan")
        assert resp.status_code == 401
        assert json.loads(resp.data)["error"] == "Authentication required"

    def test_bad_token_returns_401(self, client):
        resp = _create(client, {"Authorization": "Bearer not-a-jwt"}, product_id="monthly-plan")
        assert resp.status_code == 401

    def test_wrong_scheme_returns_401(self, client):
        resp = client.get("/api/payment/subscription", headers={"Authorization": "Basic abc"})
        assert resp.status_code == 401

    def test_expired_token_returns_401(self, client, app):
        token = issue_token("user_1", expires_in=timedelta(seconds=-10))
        resp = client.get(
            "/api/payment/subscription", headers={"Authorization": f"Bearer {token}"}
        )
        assert resp.status_code == 401


class TestCreateSubscription:

    def test_success(self, client, auth_headers, stripe_sessions):
        resp = _create(client, auth_headers, product_id="monthly-plan", idempotency_key="k-1")
        assert resp.status_code == 200

        data = json.loads(resp.data)
        assert data["session_id"] == "cs_test_1"
        assert data["checkout_url"].endswith("cs_test_1")
        assert data["status"] == "pending"
        assert data["order_id"].startswith("order_")
        assert "replayed" not in data

    def test_email_falls_back_to_token_claim(self, client, auth_headers, stripe_sessions):
        _create(client, auth_headers, product_id="monthly-plan", idempotency_key="k-1")
        assert stripe_sessions.call_args.kwargs["customer_email"] == "joe@example.com"

    def test_body_email_wins(self, client, auth_headers, stripe_sessions):
        _create(
            client, auth_headers,
            product_id="monthly-plan", idempotency_key="k-1", customer_email="billing@example.com",
        )
        assert stripe_sessions.call_args.kwargs["customer_email"] == "billing@example.com"

    def test_replay_with_same_key(self, client, auth_headers, stripe_sessions):
        first = json.loads(_create(client, auth_headers, product_id="monthly-plan", idempotency_key="k-1").data)
        resp = _create(client, auth_headers, product_id="monthly-plan", idempotency_key="k-1")

        assert resp.status_code == 200
        assert json.loads(resp.data)["order_id"] == first["order_id"]
        assert stripe_sessions.call_count == 1

    def test_conflict_returns_409_with_retry_after(self, client, auth_headers, stripe_sessions):
        first = json.loads(_create(client, auth_headers, product_id="monthly-plan", idempotency_key="k-1").data)
        resp = _create(client, auth_headers, product_id="monthly-plan", idempotency_key="k-2")

        assert resp.status_code == 409
        data = json.loads(resp.data)
        assert data["reason"] == "active_payment"
        assert data["session_url"] == first["checkout_url"]
        assert data["idempotency_key"] == "k-2"
        assert 1 <= data["retry_after_seconds"] <= 60
        assert resp.headers["Retry-After"] == str(data["retry_after_seconds"])

    def test_unknown_product_returns_400(self, client, auth_headers, stripe_sessions):
        resp = _create(client, auth_headers, product_id="lifetime")
        assert resp.status_code == 400
        assert "Unknown product" in json.loads(resp.data)["error"]
        assert stripe_sessions.call_count == 0

    def test_missing_product_returns_400(self, client, auth_headers, stripe_sessions):
        resp = _create(client, auth_headers)
        assert resp.status_code == 400

    def test_non_json_body_returns_400(self, client, auth_headers):
        resp = client.post(
            "/api/payment/create-subscription",
            data="product_id=monthly-plan",
            content_type="application/x-www-form-urlencoded",
            headers=auth_headers,
        )
        assert resp.status_code == 400
        assert json.loads(resp.data)["error"] == "Request body must be a JSON object"

    def test_stripe_down_returns_500(self, client, auth_headers, app):
        import stripe

        with patch(
            "paygate.services.stripe_service.stripe.checkout.Session.create",
            side_effect=stripe.APIConnectionError("connection refused"),
        ):
            resp = _create(client, auth_headers, product_id="monthly-plan", idempotency_key="k-1")

        assert resp.status_code == 500
        assert json.loads(resp.data) == {"error": "Payment service temporarily unavailable"}

        with app.app_context():
            order = SubscriptionOrder.query.one()
            assert order.status == "pending"

    def test_get_not_allowed(self, client, auth_headers):
        resp = client.get("/api/payment/create-subscription", headers=auth_headers)
        assert resp.status_code == 405


class TestSubscriptionStatus:

    def test_no_subscription(self, client, auth_headers):
        resp = client.get("/api/payment/subscription", headers=auth_headers)
        data = json.loads(resp.data)
        assert resp.status_code == 200
        assert data["is_active"] is False
        assert data["subscription"] is None
        assert data["orders"] == []

    def test_active_subscription(self, client, auth_headers, user_order):
        data = json.loads(client.get("/api/payment/subscription", headers=auth_headers).data)
        assert data["is_active"] is True
        assert data["subscription"]["order_id"] == user_order.order_id
        assert len(data["orders"]) == 1

    def test_payment_status_by_session(self, client, auth_headers, user_order):
        resp = client.get("/api/payment/status/cs_paid", headers=auth_headers)
        data = json.loads(resp.data)
        assert resp.status_code == 200
        assert data["status"] == "success"
        assert data["order_status"] == "active"
        assert data["order_id"] == user_order.order_id

    def test_payment_status_pending(self, client, auth_headers, stripe_sessions):
        created = json.loads(_create(client, auth_headers, product_id="monthly-plan", idempotency_key="k-1").data)
        data = json.loads(client.get(f"/api/payment/status/{created['session_id']}", headers=auth_headers).data)
        assert data["status"] == "pending"

    def test_payment_status_unknown_session(self, client, auth_headers):
        resp = client.get("/api/payment/status/cs_nope", headers=auth_headers)
        assert resp.status_code == 404
        assert json.loads(resp.data)["status"] == "not_found"

    def test_payment_status_other_users_session(self, client, user_order, app):
        token = issue_token("user_2")
        resp = client.get(
            "/api/payment/status/cs_paid", headers={"Authorization": f"Bearer {token}"}
        )
        assert resp.status_code == 404


class TestCancelSubscription:

    @patch("paygate.services.stripe_service.stripe.Subscription.cancel")
    def test_cancel_calls_stripe(self, mock_cancel, client, auth_headers, user_order):
        resp = client.post(
            "/api/payment/cancel-subscription",
            data=json.dumps({"order_id": user_order.order_id}),
            content_type="application/json",
            headers=auth_headers,
        )
        assert resp.status_code == 202
        assert json.loads(resp.data)["status"] == "cancel_requested"
        mock_cancel.assert_called_once_with("sub_live")

    @patch("paygate.services.stripe_service.stripe.Subscription.cancel")
    def test_cannot_cancel_other_users_order(self, mock_cancel, client, user_order, app):
        token = issue_token("user_2")
        resp = client.post(
            "/api/payment/cancel-subscription",
            data=json.dumps({"order_id": user_order.order_id}),
            content_type="application/json",
            headers={"Authorization": f"Bearer {token}"},
        )
        assert resp.status_code == 404
        mock_cancel.assert_not_called()

    def test_pending_order_not_cancellable(self, client, auth_headers, stripe_sessions):
        created = json.loads(_create(client, auth_headers, product_id="monthly-plan", idempotency_key="k-1").data)
        resp = client.post(
            "/api/payment/cancel-subscription",
            data=json.dumps({"order_id": created["order_id"]}),
            content_type="application/json",
            headers=auth_headers,
        )
        assert resp.status_code == 400


class TestPublicEndpoints:

    def test_products(self, client):
        data = json.loads(client.get("/api/payment/products").data)
        ids = [p["product_id"] for p in data["products"]]
        assert ids == ["monthly-plan", "monthly-plan-pro"]
        assert data["products"][0]["amount"] == "9.90"

    def test_health(self, client):
        resp = client.get("/api/payment/health")
        assert resp.status_code == 200
        assert json.loads(resp.data)["status"] == "healthy"

    def test_unknown_route_is_json_404(self, client):
        resp = client.get("/api/payment/nope")
        assert resp.status_code == 404
        assert json.loads(resp.data) == {"error": "Not found"}


class TestSecurityHeaders:

    def test_headers_present(self, client):
        resp = client.get("/api/payment/health")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert resp.headers["Cache-Control"] == "no-store"

    def test_no_hsts_in_debug(self, client):
        resp = client.get("/api/payment/health")
        assert "Strict-Transport-Security" not in resp.headers
