"""Payment blueprint — /api/payment/*

Authenticated JSON API for starting and inspecting subscriptions.

Routes:
- POST /api/payment/create-subscription  — create (or replay) a Checkout Session
- GET  /api/payment/subscription         — caller's active subscription + orders
- GET  /api/payment/status/<session_id>  — payment status for a checkout session
- POST /api/payment/cancel-subscription  — cancel the caller's subscription at Stripe
- GET  /api/payment/products             — configured products
- GET  /api/payment/health               — liveness probe
"""

import logging

from flask import Blueprint, current_app, g, jsonify
from flask_login import current_user, login_required

from paygate.decorators import json_body_required
from paygate.errors import ValidationError
from paygate.extensions import limiter
from paygate.products import list_products
from paygate.services import order_service
from paygate.services.checkout_service import get_checkout_orchestrator
from paygate.timeutil import utcnow

logger = logging.getLogger(__name__)

payment_bp = Blueprint("payment", __name__, url_prefix="/api/payment")

# order.status -> what the success page shows
PAYMENT_STATUS_BY_ORDER_STATUS = {
    "pending": ("pending", None),
    "active": ("success", None),
    "canceled": ("cancelled", "Payment was cancelled"),
    "expired": ("failed", "Payment expired"),
    "incomplete": ("failed", "Payment incomplete"),
}


def _checkout_rate_limit():
    return current_app.config["CHECKOUT_RATE_LIMIT"]


# ──────────────────────────────────────────────
# POST /api/payment/create-subscription
# ──────────────────────────────────────────────

@payment_bp.route("/create-subscription", methods=["POST"])
@limiter.limit(_checkout_rate_limit)
@login_required
@json_body_required
def create_subscription():
    """Create a Stripe Checkout Session for the caller.

    Body: {product_id, customer_email?, idempotency_key?}

    Safe to retry: a repeat with the same idempotency key (or inside the
    same time bucket) returns the original order and session. 409 when a
    checkout for this product is already outstanding or being created.
    """
    body = g.json_body
    result = get_checkout_orchestrator().create_checkout(
        user_id=current_user.id,
        product_id=body.get("product_id"),
        customer_email=body.get("customer_email") or current_user.email,
        idempotency_key=body.get("idempotency_key"),
    )
    return jsonify({
        "checkout_url": result["checkout_url"],
        "order_id": result["order_id"],
        "session_id": result["session_id"],
        "status": result["status"],
    }), 200


# ──────────────────────────────────────────────
# GET /api/payment/subscription
# ──────────────────────────────────────────────

@payment_bp.route("/subscription")
@login_required
def subscription():
    """Whether the caller currently has an active, unexpired subscription."""
    active = order_service.get_active_order_for_user(current_user.id, utcnow())
    orders = order_service.get_orders_for_user(current_user.id)
    return jsonify({
        "is_active": active is not None,
        "subscription": active.to_dict() if active else None,
        "orders": [order.to_dict() for order in orders],
    })


# ──────────────────────────────────────────────
# GET /api/payment/status/<session_id>
# ──────────────────────────────────────────────

@payment_bp.route("/status/<session_id>")
@login_required
def payment_status(session_id):
    """JSON endpoint polled by the success page after Stripe redirects back.

    The webhook updates the order asynchronously; this only reads it.
    """
    order = order_service.get_order_by_session_id(session_id)
    if order is None or order.user_id != current_user.id:
        return jsonify({
            "error": "Order not found",
            "session_id": session_id,
            "status": "not_found",
        }), 404

    status, error = PAYMENT_STATUS_BY_ORDER_STATUS.get(order.status, ("pending", None))
    return jsonify(dict(
        order.to_dict(),
        session_id=session_id,
        status=status,
        order_status=order.status,
        error=error,
    ))


# ──────────────────────────────────────────────
# POST /api/payment/cancel-subscription
# ──────────────────────────────────────────────

@payment_bp.route("/cancel-subscription", methods=["POST"])
@login_required
@json_body_required
def cancel_subscription():
    """Ask Stripe to cancel the subscription behind one of the caller's orders.

    The order itself changes when customer.subscription.deleted arrives.
    """
    order_id = g.json_body.get("order_id")
    if not order_id:
        raise ValidationError("order_id is required")

    order = order_service.get_order(order_id)
    if order is None or order.user_id != current_user.id:
        return jsonify({"error": "Order not found"}), 404
    if not order.provider_subscription_id or order.status not in ("active", "incomplete"):
        raise ValidationError(f"Order {order_id} has no cancellable subscription")

    current_app.extensions["paygate.provider"].cancel_subscription(
        order.provider_subscription_id
    )
    logger.info(f"Cancellation requested for order {order_id} by user {current_user.id}")
    return jsonify({"order_id": order_id, "status": "cancel_requested"}), 202


# ──────────────────────────────────────────────
# GET /api/payment/products, /api/payment/health
# ──────────────────────────────────────────────

@payment_bp.route("/products")
def products():
    return jsonify({"products": list_products(current_app.config)})


@payment_bp.route("/health")
def health():
    return jsonify({"status": "healthy", "service": "payment"})
