"""Webhooks blueprint — /webhooks/stripe

Receives Stripe webhook events.
Raw body is required for signature verification.
"""

import logging

from flask import Blueprint, current_app, request, jsonify

from paygate.services.reconciler import get_reconciler

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")


@webhooks_bp.route("/stripe", methods=["POST"])
def stripe_webhook():
    """Receive and process Stripe webhook events.

    1. Get raw body (required for signature verification)
    2. Verify signature with STRIPE_WEBHOOK_SECRET
    3. Pass to the reconciler (idempotent via payment_events table)
    4. Return 200 to acknowledge receipt, 500 to make Stripe redeliver
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("Webhook received without Stripe-Signature header")
        return jsonify({"error": "Missing signature"}), 400

    # --- Verify signature ---
    try:
        event = current_app.extensions["paygate.provider"].construct_event(
            payload, sig_header
        )
    except Exception as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        return jsonify({"error": "Invalid signature"}), 400

    logger.info(f"Webhook received: {event['type']} ({event['id']})")

    # --- Process event (idempotent) ---
    success, message = get_reconciler().handle_event(event)

    if success:
        return jsonify({"status": message}), 200
    else:
        logger.error(f"Webhook processing failed: {message}")
        return jsonify({"error": message}), 500
