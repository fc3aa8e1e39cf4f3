"""Stripe service — the narrow interface to the payment provider.

Responsible for:
- Creating Stripe Checkout Sessions (with a Stripe idempotency key)
- Retrieving and cancelling subscriptions
- Verifying webhook signatures and constructing events
- Extracting paid-through dates from subscription objects

Everything Stripe-specific that the orchestrator and reconciler need goes
through StripeGateway, so tests can swap in a fake.
"""

import logging

import stripe

from paygate.errors import ProviderError, ProviderIdempotencyError
from paygate.timeutil import from_timestamp

logger = logging.getLogger(__name__)


def extract_subscription_expiry(sub_data):
    """Paid-through date of a Stripe subscription object.

    Checks, in order: current_period_end (top level, older API versions),
    items.data[0].current_period_end (newer API versions),
    billing_cycle_anchor, trial_end.

    Returns a timezone-aware datetime or None.
    """
    ts = sub_data.get("current_period_end")

    if not ts:
        items = sub_data.get("items")
        if items and items.get("data") and len(items["data"]) > 0:
            ts = items["data"][0].get("current_period_end")

    if not ts:
        ts = sub_data.get("billing_cycle_anchor")
    if not ts:
        ts = sub_data.get("trial_end")

    return from_timestamp(ts) if ts else None


class StripeGateway:
    """Stripe API calls used by checkout and reconciliation."""

    def __init__(self, api_key, webhook_secret, success_url, cancel_url):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.success_url = success_url
        self.cancel_url = cancel_url

    @classmethod
    def from_config(cls, config):
        return cls(
            api_key=config["STRIPE_SECRET_KEY"],
            webhook_secret=config["STRIPE_WEBHOOK_SECRET"],
            success_url=config["PAYMENT_SUCCESS_URL"],
            cancel_url=config["PAYMENT_CANCEL_URL"],
        )

    # ──────────────────────────────────────────────
    # Checkout
    # ──────────────────────────────────────────────

    def create_checkout_session(self, order, product, customer_email=None,
                                idempotency_key=None):
        """Create a Checkout Session for `order`.

        The order id travels in session (and subscription) metadata so
        webhooks can find the order again. `idempotency_key` is passed to
        Stripe so its own retries are deduplicated too.

        Returns the Stripe session (has .id and .url).
        Raises ProviderIdempotencyError if Stripe rejects the key reuse,
        ProviderError on any other Stripe failure.
        """
        stripe.api_key = self.api_key

        metadata = {
            "order_id": order.order_id,
            "user_id": order.user_id,
            "product_id": order.product_id,
        }
        params = {
            "mode": product["mode"],
            "line_items": [{"price": product["price_id"], "quantity": 1}],
            "success_url": self.success_url,
            "cancel_url": self.cancel_url,
            "client_reference_id": order.user_id,
            "metadata": metadata,
        }
        if product["mode"] == "subscription":
            params["subscription_data"] = {"metadata": metadata}
        if customer_email:
            params["customer_email"] = customer_email

        try:
            session = stripe.checkout.Session.create(
                idempotency_key=idempotency_key, **params
            )
        except stripe.IdempotencyError as e:
            logger.warning(f"Stripe idempotency conflict for order {order.order_id}: {e}")
            raise ProviderIdempotencyError(str(e)) from e
        except stripe.StripeError as e:
            logger.error(f"Failed to create checkout session for order {order.order_id}: {e}")
            raise ProviderError(f"Failed to create checkout session: {e}") from e

        logger.info(f"Stripe checkout session {session.id} created for order {order.order_id}")
        return session

    # ──────────────────────────────────────────────
    # Subscriptions
    # ──────────────────────────────────────────────

    def retrieve_subscription(self, subscription_id):
        stripe.api_key = self.api_key
        try:
            return stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            logger.error(f"Failed to retrieve subscription {subscription_id}: {e}")
            raise ProviderError(f"Failed to retrieve subscription: {e}") from e

    def cancel_subscription(self, subscription_id):
        """Cancel immediately. The order follows via customer.subscription.deleted."""
        stripe.api_key = self.api_key
        try:
            return stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as e:
            logger.error(f"Failed to cancel subscription {subscription_id}: {e}")
            raise ProviderError(f"Failed to cancel subscription: {e}") from e

    # ──────────────────────────────────────────────
    # Webhooks
    # ──────────────────────────────────────────────

    def construct_event(self, payload, sig_header):
        """Verify Stripe webhook signature and construct the event.

        Raises stripe.SignatureVerificationError on invalid signature,
        ValueError on an unparseable payload.
        """
        return stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
