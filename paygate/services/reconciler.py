"""Reconciler — applies Stripe webhook events to subscription orders.

Responsible for:
- Dispatching verified events to event-specific handlers
- Idempotency via the payment_events ledger
- Resolving the order an event refers to (never guessing)
- Enforcing the order status state machine

Order lookup, in order: explicit order_id in metadata, Stripe session id,
Stripe subscription id. An explicit order_id whose order is already bound
to a different subscription is not trusted.
"""

import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from paygate.errors import ProviderError
from paygate.extensions import db
from paygate.services import active_payment_service, order_service, webhook_service
from paygate.services.stripe_service import extract_subscription_expiry
from paygate.timeutil import from_timestamp, utcnow

logger = logging.getLogger(__name__)

# Same-status updates are always allowed. canceled and expired are terminal.
ALLOWED_TRANSITIONS = {
    "pending": {"active", "canceled", "expired", "incomplete"},
    "active": {"canceled", "expired", "incomplete"},
    "incomplete": {"active", "canceled", "expired"},
    "canceled": set(),
    "expired": set(),
}

INVOICE_FALLBACK_PERIOD = timedelta(days=30)


def map_subscription_status(stripe_status):
    """Map a Stripe subscription status to an order status.

        active / trialing                         -> active
        canceled / unpaid                         -> canceled
        past_due / incomplete / incomplete_expired -> incomplete
        anything else                             -> pending
    """
    if stripe_status in ("active", "trialing"):
        return "active"
    if stripe_status in ("canceled", "unpaid"):
        return "canceled"
    if stripe_status in ("past_due", "incomplete", "incomplete_expired"):
        return "incomplete"
    return "pending"


def get_reconciler():
    """The reconciler bound to the current app."""
    return current_app.extensions["paygate.reconciler"]


def _object_id(value):
    """Stripe fields like `subscription` may be an id or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _invoice_subscription_id(invoice):
    # Older API versions put it top-level, newer ones under parent.
    sub_id = _object_id(invoice.get("subscription"))
    if not sub_id:
        parent = invoice.get("parent") or {}
        sub_id = (parent.get("subscription_details") or {}).get("subscription")
    return sub_id


def _invoice_order_ref(invoice):
    details = invoice.get("subscription_details")
    if not details:
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return (details.get("metadata") or {}).get("order_id")


class OrderReconciler:
    """Converges subscription_orders to what Stripe reports."""

    def __init__(self, provider, clock=utcnow):
        self.provider = provider
        self.clock = clock
        self._handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "checkout.session.expired": self._handle_checkout_expired,
            "customer.subscription.created": self._handle_subscription_updated,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_succeeded": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_payment_failed,
        }

    def handle_event(self, event):
        """Process a verified Stripe webhook event.

        Idempotency: checks payment_events before processing. If the event
        was already processed, returns immediately. Order changes and the
        ledger row are committed together.

        Returns (success: bool, message: str).
        """
        event_id = event["id"]
        event_type = event["type"]

        # --- Idempotency check ---
        if webhook_service.is_event_processed(event_id):
            logger.info(f"Duplicate webhook event {event_id}, skipping")
            return True, "already_processed"

        # --- Route to handler ---
        handler = self._handlers.get(event_type)
        order = None
        if handler:
            try:
                order = handler(event["data"]["object"])
            except Exception as e:
                logger.error(f"Error handling {event_type}: {e}", exc_info=True)
                db.session.rollback()
                return False, str(e)
        else:
            logger.info(f"Unhandled webhook event type {event_type} ({event_id}), ignoring")

        # --- Record event for idempotency ---
        webhook_service.record_event(
            event_id, event_type, order.order_id if order else None, self.clock()
        )
        try:
            db.session.commit()
        except IntegrityError as e:
            db.session.rollback()
            if webhook_service.is_event_processed(event_id):
                logger.info(f"Webhook event {event_id} processed concurrently, skipping")
                return True, "already_processed"
            logger.error(f"Integrity error recording {event_type} {event_id}: {e}")
            return False, "integrity error"
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Database error recording {event_type} {event_id}: {e}", exc_info=True)
            return False, "database error"

        return True, "processed" if handler else "ignored"

    # ──────────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────────

    def _resolve_order(self, event_type, order_ref=None, session_id=None,
                       subscription_id=None):
        order = order_service.get_order(order_ref) if order_ref else None

        if (order is not None and subscription_id
                and order.provider_subscription_id
                and order.provider_subscription_id != subscription_id):
            logger.warning(
                f"{event_type}: order {order.order_id} is bound to "
                f"{order.provider_subscription_id}, not {subscription_id}; ignoring order_id"
            )
            order = None

        if order is None and session_id:
            order = order_service.get_order_by_session_id(session_id)
        if order is None and subscription_id:
            order = order_service.get_order_by_subscription_id(subscription_id)

        if order is None:
            logger.warning(
                f"{event_type}: no order for order_id={order_ref} "
                f"session={session_id} subscription={subscription_id}, skipping"
            )
        return order

    @staticmethod
    def _next_status(order, new_status, event_type):
        if new_status == order.status:
            return new_status
        if new_status in ALLOWED_TRANSITIONS.get(order.status, set()):
            return new_status
        logger.warning(
            f"{event_type}: refusing transition {order.status} -> {new_status} "
            f"for order {order.order_id}"
        )
        return order.status

    # ──────────────────────────────────────────────
    # Event Handlers
    # ──────────────────────────────────────────────

    def _handle_checkout_completed(self, session):
        """Handle checkout.session.completed.

        Activates the order, stores the Stripe subscription/customer ids,
        takes the paid-through date from the subscription and frees the
        (user, product) active payment slot.
        """
        event_type = "checkout.session.completed"
        metadata = session.get("metadata") or {}
        subscription_id = _object_id(session.get("subscription"))
        customer_id = _object_id(session.get("customer"))

        order = self._resolve_order(
            event_type,
            order_ref=metadata.get("order_id"),
            session_id=session.get("id"),
            subscription_id=subscription_id,
        )
        if order is None:
            return None

        fields = {"status": self._next_status(order, "active", event_type)}
        if session.get("id") and not order.provider_session_id:
            fields["provider_session_id"] = session["id"]
        if subscription_id:
            fields["provider_subscription_id"] = subscription_id
        if customer_id:
            fields["provider_customer_id"] = customer_id

        if subscription_id:
            try:
                sub = self.provider.retrieve_subscription(subscription_id)
            except ProviderError as e:
                logger.warning(
                    f"{event_type}: could not fetch {subscription_id} for order "
                    f"{order.order_id}, expiry left unset: {e}"
                )
            else:
                expires_at = extract_subscription_expiry(sub)
                if expires_at:
                    fields["expires_at"] = expires_at

        order_service.update_order(order, now=self.clock(), **fields)
        active_payment_service.remove_active_payment(order.user_id, order.product_id)

        logger.info(
            f"Checkout completed: order {order.order_id} -> {order.status} "
            f"(subscription={subscription_id})"
        )
        return order

    def _handle_checkout_expired(self, session):
        """Handle checkout.session.expired.

        A still-pending order is marked expired and its active payment row
        is released if it still points at this checkout.
        """
        event_type = "checkout.session.expired"
        metadata = session.get("metadata") or {}

        order = self._resolve_order(
            event_type,
            order_ref=metadata.get("order_id"),
            session_id=session.get("id"),
        )
        if order is None:
            return None

        if order.status == "pending":
            order_service.update_order(order, now=self.clock(), status="expired")
            if order.checkout_url:
                active_payment_service.remove_active_payment(
                    order.user_id, order.product_id, session_url=order.checkout_url
                )
            logger.info(f"Checkout expired: order {order.order_id} -> expired")
        return order

    def _handle_subscription_updated(self, sub_data):
        """Handle customer.subscription.created / .updated.

        Maps the Stripe status and refreshes the paid-through date.
        """
        event_type = "customer.subscription.updated"
        subscription_id = sub_data.get("id")
        metadata = sub_data.get("metadata") or {}

        order = self._resolve_order(
            event_type,
            order_ref=metadata.get("order_id"),
            subscription_id=subscription_id,
        )
        if order is None:
            return None

        status = map_subscription_status(sub_data.get("status"))
        fields = {"status": self._next_status(order, status, event_type)}
        if subscription_id and not order.provider_subscription_id:
            fields["provider_subscription_id"] = subscription_id
        customer_id = _object_id(sub_data.get("customer"))
        if customer_id and not order.provider_customer_id:
            fields["provider_customer_id"] = customer_id

        expires_at = extract_subscription_expiry(sub_data)
        if expires_at:
            fields["expires_at"] = expires_at

        order_service.update_order(order, now=self.clock(), **fields)
        logger.info(
            f"Subscription {subscription_id} is {sub_data.get('status')}: "
            f"order {order.order_id} -> {order.status}"
        )
        return order

    def _handle_subscription_deleted(self, sub_data):
        """Handle customer.subscription.deleted. Marks the order canceled."""
        event_type = "customer.subscription.deleted"
        subscription_id = sub_data.get("id")
        metadata = sub_data.get("metadata") or {}

        order = self._resolve_order(
            event_type,
            order_ref=metadata.get("order_id"),
            subscription_id=subscription_id,
        )
        if order is None:
            return None

        order_service.update_order(
            order,
            now=self.clock(),
            status=self._next_status(order, "canceled", event_type),
        )
        logger.info(f"Subscription {subscription_id} deleted: order {order.order_id} canceled")
        return order

    def _handle_invoice_paid(self, invoice):
        """Handle invoice.paid / invoice.payment_succeeded.

        Activates the order and extends it to the invoice period end
        (period start + 30 days when Stripe sends no end).
        """
        event_type = "invoice.paid"
        subscription_id = _invoice_subscription_id(invoice)
        order_ref = _invoice_order_ref(invoice)
        if not subscription_id and not order_ref:
            logger.info(f"{event_type}: invoice {invoice.get('id')} has no subscription, skipping")
            return None

        order = self._resolve_order(
            event_type, order_ref=order_ref, subscription_id=subscription_id
        )
        if order is None:
            return None

        expires_at = from_timestamp(invoice.get("period_end"))
        if expires_at is None:
            period_start = from_timestamp(invoice.get("period_start"))
            if period_start is not None:
                expires_at = period_start + INVOICE_FALLBACK_PERIOD

        fields = {"status": self._next_status(order, "active", event_type)}
        if subscription_id and not order.provider_subscription_id:
            fields["provider_subscription_id"] = subscription_id
        if expires_at:
            fields["expires_at"] = expires_at

        order_service.update_order(order, now=self.clock(), **fields)
        logger.info(
            f"Invoice paid for {subscription_id}: order {order.order_id} "
            f"active until {expires_at}"
        )
        return order

    def _handle_payment_failed(self, invoice):
        """Handle invoice.payment_failed. Marks the order incomplete."""
        event_type = "invoice.payment_failed"
        subscription_id = _invoice_subscription_id(invoice)
        order_ref = _invoice_order_ref(invoice)
        if not subscription_id and not order_ref:
            logger.info(f"{event_type}: invoice {invoice.get('id')} has no subscription, skipping")
            return None

        order = self._resolve_order(
            event_type, order_ref=order_ref, subscription_id=subscription_id
        )
        if order is None:
            return None

        order_service.update_order(
            order,
            now=self.clock(),
            status=self._next_status(order, "incomplete", event_type),
        )
        logger.info(
            f"Invoice payment failed for {subscription_id}: order {order.order_id} "
            f"-> {order.status} (amount_due={invoice.get('amount_due')})"
        )
        return order
