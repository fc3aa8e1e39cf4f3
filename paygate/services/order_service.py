"""Order service — the subscription order store.

Responsible for:
- Creating pending orders for a checkout attempt
- Looking orders up by id, Stripe session id, Stripe subscription id, user
- Applying field updates (orchestrator: session attach; reconciler: status)
"""

import logging

from paygate.extensions import db
from paygate.models.order import SubscriptionOrder
from paygate.products import plan_code
from paygate.services.storage import storage_errors
from paygate.timeutil import utcnow

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {
    "status",
    "provider_session_id",
    "provider_subscription_id",
    "provider_customer_id",
    "checkout_url",
    "expires_at",
}


def create_order(user_id, product, customer_email=None, now=None):
    """Insert a pending order for `product` (a dict from get_product).

    Returns the committed SubscriptionOrder.
    """
    now = now or utcnow()
    order = SubscriptionOrder(
        user_id=user_id,
        product_id=product["product_id"],
        status="pending",
        plan=plan_code(product),
        amount=product["amount"],
        currency=product["currency"],
        customer_email=customer_email,
        created_at=now,
        updated_at=now,
    )
    with storage_errors("create order"):
        db.session.add(order)
        db.session.commit()

    logger.info(f"Order {order.order_id} created for user {user_id} ({order.plan})")
    return order


def get_order(order_id):
    if not order_id:
        return None
    with storage_errors("load order"):
        return db.session.get(SubscriptionOrder, order_id)


def get_order_by_session_id(session_id):
    if not session_id:
        return None
    with storage_errors("load order by session"):
        return SubscriptionOrder.query.filter_by(
            provider_session_id=session_id
        ).first()


def get_order_by_subscription_id(subscription_id):
    if not subscription_id:
        return None
    with storage_errors("load order by subscription"):
        return SubscriptionOrder.query.filter_by(
            provider_subscription_id=subscription_id
        ).first()


def get_orders_for_user(user_id):
    """All orders for a user, newest first."""
    with storage_errors("load orders for user"):
        return (
            SubscriptionOrder.query
            .filter_by(user_id=user_id)
            .order_by(SubscriptionOrder.created_at.desc())
            .all()
        )


def get_active_order_for_user(user_id, now=None):
    """Most recent active, unexpired order for a user, or None."""
    now = now or utcnow()
    with storage_errors("load active order"):
        return (
            SubscriptionOrder.query
            .filter(
                SubscriptionOrder.user_id == user_id,
                SubscriptionOrder.status == "active",
                db.or_(
                    SubscriptionOrder.expires_at.is_(None),
                    SubscriptionOrder.expires_at > now,
                ),
            )
            .order_by(SubscriptionOrder.created_at.desc())
            .first()
        )


def update_order(order, now=None, **fields):
    """Apply field updates and bump updated_at.

    Uses flush() so the caller controls the commit boundary.
    """
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update order fields: {', '.join(sorted(unknown))}")

    for name, value in fields.items():
        setattr(order, name, value)
    order.updated_at = now or utcnow()

    with storage_errors("update order"):
        db.session.flush()
    return order


def attach_checkout_session(order_id, session_id, checkout_url, now=None):
    """Store the Stripe session on a freshly created order (committed)."""
    order = get_order(order_id)
    if order is None:
        raise ValueError(f"Order {order_id} not found")

    update_order(
        order,
        now=now,
        provider_session_id=session_id,
        checkout_url=checkout_url,
    )
    with storage_errors("attach checkout session"):
        db.session.commit()
    return order
