"""Subscription order model.

One row per checkout attempt. subscription_orders.status is the source of
truth for entitlement; it is only changed by the checkout orchestrator
(session attach) and the webhook reconciler.
"""

import secrets

from paygate.extensions import db
from paygate.timeutil import as_utc, utcnow


def generate_order_id():
    return f"order_{secrets.token_hex(8)}"


class SubscriptionOrder(db.Model):
    __tablename__ = "subscription_orders"

    # -- Valid statuses --
    STATUSES = [
        "pending",
        "active",
        "canceled",
        "expired",
        "incomplete",
    ]

    order_id = db.Column(
        db.String(64), primary_key=True, default=generate_order_id
    )
    user_id = db.Column(db.String(255), nullable=False, index=True)
    product_id = db.Column(db.String(100), nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default="pending", index=True
    )  # pending | active | canceled | expired | incomplete
    plan = db.Column(db.String(255), nullable=False)  # e.g. "monthly-plan_9.90_USD"
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    customer_email = db.Column(db.String(255), nullable=True)
    checkout_url = db.Column(db.Text, nullable=True)
    provider_session_id = db.Column(
        db.String(255), nullable=True, index=True
    )  # e.g. "cs_test_..."
    provider_subscription_id = db.Column(
        db.String(255), unique=True, nullable=True
    )  # e.g. "sub_..."
    provider_customer_id = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending', 'active', 'canceled', 'expired', 'incomplete')",
            name="ck_subscription_orders_status",
        ),
    )

    def is_active_at(self, now):
        """Active and not past its paid-through date."""
        if self.status != "active":
            return False
        return self.expires_at is None or as_utc(self.expires_at) > as_utc(now)

    def to_dict(self):
        expires_at = as_utc(self.expires_at)
        return {
            "order_id": self.order_id,
            "product_id": self.product_id,
            "plan": self.plan,
            "status": self.status,
            "amount": str(self.amount),
            "currency": self.currency,
            "session_id": self.provider_session_id,
            "created_at": as_utc(self.created_at).isoformat(),
            "updated_at": as_utc(self.updated_at).isoformat(),
            "expires_at": expires_at.isoformat() if expires_at else None,
        }

    def __repr__(self):
        return f"<SubscriptionOrder {self.order_id} ({self.status})>"
