"""Payment event model (webhook idempotency table).

Every Stripe webhook event is recorded by its event ID. Before processing
any event, the reconciler checks this table. If the event_id already
exists, it returns 200 immediately, so Stripe retries never write twice.
"""

from paygate.extensions import db
from paygate.timeutil import utcnow


class PaymentEvent(db.Model):
    __tablename__ = "payment_events"

    event_id = db.Column(db.String(255), primary_key=True)  # e.g. "evt_1Abc..."
    event_type = db.Column(
        db.String(255), nullable=False, index=True
    )  # e.g. "checkout.session.completed"
    processed_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow
    )
    order_id = db.Column(db.String(64), nullable=True, index=True)

    def __repr__(self):
        return f"<PaymentEvent {self.event_id} ({self.event_type})>"
