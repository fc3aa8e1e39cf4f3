"""Webhook service — the processed-event ledger.

Stripe delivers events at least once. Each processed event id is stored in
payment_events; a redelivery finds its row and is acknowledged without
touching any order.
"""

import logging

from paygate.extensions import db
from paygate.models.payment_event import PaymentEvent
from paygate.services.storage import storage_errors
from paygate.timeutil import utcnow

logger = logging.getLogger(__name__)


def is_event_processed(event_id):
    with storage_errors("check webhook event"):
        return db.session.get(PaymentEvent, event_id) is not None


def record_event(event_id, event_type, order_id=None, now=None):
    """Add the ledger row to the session.

    Not committed here: the reconciler commits it together with the order
    changes, so either both land or neither does.
    """
    event = PaymentEvent(
        event_id=event_id,
        event_type=event_type,
        order_id=order_id,
        processed_at=now or utcnow(),
    )
    db.session.add(event)
    return event


def prune_events(older_than):
    """Delete ledger rows processed before `older_than`. Returns count."""
    with storage_errors("prune webhook events"):
        removed = PaymentEvent.query.filter(
            PaymentEvent.processed_at < older_than
        ).delete(synchronize_session="fetch")
        db.session.commit()
    if removed:
        logger.info(f"Pruned {removed} webhook events processed before {older_than}")
    return removed
