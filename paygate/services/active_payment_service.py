"""Active payment service — one outstanding checkout per (user, product).

A live row means "a checkout session already exists, reuse it". Rows are
written only after Stripe returned a session, removed when the checkout
completes, and otherwise simply expire.
"""

import logging
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from paygate.errors import ActivePaymentConflict
from paygate.extensions import db
from paygate.models.active_payment import ActivePayment
from paygate.services.storage import storage_errors
from paygate.timeutil import seconds_until, utcnow

logger = logging.getLogger(__name__)


def find_active_payment(user_id, product_id, now=None):
    """Return the live ActivePayment for the pair, or None if absent/expired."""
    now = now or utcnow()
    with storage_errors("find active payment"):
        return (
            ActivePayment.query
            .filter(
                ActivePayment.user_id == user_id,
                ActivePayment.product_id == product_id,
                ActivePayment.expires_at > now,
            )
            .first()
        )


def conflict_for(active, idempotency_key, now=None):
    """Build the 409 for an existing active payment."""
    now = now or utcnow()
    return ActivePaymentConflict(
        "Payment already in progress.",
        idempotency_key=idempotency_key,
        session_url=active.session_url,
        retry_after=seconds_until(active.expires_at, now),
    )


def insert_active_payment(user_id, product_id, idempotency_key, session_url,
                          ttl_seconds=60, now=None):
    """Mark a checkout as outstanding for (user, product).

    An expired row for the pair is superseded. A live row raises
    ActivePaymentConflict.
    """
    now = now or utcnow()
    with storage_errors("record active payment"):
        ActivePayment.query.filter(
            ActivePayment.user_id == user_id,
            ActivePayment.product_id == product_id,
            ActivePayment.expires_at <= now,
        ).delete(synchronize_session="fetch")

        active = ActivePayment(
            user_id=user_id,
            product_id=product_id,
            idempotency_key=idempotency_key,
            session_url=session_url,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        db.session.add(active)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            existing = find_active_payment(user_id, product_id, now)
            if existing is None:
                raise
            raise conflict_for(existing, idempotency_key, now)
    return active


def remove_active_payment(user_id, product_id, session_url=None):
    """Free the (user, product) slot. Idempotent.

    With `session_url`, only a row for that exact session is removed.
    Uses flush() so the caller controls the commit boundary.
    """
    with storage_errors("remove active payment"):
        query = ActivePayment.query.filter_by(user_id=user_id, product_id=product_id)
        if session_url is not None:
            query = query.filter_by(session_url=session_url)
        removed = query.delete(synchronize_session="fetch")
        db.session.flush()

    if removed:
        logger.info(f"Active payment cleared for user {user_id} / {product_id}")
    return removed > 0


def purge_expired_active_payments(now=None):
    now = now or utcnow()
    with storage_errors("purge active payments"):
        removed = ActivePayment.query.filter(
            ActivePayment.expires_at <= now
        ).delete(synchronize_session="fetch")
        db.session.commit()
    return removed
