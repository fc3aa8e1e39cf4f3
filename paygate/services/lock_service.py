"""Lock service — short-TTL mutual exclusion per (user, product).

Closes the race the active payment row cannot: that row only exists after
Stripe answered, so two requests arriving together would both get past
it. The lock is an INSERT against the composite primary key; whoever
inserts first holds it until release or until expires_at passes.
"""

import logging
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from paygate.extensions import db
from paygate.models.concurrency_lock import ConcurrencyLock
from paygate.services.storage import storage_errors
from paygate.timeutil import utcnow

logger = logging.getLogger(__name__)


def try_acquire_lock(user_id, product_id, request_id, ttl_seconds=10, now=None):
    """Return True if this request now holds the lock for the pair."""
    now = now or utcnow()
    with storage_errors("acquire checkout lock"):
        # An abandoned lock past its TTL is free to take.
        ConcurrencyLock.query.filter(
            ConcurrencyLock.user_id == user_id,
            ConcurrencyLock.product_id == product_id,
            ConcurrencyLock.expires_at <= now,
        ).delete(synchronize_session="fetch")

        lock = ConcurrencyLock(
            user_id=user_id,
            product_id=product_id,
            request_id=request_id,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        db.session.add(lock)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.info(f"Checkout lock busy for user {user_id} / {product_id}")
            return False

        db.session.expunge(lock)
    return True


def release_lock(user_id, product_id, request_id=None):
    """Release the lock. With `request_id`, only the holder's own row goes."""
    with storage_errors("release checkout lock"):
        query = ConcurrencyLock.query.filter_by(user_id=user_id, product_id=product_id)
        if request_id is not None:
            query = query.filter_by(request_id=request_id)
        removed = query.delete(synchronize_session="fetch")
        db.session.commit()
    return removed > 0


def purge_expired_locks(now=None):
    now = now or utcnow()
    with storage_errors("purge checkout locks"):
        removed = ConcurrencyLock.query.filter(
            ConcurrencyLock.expires_at <= now
        ).delete(synchronize_session="fetch")
        db.session.commit()
    return removed
