"""Idempotency service — key derivation and the client idempotency ledger.

Responsible for:
- Deriving a deterministic key from (user, product, time bucket)
- Mapping a key to the order it produced (check / record / forget)

Keys are one-way hashes. Two requests for the same user and product in
the same bucket collapse onto one checkout; a request landing just after
a bucket boundary derives a new key even if the previous checkout is
still open. The Active Payment tracker covers that gap with a 409.
"""

import hashlib
import logging
import math
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from paygate.extensions import db
from paygate.models.idempotency import ClientIdempotencyRecord
from paygate.services.storage import storage_errors
from paygate.timeutil import utcnow

logger = logging.getLogger(__name__)


def bucket_minutes_for_timeout(timeout_seconds):
    """Bucket width for a payment timeout: whole minutes, rounded up, >= 1."""
    return max(1, math.ceil(timeout_seconds / 60))


def derive_idempotency_key(user_id, product_id, bucket_minutes, now=None):
    """sha256("<user>:<product>:<bucket>") as 64 hex chars."""
    now = now or utcnow()
    epoch_ms = int(now.timestamp() * 1000)
    bucket = epoch_ms // (bucket_minutes * 60 * 1000)
    return hashlib.sha256(f"{user_id}:{product_id}:{bucket}".encode()).hexdigest()


def check_idempotency(idempotency_key, user_id, now=None):
    """Return the order_id recorded for this key and user, or None.

    Expired records and records belonging to another user are ignored.
    """
    now = now or utcnow()
    with storage_errors("check idempotency"):
        record = (
            ClientIdempotencyRecord.query
            .filter(
                ClientIdempotencyRecord.idempotency_key == idempotency_key,
                ClientIdempotencyRecord.user_id == user_id,
                ClientIdempotencyRecord.expires_at > now,
            )
            .first()
        )
    return record.order_id if record else None


def record_idempotency(idempotency_key, user_id, order_id, ttl_hours=24, now=None):
    """Map key -> order_id. Call only after the order is committed.

    Returns False if a live record already holds the key (the earlier
    writer wins and this call changes nothing).
    """
    now = now or utcnow()
    with storage_errors("record idempotency"):
        # A stale record for the same key would otherwise block the insert.
        ClientIdempotencyRecord.query.filter(
            ClientIdempotencyRecord.idempotency_key == idempotency_key,
            ClientIdempotencyRecord.expires_at <= now,
        ).delete(synchronize_session="fetch")

        db.session.add(ClientIdempotencyRecord(
            idempotency_key=idempotency_key,
            user_id=user_id,
            order_id=order_id,
            created_at=now,
            expires_at=now + timedelta(hours=ttl_hours),
        ))
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.info(
                f"Idempotency key {idempotency_key[:12]}... already recorded, keeping first writer"
            )
            return False
    return True


def forget_idempotency(idempotency_key, order_id):
    """Drop the record for a failed attempt so a retry can start over.

    Only removes the row if it still points at `order_id`.
    """
    with storage_errors("forget idempotency"):
        removed = ClientIdempotencyRecord.query.filter_by(
            idempotency_key=idempotency_key, order_id=order_id
        ).delete(synchronize_session="fetch")
        db.session.commit()
    return removed > 0


def purge_expired_idempotency(now=None):
    now = now or utcnow()
    with storage_errors("purge idempotency records"):
        removed = ClientIdempotencyRecord.query.filter(
            ClientIdempotencyRecord.expires_at <= now
        ).delete(synchronize_session="fetch")
        db.session.commit()
    return removed
