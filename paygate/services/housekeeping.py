"""Housekeeping — bounded growth for the short-lived tables.

Nothing depends on this for correctness: every reader re-checks
expires_at. Run from cron via `flask purge-expired`.
"""

import logging
from datetime import timedelta

from paygate.services import (
    active_payment_service,
    idempotency_service,
    lock_service,
    webhook_service,
)
from paygate.timeutil import utcnow

logger = logging.getLogger(__name__)


def purge_expired(now=None, event_retention_days=90):
    """Delete expired ledger, active payment and lock rows, and webhook
    events older than the retention window.

    Returns a dict of counts per table.
    """
    now = now or utcnow()
    counts = {
        "client_idempotency": idempotency_service.purge_expired_idempotency(now),
        "active_payments": active_payment_service.purge_expired_active_payments(now),
        "concurrency_locks": lock_service.purge_expired_locks(now),
        "payment_events": webhook_service.prune_events(
            now - timedelta(days=event_retention_days)
        ),
    }
    logger.info(
        "Housekeeping purge: "
        + ", ".join(f"{table}={count}" for table, count in counts.items())
    )
    return counts
