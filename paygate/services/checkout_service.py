"""Checkout service — idempotent creation of Stripe Checkout Sessions.

CheckoutOrchestrator composes the order store, the idempotency ledger,
the active payment tracker and the lock manager around one Stripe call:

    1. derive key            6. record idempotency
    2. ledger replay?        7. Stripe checkout session
    3. active payment? 409   8. attach session to order
    4. acquire lock    409   9. mark active payment
    5. create order         10. release lock

Built once in create_app() and stored on app.extensions.
"""

import logging
import re
import uuid

from flask import current_app

from paygate.errors import (
    CheckoutInProgressError,
    ProviderIdempotencyError,
    ValidationError,
)
from paygate.products import get_product
from paygate.services import (
    active_payment_service,
    idempotency_service,
    lock_service,
    order_service,
)
from paygate.timeutil import utcnow

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_KEY_LENGTH = 255


def get_checkout_orchestrator():
    """The orchestrator bound to the current app."""
    return current_app.extensions["paygate.checkout"]


class CheckoutOrchestrator:
    """Creates at most one checkout session per (user, product) attempt."""

    def __init__(self, provider, app_config, payment_timeout=60,
                 bucket_minutes=None, idempotency_ttl_hours=24,
                 lock_ttl=10, lock_retry_after=5, clock=utcnow):
        self.provider = provider
        self.app_config = app_config
        self.payment_timeout = payment_timeout
        self.bucket_minutes = (
            bucket_minutes
            or idempotency_service.bucket_minutes_for_timeout(payment_timeout)
        )
        self.idempotency_ttl_hours = idempotency_ttl_hours
        self.lock_ttl = lock_ttl
        self.lock_retry_after = lock_retry_after
        self.clock = clock

    @classmethod
    def from_config(cls, config, provider, clock=utcnow):
        return cls(
            provider=provider,
            app_config=config,
            payment_timeout=config["PAYMENT_TIMEOUT_SECONDS"],
            bucket_minutes=config.get("IDEMPOTENCY_BUCKET_MINUTES"),
            idempotency_ttl_hours=config["IDEMPOTENCY_TTL_HOURS"],
            lock_ttl=config["LOCK_TTL_SECONDS"],
            lock_retry_after=config["LOCK_RETRY_AFTER_SECONDS"],
            clock=clock,
        )

    # ──────────────────────────────────────────────
    # Public operation
    # ──────────────────────────────────────────────

    def create_checkout(self, user_id, product_id, customer_email=None,
                        idempotency_key=None):
        """Create (or replay) a checkout session for user + product.

        Returns a dict with checkout_url, order_id, session_id, status and
        replayed (True when an earlier attempt's result is returned).

        Raises ValidationError, ActivePaymentConflict,
        CheckoutInProgressError, ProviderError or DatabaseError.
        """
        product = self._validate(user_id, product_id, customer_email, idempotency_key)
        now = self.clock()

        derived_key = idempotency_service.derive_idempotency_key(
            user_id, product_id, self.bucket_minutes, now
        )
        key = idempotency_key or derived_key
        logger.info(
            f"Checkout requested: user={user_id} product={product_id} "
            f"key={key[:12]}... bucket={self.bucket_minutes}m"
        )

        replay = self._replay(key, user_id)
        if replay is not None:
            return replay
        self._raise_if_active(user_id, product_id, key, now)

        request_id = uuid.uuid4().hex
        if not lock_service.try_acquire_lock(
            user_id, product_id, request_id, self.lock_ttl, now
        ):
            raise CheckoutInProgressError(
                "Payment is already in progress. Please wait.",
                idempotency_key=key,
                retry_after=self.lock_retry_after,
            )

        try:
            # Another holder may have finished between the checks above
            # and the acquire.
            replay = self._replay(key, user_id, clear_stale=True)
            if replay is not None:
                return replay
            self._raise_if_active(user_id, product_id, key, now)

            return self._create_session(
                user_id, product, customer_email, key, derived_key, now
            )
        finally:
            lock_service.release_lock(user_id, product_id, request_id)

    # ──────────────────────────────────────────────
    # Steps
    # ──────────────────────────────────────────────

    def _validate(self, user_id, product_id, customer_email, idempotency_key):
        if not user_id or not str(user_id).strip():
            raise ValidationError("user_id is required")
        if not product_id or not isinstance(product_id, str):
            raise ValidationError("product_id is required")
        if customer_email is not None and (
            not isinstance(customer_email, str) or not EMAIL_RE.match(customer_email)
        ):
            raise ValidationError("customer_email is not a valid email address")
        if idempotency_key is not None and (
            not isinstance(idempotency_key, str)
            or not idempotency_key.strip()
            or len(idempotency_key) > MAX_KEY_LENGTH
        ):
            raise ValidationError(
                f"idempotency_key must be a non-empty string of at most {MAX_KEY_LENGTH} characters"
            )
        return get_product(product_id, self.app_config)

    def _replay(self, key, user_id, clear_stale=False):
        """Result of an earlier attempt with this key, or None.

        A record whose order never got a checkout session belongs to an
        attempt that died between recording the key and attaching the
        session. With `clear_stale` (lock held) that record is dropped so
        this attempt can take the key over.
        """
        order_id = idempotency_service.check_idempotency(key, user_id, self.clock())
        if order_id is None:
            return None

        order = order_service.get_order(order_id)
        if order is None or not order.provider_session_id:
            logger.warning(
                f"Idempotency record for key {key[:12]}... points at order "
                f"{order_id} without a checkout session, starting a fresh attempt"
            )
            if clear_stale:
                idempotency_service.forget_idempotency(key, order_id)
            return None

        logger.info(f"Idempotent replay: returning existing order {order.order_id}")
        return self._result(order, replayed=True)

    def _raise_if_active(self, user_id, product_id, key, now):
        active = active_payment_service.find_active_payment(user_id, product_id, now)
        if active is not None:
            logger.info(
                f"Active payment found for user {user_id} / {product_id}, "
                f"expires {active.expires_at}"
            )
            raise active_payment_service.conflict_for(active, key, now)

    def _create_session(self, user_id, product, customer_email, key, derived_key, now):
        """Steps 5-9. Runs with the lock held."""
        product_id = product["product_id"]
        order = order_service.create_order(user_id, product, customer_email, now)
        recorded = False

        try:
            recorded = idempotency_service.record_idempotency(
                key, user_id, order.order_id, self.idempotency_ttl_hours, now
            )
            if not recorded:
                logger.warning(
                    f"Idempotency key {key[:12]}... already maps to another order; "
                    f"order {order.order_id} will not be replayed by it"
                )

            try:
                session = self.provider.create_checkout_session(
                    order, product, customer_email, idempotency_key=derived_key
                )
            except ProviderIdempotencyError as e:
                raise CheckoutInProgressError(
                    "Payment is already in progress. Please wait.",
                    idempotency_key=key,
                    retry_after=self.lock_retry_after,
                ) from e

            order = order_service.attach_checkout_session(
                order.order_id, session.id, session.url, self.clock()
            )
            active_payment_service.insert_active_payment(
                user_id, product_id, key, session.url, self.payment_timeout, now
            )
        except Exception:
            logger.error(
                f"Checkout failed for order {order.order_id}; order left pending",
                exc_info=True,
            )
            if recorded:
                idempotency_service.forget_idempotency(key, order.order_id)
            raise

        logger.info(
            f"Checkout session {order.provider_session_id} ready for order "
            f"{order.order_id} (user={user_id} product={product_id})"
        )
        return self._result(order, replayed=False)

    @staticmethod
    def _result(order, replayed):
        return {
            "checkout_url": order.checkout_url,
            "order_id": order.order_id,
            "session_id": order.provider_session_id,
            "status": order.status,
            "replayed": replayed,
        }
