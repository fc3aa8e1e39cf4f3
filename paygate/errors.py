"""Payment error types.

Each error knows its HTTP status and JSON body, so blueprints can just
raise and let the handler registered in create_app() render the response.
"""


class PaymentError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    public_message = None

    def __init__(self, message=None):
        super().__init__(message or self.public_message or self.__class__.__name__)
        self.message = message or self.public_message

    def to_dict(self):
        return {"error": self.public_message or self.message}


class ValidationError(PaymentError):
    """Malformed input. Never retried automatically, never mutates state."""

    status_code = 400

    def to_dict(self):
        return {"error": self.message}


class ConflictError(PaymentError):
    """A checkout for this (user, product) already exists or is being made.

    The caller is expected to retry after `retry_after` seconds or to
    reuse `session_url` when one is available.
    """

    status_code = 409
    reason = "conflict"

    def __init__(self, message, idempotency_key=None, session_url=None,
                 retry_after=None):
        super().__init__(message)
        self.idempotency_key = idempotency_key
        self.session_url = session_url
        self.retry_after = retry_after

    def to_dict(self):
        return {
            "error": self.message,
            "reason": self.reason,
            "idempotency_key": self.idempotency_key,
            "session_url": self.session_url,
            "retry_after_seconds": self.retry_after,
        }


class ActivePaymentConflict(ConflictError):
    """An unexpired checkout session exists for this (user, product)."""

    reason = "active_payment"


class CheckoutInProgressError(ConflictError):
    """Another request is inside the checkout critical section right now."""

    reason = "in_progress"


class ProviderError(PaymentError):
    """The Stripe API call failed."""

    status_code = 500
    public_message = "Payment service temporarily unavailable"


class ProviderIdempotencyError(ProviderError):
    """Stripe rejected a reused idempotency key (request still in flight
    or sent with different parameters)."""


class DatabaseError(PaymentError):
    """Storage failure. Fatal for the current request."""

    status_code = 500
    public_message = "Internal server error"
