# Models package: import all models here so Alembic can discover them.

from paygate.models.order import SubscriptionOrder  # noqa: F401
from paygate.models.idempotency import ClientIdempotencyRecord  # noqa: F401
from paygate.models.active_payment import ActivePayment  # noqa: F401
from paygate.models.concurrency_lock import ConcurrencyLock  # noqa: F401
from paygate.models.payment_event import PaymentEvent  # noqa: F401
