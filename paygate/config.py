import os


def _env_flag(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or "sqlite:///paygate.db"

    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    STRIPE_MONTHLY_PRICE_ID = os.environ.get("STRIPE_MONTHLY_PRICE_ID")
    STRIPE_MONTHLY_PRO_PRICE_ID = os.environ.get("STRIPE_MONTHLY_PRO_PRICE_ID")
    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:5001")
    PAYMENT_SUCCESS_URL = os.environ.get(
        "PAYMENT_SUCCESS_URL",
        f"{APP_BASE_URL}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
    )
    PAYMENT_CANCEL_URL = os.environ.get(
        "PAYMENT_CANCEL_URL", f"{APP_BASE_URL}/payment/cancel"
    )

    # --- Bearer tokens (identity is issued upstream, we only verify) ---
    JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY")
    JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")

    # --- Checkout idempotency / concurrency windows ---
    # How long an outstanding checkout blocks a second one for the same
    # (user, product). Also sets the default idempotency bucket width.
    PAYMENT_TIMEOUT_SECONDS = int(os.environ.get("PAYMENT_TIMEOUT_SECONDS", 60))
    # Width of the time bucket used to derive idempotency keys. Empty means
    # "payment timeout rounded up to whole minutes".
    IDEMPOTENCY_BUCKET_MINUTES = (
        int(os.environ["IDEMPOTENCY_BUCKET_MINUTES"])
        if os.environ.get("IDEMPOTENCY_BUCKET_MINUTES")
        else None
    )
    IDEMPOTENCY_TTL_HOURS = int(os.environ.get("IDEMPOTENCY_TTL_HOURS", 24))
    LOCK_TTL_SECONDS = int(os.environ.get("LOCK_TTL_SECONDS", 10))
    LOCK_RETRY_AFTER_SECONDS = int(os.environ.get("LOCK_RETRY_AFTER_SECONDS", 5))
    WEBHOOK_EVENT_RETENTION_DAYS = int(
        os.environ.get("WEBHOOK_EVENT_RETENTION_DAYS", 90)
    )

    # --- Rate limiting ---
    CHECKOUT_RATE_LIMIT = os.environ.get("CHECKOUT_RATE_LIMIT", "10 per minute")
    RATELIMIT_ENABLED = not _env_flag("RATELIMIT_DISABLED")

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
            "STRIPE_MONTHLY_PRICE_ID",
            "JWT_SECRET_KEY",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True


class TestConfig(Config):
    """Testing — in-memory SQLite, rate limiting off, fake Stripe keys."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    STRIPE_MONTHLY_PRICE_ID = "price_monthly_test"
    STRIPE_MONTHLY_PRO_PRICE_ID = "price_monthly_pro_test"
    APP_BASE_URL = "http://localhost:5001"
    PAYMENT_SUCCESS_URL = "http://localhost:5001/payment/success"
    PAYMENT_CANCEL_URL = "http://localhost:5001/payment/cancel"
    JWT_SECRET_KEY = "test-jwt-secret"
    PAYMENT_TIMEOUT_SECONDS = 60
    IDEMPOTENCY_BUCKET_MINUTES = None
    IDEMPOTENCY_TTL_HOURS = 24
    LOCK_TTL_SECONDS = 10
    LOCK_RETRY_AFTER_SECONDS = 5
    RATELIMIT_ENABLED = False  # disable rate limiting in tests

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
