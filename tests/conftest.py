"""Shared test fixtures for the paygate test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, fake Stripe keys)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- clock: frozen, advanceable UTC clock
- orchestrator / reconciler: payment components bound to the frozen clock
- auth_headers: bearer token for "user_1"
- stripe_sessions: patched stripe.checkout.Session.create handing out cs_test_N
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from paygate import create_app
from paygate.auth import issue_token
from paygate.extensions import db as _db
from paygate.services.checkout_service import CheckoutOrchestrator
from paygate.services.reconciler import OrderReconciler

# Exactly on a minute boundary, so the 1-minute bucket starts at t=0.
FROZEN_NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def clock():
    return FrozenClock(FROZEN_NOW)


@pytest.fixture
def provider(app):
    return app.extensions["paygate.provider"]


@pytest.fixture
def orchestrator(app, provider, clock):
    return CheckoutOrchestrator.from_config(app.config, provider, clock=clock)


@pytest.fixture
def reconciler(provider, clock):
    return OrderReconciler(provider, clock=clock)


@pytest.fixture
def auth_headers(app):
    token = issue_token("user_1", email="joe@example.com")
    return {"Authorization": f"Bearer {token}"}


def fake_checkout_session(n):
    return SimpleNamespace(
        id=f"cs_test_{n}",
        url=f"https://checkout.stripe.com/c/pay/cs_test_{n}",
    )


@pytest.fixture
def stripe_sessions():
    """Patch Stripe session creation; each call returns the next cs_test_N."""
    counter = {"n": 0}

    def _create(**kwargs):
        counter["n"] += 1
        return fake_checkout_session(counter["n"])

    with patch(
        "paygate.services.stripe_service.stripe.checkout.Session.create",
        side_effect=_create,
    ) as mock_create:
        yield mock_create
