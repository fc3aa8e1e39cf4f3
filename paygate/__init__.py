import os
import logging

import click
from flask import Flask, jsonify
from sqlalchemy import event
from sqlalchemy.engine import Engine

from paygate.config import config_by_name
from paygate.errors import ConflictError, PaymentError
from paygate.extensions import db, migrate, login_manager, limiter


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from paygate import models  # noqa: F401

    # --- Payment components ---
    from paygate.services.checkout_service import CheckoutOrchestrator
    from paygate.services.reconciler import OrderReconciler
    from paygate.services.stripe_service import StripeGateway

    provider = StripeGateway.from_config(app.config)
    app.extensions["paygate.provider"] = provider
    app.extensions["paygate.checkout"] = CheckoutOrchestrator.from_config(
        app.config, provider
    )
    app.extensions["paygate.reconciler"] = OrderReconciler(provider)

    # --- Register blueprints ---
    from paygate.blueprints.payment import payment_bp
    from paygate.blueprints.webhooks import webhooks_bp

    app.register_blueprint(payment_bp)
    app.register_blueprint(webhooks_bp)

    # --- Error handlers ---
    @app.errorhandler(PaymentError)
    def payment_error(e):
        if e.status_code >= 500:
            app.logger.error(f"{e.__class__.__name__}: {e}")
        response = jsonify(e.to_dict())
        response.status_code = e.status_code
        if isinstance(e, ConflictError) and e.retry_after:
            response.headers["Retry-After"] = str(e.retry_after)
        return response

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": "Too many requests", "detail": str(e.description)}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Internal server error"}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


@event.listens_for(Engine, "connect")
def _sqlite_pragmas(dbapi_connection, connection_record):
    """WAL + busy timeout for file-backed SQLite; no-op on other backends."""
    if type(dbapi_connection).__module__ != "sqlite3":
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("purge-expired")
    @click.option(
        "--retention-days",
        type=int,
        default=None,
        help="Keep processed webhook events this many days (default: WEBHOOK_EVENT_RETENTION_DAYS).",
    )
    def purge_expired_command(retention_days):
        """Delete expired idempotency records, active payments, locks and
        old webhook events.

        Usage:
            flask purge-expired
            flask purge-expired --retention-days 30
        """
        from paygate.services.housekeeping import purge_expired

        if retention_days is None:
            retention_days = app.config["WEBHOOK_EVENT_RETENTION_DAYS"]
        counts = purge_expired(event_retention_days=retention_days)
        for table, count in counts.items():
            click.echo(f"  {table}: {count} removed")

    @app.cli.command("issue-token")
    @click.option("--user-id", required=True, help="Subject (user id) of the token")
    @click.option("--email", default=None, help="Email claim")
    @click.option("--hours", type=int, default=1, help="Token lifetime in hours")
    def issue_token_command(user_id, email, hours):
        """Print a bearer token for local testing of the payment API.

        Usage:
            flask issue-token --user-id u_123 --email joe@example.com
        """
        from datetime import timedelta

        from paygate.auth import issue_token

        click.echo(issue_token(user_id, email=email, expires_in=timedelta(hours=hours)))

    @app.cli.command("verify-stripe-prices")
    def verify_stripe_prices():
        """Verify configured Stripe price IDs exist and are usable (same mode as key).

        Checks every product in the catalog. Run with prod env vars to
        confirm Live prices; run with test vars for Test mode.
        """
        import stripe as _stripe

        from paygate.products import PRODUCT_CATALOG

        api_key = app.config.get("STRIPE_SECRET_KEY")
        if not api_key:
            click.echo("ERROR: STRIPE_SECRET_KEY is not set.")
            return
        key_mode = "Live" if api_key.startswith("sk_live_") else "Test"
        click.echo(f"Stripe key mode: {key_mode}")
        click.echo("")

        _stripe.api_key = api_key

        for product_id, entry in PRODUCT_CATALOG.items():
            config_key = entry["price_config_key"]
            price_id = app.config.get(config_key)
            click.echo(f"{config_key} ({product_id}):")
            if not price_id:
                click.echo("  (not set)")
                click.echo("")
                continue
            try:
                price = _stripe.Price.retrieve(price_id)
            except _stripe.InvalidRequestError as e:
                click.echo(f"  {price_id}")
                click.echo(f"    ERROR: {e}")
                click.echo("")
                continue

            livemode = price.get("livemode")
            amount = (price.get("unit_amount") or 0) / 100
            click.echo(f"  {price_id}")
            click.echo(
                f"    exists=True, livemode={livemode}, active={price.get('active')}, "
                f"amount={amount:.2f} {str(price.get('currency')).upper()}"
            )
            if f"{amount:.2f}" != str(entry["amount"]):
                click.echo(f"    WARNING: catalog amount is {entry['amount']}.")
            if livemode is True and key_mode != "Live":
                click.echo("    WARNING: This price is Live but your key is Test.")
            elif livemode is False and key_mode == "Live":
                click.echo("    WARNING: This price is Test but your key is Live.")
            click.echo("")
