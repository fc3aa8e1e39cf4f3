"""Product catalog.

All plan definitions live here. The Stripe price for each product is read
from app config (e.g. STRIPE_MONTHLY_PRICE_ID) so Test and Live mode can
use different prices without code changes.

To add a plan: create the price in Stripe, add an entry below, set the
config variable.
"""

from decimal import Decimal

from paygate.errors import ValidationError

PRODUCT_CATALOG = {
    "monthly-plan": {
        "name": "Monthly Plan",
        "price_config_key": "STRIPE_MONTHLY_PRICE_ID",
        "amount": Decimal("9.90"),
        "currency": "USD",
        "mode": "subscription",
    },
    "monthly-plan-pro": {
        "name": "Monthly Pro Plan",
        "price_config_key": "STRIPE_MONTHLY_PRO_PRICE_ID",
        "amount": Decimal("58.90"),
        "currency": "USD",
        "mode": "subscription",
    },
}


def get_product(product_id, app_config):
    """Return the product dict (with its resolved `price_id`) or raise.

    Raises ValidationError if the product is unknown or has no Stripe
    price configured.
    """
    entry = PRODUCT_CATALOG.get(product_id)
    if entry is None:
        raise ValidationError(
            f"Unknown product: {product_id}. "
            f"Available products: {', '.join(PRODUCT_CATALOG)}"
        )

    price_id = app_config.get(entry["price_config_key"])
    if not price_id:
        raise ValidationError(f"Product '{product_id}' is not configured")

    return dict(entry, product_id=product_id, price_id=price_id)


def list_products(app_config):
    """All products with a configured Stripe price."""
    products = []
    for product_id, entry in PRODUCT_CATALOG.items():
        if app_config.get(entry["price_config_key"]):
            products.append({
                "product_id": product_id,
                "name": entry["name"],
                "amount": str(entry["amount"]),
                "currency": entry["currency"],
                "mode": entry["mode"],
            })
    return products


def plan_code(product):
    """Plan identifier stored on orders: <product_id>_<amount>_<currency>."""
    return f"{product['product_id']}_{product['amount']}_{product['currency']}"
