"""Active payment model.

At most one live row per (user_id, product_id): the checkout session that
is currently outstanding for that pair. Expiry is checked at read time;
purging old rows is housekeeping only.
"""

from paygate.extensions import db
from paygate.timeutil import as_utc


class ActivePayment(db.Model):
    __tablename__ = "active_payments"

    user_id = db.Column(db.String(255), primary_key=True)
    product_id = db.Column(db.String(100), primary_key=True)
    idempotency_key = db.Column(db.String(255), nullable=False)
    session_url = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    def is_expired_at(self, now):
        return as_utc(now) >= as_utc(self.expires_at)

    def __repr__(self):
        return f"<ActivePayment {self.user_id}/{self.product_id}>"
