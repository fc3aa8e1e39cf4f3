"""Client idempotency model.

Maps an idempotency key (client-supplied or derived from user + product +
time bucket) to the order it produced. Written only after the order
exists, so a hit always points at a real order.
"""

from paygate.extensions import db


class ClientIdempotencyRecord(db.Model):
    __tablename__ = "client_idempotency"

    idempotency_key = db.Column(db.String(255), primary_key=True)
    user_id = db.Column(db.String(255), nullable=False, index=True)
    order_id = db.Column(
        db.String(64), db.ForeignKey("subscription_orders.order_id"), nullable=False
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self):
        return f"<ClientIdempotencyRecord {self.idempotency_key[:12]}... -> {self.order_id}>"
