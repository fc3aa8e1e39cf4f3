"""Concurrency lock model.

Short-lived advisory mutex over (user_id, product_id). The composite
primary key is the mutex: a second INSERT for a live key fails.
"""

from paygate.extensions import db


class ConcurrencyLock(db.Model):
    __tablename__ = "concurrency_locks"

    user_id = db.Column(db.String(255), primary_key=True)
    product_id = db.Column(db.String(100), primary_key=True)
    request_id = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self):
        return f"<ConcurrencyLock {self.user_id}/{self.product_id} req={self.request_id}>"
