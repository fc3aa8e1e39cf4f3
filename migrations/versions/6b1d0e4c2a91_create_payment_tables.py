"""Create subscription_orders, client_idempotency, active_payments,
concurrency_locks and payment_events tables

Revision ID: 6b1d0e4c2a91
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '6b1d0e4c2a91'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('subscription_orders',
        sa.Column('order_id', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('product_id', sa.String(length=100), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('plan', sa.String(length=255), nullable=False),
        sa.Column('amount', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('checkout_url', sa.Text(), nullable=True),
        sa.Column('provider_session_id', sa.String(length=255), nullable=True),
        sa.Column('provider_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('provider_customer_id', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'active', 'canceled', 'expired', 'incomplete')",
            name='ck_subscription_orders_status',
        ),
        sa.PrimaryKeyConstraint('order_id'),
        sa.UniqueConstraint('provider_subscription_id')
    )
    with op.batch_alter_table('subscription_orders', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_subscription_orders_user_id'), ['user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_subscription_orders_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_subscription_orders_provider_session_id'), ['provider_session_id'], unique=False)

    op.create_table('client_idempotency',
        sa.Column('idempotency_key', sa.String(length=255), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['subscription_orders.order_id'], ),
        sa.PrimaryKeyConstraint('idempotency_key')
    )
    with op.batch_alter_table('client_idempotency', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_client_idempotency_user_id'), ['user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_client_idempotency_expires_at'), ['expires_at'], unique=False)

    op.create_table('active_payments',
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('product_id', sa.String(length=100), nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False),
        sa.Column('session_url', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('user_id', 'product_id')
    )
    with op.batch_alter_table('active_payments', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_active_payments_expires_at'), ['expires_at'], unique=False)

    op.create_table('concurrency_locks',
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('product_id', sa.String(length=100), nullable=False),
        sa.Column('request_id', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('user_id', 'product_id')
    )
    with op.batch_alter_table('concurrency_locks', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_concurrency_locks_expires_at'), ['expires_at'], unique=False)

    op.create_table('payment_events',
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=255), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint('event_id')
    )
    with op.batch_alter_table('payment_events', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_payment_events_event_type'), ['event_type'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_events_order_id'), ['order_id'], unique=False)


def downgrade():
    op.drop_table('payment_events')
    op.drop_table('concurrency_locks')
    op.drop_table('active_payments')
    op.drop_table('client_idempotency')
    op.drop_table('subscription_orders')
