"""Initial payment core schema: checkout sessions, audit events, subscriptions, gateway configs

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19

This migration adds:
1. checkout_sessions (one row per purchase attempt, optimistic version_id)
2. checkout_events (append-only audit trail per session)
3. subscriptions (per-tenant billing state; one open row per tenant)
4. gateway_configs (per-scope gateway credential overrides)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_initial'
down_revision = None
branch_labels = None
depends_on = None


OPEN_STATUSES_SQL = "status IN ('active', 'trial', 'past_due')"


def upgrade():
    # ==========================================================================
    # 1. CHECKOUT SESSIONS
    # ==========================================================================
    op.create_table('checkout_sessions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('transaction_id', sa.String(length=64), nullable=False),
        sa.Column('plan_id', sa.String(length=64), nullable=False),
        sa.Column('plan_name', sa.String(length=255), nullable=False),
        sa.Column('plan_price_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('billing_cycle_months', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='BDT'),
        sa.Column('tenant_id', sa.String(length=64), nullable=True),
        sa.Column('merchant_name', sa.String(length=255), nullable=True),
        sa.Column('merchant_email', sa.String(length=255), nullable=True),
        sa.Column('merchant_phone', sa.String(length=64), nullable=True),
        sa.Column('custom_subdomain', sa.String(length=128), nullable=True),
        sa.Column('customer_name', sa.String(length=255), nullable=True),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('customer_phone', sa.String(length=64), nullable=True),
        sa.Column('customer_address', sa.String(length=255), nullable=True),
        sa.Column('customer_city', sa.String(length=128), nullable=True),
        sa.Column('customer_state', sa.String(length=128), nullable=True),
        sa.Column('customer_postcode', sa.String(length=32), nullable=True),
        sa.Column('customer_country', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('is_free', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('demo_mode', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('gateway_scope', sa.String(length=64), nullable=False, server_default='system'),
        sa.Column('gateway_session_key', sa.String(length=255), nullable=True),
        sa.Column('gateway_page_url', sa.String(length=1024), nullable=True),
        sa.Column('validation_id', sa.String(length=128), nullable=True),
        sa.Column('card_type', sa.String(length=64), nullable=True),
        sa.Column('bank_transaction_id', sa.String(length=128), nullable=True),
        sa.Column('risk_level', sa.String(length=16), nullable=True),
        sa.Column('verified_amount_cents', sa.Integer(), nullable=True),
        sa.Column('error', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('checkout_sessions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_checkout_sessions_transaction_id'), ['transaction_id'], unique=True)
        batch_op.create_index(batch_op.f('ix_checkout_sessions_tenant_id'), ['tenant_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_checkout_sessions_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_checkout_sessions_validation_id'), ['validation_id'], unique=False)
        batch_op.create_index('ix_checkout_sessions_status_created', ['status', 'created_at'], unique=False)

    # ==========================================================================
    # 2. CHECKOUT EVENTS
    # ==========================================================================
    op.create_table('checkout_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('checkout_session_id', sa.Integer(), nullable=False),
        sa.Column('transaction_id', sa.String(length=64), nullable=False),
        sa.Column('event_type', sa.String(length=32), nullable=False),
        sa.Column('source', sa.String(length=16), nullable=False),
        sa.Column('occurred_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('payload', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['checkout_session_id'], ['checkout_sessions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('checkout_events', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_checkout_events_checkout_session_id'), ['checkout_session_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_checkout_events_event_type'), ['event_type'], unique=False)
        batch_op.create_index('ix_checkout_events_tran_occurred', ['transaction_id', 'occurred_at'], unique=False)

    # ==========================================================================
    # 3. SUBSCRIPTIONS
    # ==========================================================================
    op.create_table('subscriptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('subscription_id', sa.String(length=64), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('plan_id', sa.String(length=64), nullable=False),
        sa.Column('billing_cycle_months', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('amount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='BDT'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('grace_period_ends_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('total_paid_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('renewal_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_payment_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_transaction_id', sa.String(length=64), nullable=True),
        sa.Column('auto_renew', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('subscriptions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_subscriptions_subscription_id'), ['subscription_id'], unique=True)
        batch_op.create_index(batch_op.f('ix_subscriptions_tenant_id'), ['tenant_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_subscriptions_status'), ['status'], unique=False)
        batch_op.create_index('ix_subscriptions_tenant_status', ['tenant_id', 'status'], unique=False)
        batch_op.create_index('ix_subscriptions_status_period_end', ['status', 'current_period_end'], unique=False)
        batch_op.create_index(
            'uq_subscriptions_tenant_open',
            ['tenant_id'],
            unique=True,
            sqlite_where=sa.text(OPEN_STATUSES_SQL),
            postgresql_where=sa.text(OPEN_STATUSES_SQL),
        )

    # ==========================================================================
    # 4. GATEWAY CONFIGS
    # ==========================================================================
    op.create_table('gateway_configs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('scope', sa.String(length=64), nullable=False),
        sa.Column('store_id', sa.String(length=128), nullable=True),
        sa.Column('store_password', sa.String(length=255), nullable=True),
        sa.Column('is_live', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('gateway_configs', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_gateway_configs_scope'), ['scope'], unique=True)


def downgrade():
    with op.batch_alter_table('gateway_configs', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_gateway_configs_scope'))
    op.drop_table('gateway_configs')

    with op.batch_alter_table('subscriptions', schema=None) as batch_op:
        batch_op.drop_index('uq_subscriptions_tenant_open')
        batch_op.drop_index('ix_subscriptions_status_period_end')
        batch_op.drop_index('ix_subscriptions_tenant_status')
        batch_op.drop_index(batch_op.f('ix_subscriptions_status'))
        batch_op.drop_index(batch_op.f('ix_subscriptions_tenant_id'))
        batch_op.drop_index(batch_op.f('ix_subscriptions_subscription_id'))
    op.drop_table('subscriptions')

    with op.batch_alter_table('checkout_events', schema=None) as batch_op:
        batch_op.drop_index('ix_checkout_events_tran_occurred')
        batch_op.drop_index(batch_op.f('ix_checkout_events_event_type'))
        batch_op.drop_index(batch_op.f('ix_checkout_events_checkout_session_id'))
    op.drop_table('checkout_events')

    with op.batch_alter_table('checkout_sessions', schema=None) as batch_op:
        batch_op.drop_index('ix_checkout_sessions_status_created')
        batch_op.drop_index(batch_op.f('ix_checkout_sessions_validation_id'))
        batch_op.drop_index(batch_op.f('ix_checkout_sessions_status'))
        batch_op.drop_index(batch_op.f('ix_checkout_sessions_tenant_id'))
        batch_op.drop_index(batch_op.f('ix_checkout_sessions_transaction_id'))
    op.drop_table('checkout_sessions')
