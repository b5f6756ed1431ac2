"""Payment ledger tables

Revision ID: 001_payment_ledger
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_payment_ledger'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Platform configuration (one row, id 'default')
    op.create_table(
        'payment_configurations',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('platform_fee_percent', sa.Float(), nullable=False),
        sa.Column('min_pick_price', sa.Integer(), nullable=False),
        sa.Column('max_pick_price', sa.Integer(), nullable=False),
        sa.Column('min_subscription_price', sa.Integer(), nullable=False),
        sa.Column('max_subscription_price', sa.Integer(), nullable=False),
        sa.Column('withdrawal_minimum', sa.Integer(), nullable=False),
        sa.Column('withdrawal_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('payment_provider', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            'platform_fee_percent >= 0 AND platform_fee_percent <= 100',
            name='ck_payment_config_fee_range',
        ),
        sa.PrimaryKeyConstraint('id')
    )

    # Purchases
    op.create_table(
        'purchases',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('item_id', sa.String(), nullable=False),
        sa.Column('creator_id', sa.String(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('platform_fee', sa.Integer(), nullable=False),
        sa.Column('creator_earnings', sa.Integer(), nullable=False),
        sa.Column('provider_payment_id', sa.String(), nullable=False),
        sa.Column('payment_method', sa.String(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
        sa.Column('refund_amount', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('amount > 0', name='ck_purchases_amount_positive'),
        sa.CheckConstraint('platform_fee + creator_earnings = amount', name='ck_purchases_fee_split'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider_payment_id', name='uq_purchases_provider_payment_id')
    )
    op.create_index('ix_purchases_user_item', 'purchases', ['user_id', 'item_id'])
    op.create_index('ix_purchases_status_created', 'purchases', ['status', 'created_at'])

    # Append-only ledger lines
    op.create_table(
        'ledger_transactions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('platform_fee', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('idempotency_key', sa.String(), nullable=False),
        sa.Column('provider_reference_id', sa.String(), nullable=True),
        sa.Column('reference_id', sa.String(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key', name='uq_ledger_transactions_idempotency_key')
    )
    op.create_index('ix_ledger_transactions_user_type', 'ledger_transactions', ['user_id', 'type'])
    op.create_index('ix_ledger_transactions_reference_id', 'ledger_transactions', ['reference_id'])
    op.create_index('ix_ledger_transactions_created_at', 'ledger_transactions', ['created_at'])

    # Subscriptions (one row per subscriber/creator pair)
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('subscriber_id', sa.String(), nullable=False),
        sa.Column('creator_id', sa.String(), nullable=False),
        sa.Column('provider_subscription_id', sa.String(), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('platform_fee', sa.Integer(), nullable=False),
        sa.Column('current_period_start', sa.DateTime(), nullable=False),
        sa.Column('current_period_end', sa.DateTime(), nullable=False),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('subscriber_id', 'creator_id', name='uq_subscriptions_subscriber_creator'),
        sa.UniqueConstraint('provider_subscription_id', name='uq_subscriptions_provider_subscription_id')
    )
    op.create_index('ix_subscriptions_creator_status', 'subscriptions', ['creator_id', 'status'])

    # Payouts
    op.create_table(
        'payouts',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('method', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('provider_transfer_id', sa.String(), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('amount > 0', name='ck_payouts_amount_positive'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider_transfer_id', name='uq_payouts_provider_transfer_id')
    )
    op.create_index('ix_payouts_user_status', 'payouts', ['user_id', 'status'])

    # Creator payment profiles
    op.create_table(
        'creator_accounts',
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('provider_user_id', sa.String(), nullable=True),
        sa.Column('payout_method', sa.String(length=32), nullable=True),
        sa.Column('bank_account_id', sa.String(), nullable=True),
        sa.Column('crypto_wallet_address', sa.String(), nullable=True),
        sa.Column('auto_withdraw', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('min_payout', sa.Integer(), nullable=True),
        sa.Column('subscription_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('subscription_price', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('user_id')
    )

    # Webhook deliveries
    op.create_table(
        'webhook_events',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('event_id', sa.String(), nullable=True),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('processing_error', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'event_id', name='uq_webhook_events_provider_event_id')
    )
    op.create_index('ix_webhook_events_type_created', 'webhook_events', ['event_type', 'created_at'])


def downgrade() -> None:
    op.drop_index('ix_webhook_events_type_created', table_name='webhook_events')
    op.drop_table('webhook_events')
    op.drop_table('creator_accounts')
    op.drop_index('ix_payouts_user_status', table_name='payouts')
    op.drop_table('payouts')
    op.drop_index('ix_subscriptions_creator_status', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_index('ix_ledger_transactions_created_at', table_name='ledger_transactions')
    op.drop_index('ix_ledger_transactions_reference_id', table_name='ledger_transactions')
    op.drop_index('ix_ledger_transactions_user_type', table_name='ledger_transactions')
    op.drop_table('ledger_transactions')
    op.drop_index('ix_purchases_status_created', table_name='purchases')
    op.drop_index('ix_purchases_user_item', table_name='purchases')
    op.drop_table('purchases')
    op.drop_table('payment_configurations')
