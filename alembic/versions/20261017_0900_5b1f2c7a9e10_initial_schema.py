"""Initial schema: plans, pricing, features, subscriptions, usage, payments, webhooks, gateways, tax, invoices

Revision ID: 5b1f2c7a9e10
Revises: 
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '5b1f2c7a9e10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# SQLAlchemy persists enum member names
billingcycle = sa.Enum('MONTHLY', 'YEARLY', name='billingcycle')
region = sa.Enum('INDIA', 'GLOBAL', name='region')
featuretype = sa.Enum('ESSENTIAL', 'ADVANCED', 'PROFESSIONAL', name='featuretype')
limittype = sa.Enum('UNLIMITED', 'COUNT', 'BOOLEAN', name='limittype')
resetfrequency = sa.Enum('NEVER', 'DAILY', 'WEEKLY', 'MONTHLY', 'YEARLY', name='resetfrequency')
subscriptionstatus = sa.Enum('ACTIVE', 'GRACE_PERIOD', 'EXPIRED', 'CANCELLED', name='subscriptionstatus')
planchangetype = sa.Enum('UPGRADE', 'DOWNGRADE', name='planchangetype')
paymentgateway = sa.Enum('RAZORPAY', 'STRIPE', 'NONE', name='paymentgateway')
paymentstatus = sa.Enum('PENDING', 'COMPLETED', 'FAILED', 'REFUNDED', name='paymentstatus')
disputestatus = sa.Enum('OPEN', 'UNDER_REVIEW', 'RESOLVED', 'REJECTED', name='disputestatus')
taxtype = sa.Enum('GST', 'CGST', 'SGST', 'IGST', name='taxtype')
invoicestatus = sa.Enum('ISSUED', 'PAID', name='invoicestatus')


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    ]


def _base_indexes(table: str) -> None:
    op.create_index(op.f(f'ix_{table}_id'), table, ['id'])
    op.create_index(op.f(f'ix_{table}_created_at'), table, ['created_at'])


def upgrade() -> None:
    """Create all tables for the subscription engine."""
    # 1. Plans and regional pricing
    op.create_table(
        'subscription_plans',
        *_base_columns(),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('billing_cycle', billingcycle, nullable=False, server_default='MONTHLY'),
        sa.Column('is_featured', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('is_freemium', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default='true'),
        sa.PrimaryKeyConstraint('id')
    )
    _base_indexes('subscription_plans')
    op.create_index(op.f('ix_subscription_plans_active'), 'subscription_plans', ['active'])

    op.create_table(
        'plan_pricing',
        *_base_columns(),
        sa.Column('plan_id', sa.Uuid(), nullable=False),
        sa.Column('region', region, nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('price', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('tax_inclusive', sa.Boolean(), nullable=False, server_default='false'),
        sa.ForeignKeyConstraint(['plan_id'], ['subscription_plans.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('plan_id', 'region', 'currency', name='uq_plan_pricing_plan_region_currency')
    )
    _base_indexes('plan_pricing')
    op.create_index(op.f('ix_plan_pricing_plan_id'), 'plan_pricing', ['plan_id'])

    # 2. Feature catalog and plan limits
    op.create_table(
        'features',
        *_base_columns(),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('code', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('feature_type', featuretype, nullable=False, server_default='ESSENTIAL'),
        sa.Column('is_countable', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('is_token_based', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('cost_factor', sa.Numeric(precision=10, scale=4), nullable=False, server_default='1.0'),
        sa.PrimaryKeyConstraint('id')
    )
    _base_indexes('features')
    op.create_index(op.f('ix_features_code'), 'features', ['code'], unique=True)

    op.create_table(
        'plan_features',
        *_base_columns(),
        sa.Column('plan_id', sa.Uuid(), nullable=False),
        sa.Column('feature_id', sa.Uuid(), nullable=False),
        sa.Column('limit_type', limittype, nullable=False, server_default='BOOLEAN'),
        sa.Column('limit_value', sa.Integer(), nullable=True),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('reset_frequency', resetfrequency, nullable=False, server_default='NEVER'),
        sa.ForeignKeyConstraint(['plan_id'], ['subscription_plans.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['feature_id'], ['features.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('plan_id', 'feature_id', name='uq_plan_features_plan_feature')
    )
    _base_indexes('plan_features')
    op.create_index(op.f('ix_plan_features_plan_id'), 'plan_features', ['plan_id'])
    op.create_index(op.f('ix_plan_features_feature_id'), 'plan_features', ['feature_id'])

    # 3. Subscriptions (one current row per user)
    op.create_table(
        'user_subscriptions',
        *_base_columns(),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('plan_id', sa.Uuid(), nullable=False),
        sa.Column('status', subscriptionstatus, nullable=False, server_default='ACTIVE'),
        sa.Column('region', region, nullable=False, server_default='GLOBAL'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('end_date', sa.DateTime(), nullable=False),
        sa.Column('auto_renew', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('grace_period_end', sa.DateTime(), nullable=True),
        sa.Column('cancel_date', sa.DateTime(), nullable=True),
        sa.Column('upgrade_date', sa.DateTime(), nullable=True),
        sa.Column('previous_plan_id', sa.Uuid(), nullable=True),
        sa.Column('previous_subscription_id', sa.Uuid(), nullable=True),
        sa.Column('payment_gateway', paymentgateway, nullable=False, server_default='NONE'),
        sa.Column('payment_reference', sa.String(), nullable=True),
        sa.Column('pending_plan_change_to', sa.Uuid(), nullable=True),
        sa.Column('pending_plan_change_type', planchangetype, nullable=True),
        sa.Column('pending_plan_change_date', sa.DateTime(), nullable=True),
        sa.Column('is_current', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('extra_metadata', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.ForeignKeyConstraint(['plan_id'], ['subscription_plans.id']),
        sa.ForeignKeyConstraint(['previous_plan_id'], ['subscription_plans.id']),
        sa.ForeignKeyConstraint(['pending_plan_change_to'], ['subscription_plans.id']),
        sa.ForeignKeyConstraint(['previous_subscription_id'], ['user_subscriptions.id']),
        sa.PrimaryKeyConstraint('id')
    )
    _base_indexes('user_subscriptions')
    op.create_index(op.f('ix_user_subscriptions_user_id'), 'user_subscriptions', ['user_id'])
    op.create_index(op.f('ix_user_subscriptions_plan_id'), 'user_subscriptions', ['plan_id'])
    op.create_index(op.f('ix_user_subscriptions_status'), 'user_subscriptions', ['status'])
    op.create_index(op.f('ix_user_subscriptions_end_date'), 'user_subscriptions', ['end_date'])
    op.create_index(op.f('ix_user_subscriptions_payment_reference'), 'user_subscriptions', ['payment_reference'])
    op.create_index(
        'uq_user_subscriptions_current',
        'user_subscriptions',
        ['user_id'],
        unique=True,
        postgresql_where=sa.text('is_current'),
    )

    op.create_table(
        'subscription_history',
        *_base_columns(),
        sa.Column('subscription_id', sa.Uuid(), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('old_value', sa.String(), nullable=True),
        sa.Column('new_value', sa.String(), nullable=False),
        sa.Column('reason', sa.String(), nullable=True),
        sa.ForeignKeyConstraint(['subscription_id'], ['user_subscriptions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    _base_indexes('subscription_history')
    op.create_index(op.f('ix_subscription_history_subscription_id'), 'subscription_history', ['subscription_id'])

    # 4. Usage counters
    op.create_table(
        'feature_usage',
        *_base_columns(),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('feature_id', sa.Uuid(), nullable=False),
        sa.Column('usage_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reset_date', sa.DateTime(), nullable=True),
        sa.Column('last_used', sa.DateTime(), nullable=True),
        sa.Column('ai_model_type', sa.String(), nullable=True),
        sa.Column('ai_token_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('ai_cost', sa.Numeric(precision=12, scale=4), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['feature_id'], ['features.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'feature_id', name='uq_feature_usage_user_feature'),
        sa.CheckConstraint('usage_count >= 0', name='ck_feature_usage_count_non_negative')
    )
    _base_indexes('feature_usage')
    op.create_index(op.f('ix_feature_usage_user_id'), 'feature_usage', ['user_id'])
    op.create_index(op.f('ix_feature_usage_feature_id'), 'feature_usage', ['feature_id'])

    # 5. Payment ledger
    op.create_table(
        'payment_transactions',
        *_base_columns(),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('subscription_id', sa.Uuid(), nullable=False),
        sa.Column('amount', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('gateway', paymentgateway, nullable=False),
        sa.Column('gateway_transaction_id', sa.String(), nullable=True),
        sa.Column('status', paymentstatus, nullable=False, server_default='PENDING'),
        sa.Column('refunded_amount', sa.Numeric(precision=10, scale=2), nullable=False, server_default='0.00'),
        sa.Column('refund_reason', sa.Text(), nullable=True),
        sa.Column('extra_metadata', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.ForeignKeyConstraint(['subscription_id'], ['user_subscriptions.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('gateway', 'gateway_transaction_id', name='uq_payment_transactions_gateway_txn'),
        sa.CheckConstraint(
            'refunded_amount >= 0 AND refunded_amount <= amount', name='ck_payment_transactions_refund_bound'
        )
    )
    _base_indexes('payment_transactions')
    op.create_index(op.f('ix_payment_transactions_user_id'), 'payment_transactions', ['user_id'])
    op.create_index(op.f('ix_payment_transactions_subscription_id'), 'payment_transactions', ['subscription_id'])
    op.create_index(op.f('ix_payment_transactions_status'), 'payment_transactions', ['status'])

    op.create_table(
        'payment_refunds',
        *_base_columns(),
        sa.Column('transaction_id', sa.Uuid(), nullable=False),
        sa.Column('gateway', paymentgateway, nullable=False),
        sa.Column('gateway_refund_id', sa.String(), nullable=True),
        sa.Column('amount', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('is_partial', sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(['transaction_id'], ['payment_transactions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('gateway', 'gateway_refund_id', name='uq_payment_refunds_gateway_refund')
    )
    _base_indexes('payment_refunds')
    op.create_index(op.f('ix_payment_refunds_transaction_id'), 'payment_refunds', ['transaction_id'])

    op.create_table(
        'disputes',
        *_base_columns(),
        sa.Column('transaction_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('gateway_dispute_id', sa.String(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('status', disputestatus, nullable=False, server_default='OPEN'),
        sa.Column('resolution_notes', sa.Text(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['transaction_id'], ['payment_transactions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('transaction_id', 'gateway_dispute_id', name='uq_disputes_transaction_gateway_dispute')
    )
    _base_indexes('disputes')
    op.create_index(op.f('ix_disputes_transaction_id'), 'disputes', ['transaction_id'])
    op.create_index(op.f('ix_disputes_user_id'), 'disputes', ['user_id'])
    op.create_index(op.f('ix_disputes_status'), 'disputes', ['status'])

    # 6. Webhook events (deduplicated per gateway)
    op.create_table(
        'payment_webhook_events',
        *_base_columns(),
        sa.Column('gateway', paymentgateway, nullable=False),
        sa.Column('external_event_id', sa.String(), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('payload', postgresql.JSONB(), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('processing_error', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('gateway', 'external_event_id', name='uq_webhook_events_gateway_external_id')
    )
    _base_indexes('payment_webhook_events')
    op.create_index(op.f('ix_payment_webhook_events_event_type'), 'payment_webhook_events', ['event_type'])
    op.create_index(op.f('ix_payment_webhook_events_processed'), 'payment_webhook_events', ['processed'])

    # 7. Gateway configuration
    op.create_table(
        'payment_gateway_configs',
        *_base_columns(),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('gateway', paymentgateway, nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('test_mode', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('config', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('gateway')
    )
    _base_indexes('payment_gateway_configs')

    op.create_table(
        'gateway_plan_mappings',
        *_base_columns(),
        sa.Column('gateway', paymentgateway, nullable=False),
        sa.Column('plan_id', sa.Uuid(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('external_plan_id', sa.String(), nullable=False),
        sa.ForeignKeyConstraint(['plan_id'], ['subscription_plans.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'gateway', 'plan_id', 'currency', name='uq_gateway_plan_mappings_gateway_plan_currency'
        )
    )
    _base_indexes('gateway_plan_mappings')
    op.create_index(op.f('ix_gateway_plan_mappings_gateway'), 'gateway_plan_mappings', ['gateway'])
    op.create_index(op.f('ix_gateway_plan_mappings_plan_id'), 'gateway_plan_mappings', ['plan_id'])

    # 8. Tax configuration and billing parties
    op.create_table(
        'tax_settings',
        *_base_columns(),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('tax_type', taxtype, nullable=False, server_default='GST'),
        sa.Column('percentage', sa.Numeric(precision=5, scale=2), nullable=False),
        sa.Column('country', sa.String(), nullable=False, server_default='India'),
        sa.Column('state_applicable', sa.String(), nullable=True),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('apply_to_region', region, nullable=False, server_default='INDIA'),
        sa.Column('apply_currency', sa.String(length=3), nullable=False, server_default='INR'),
        sa.PrimaryKeyConstraint('id')
    )
    _base_indexes('tax_settings')
    op.create_index(op.f('ix_tax_settings_enabled'), 'tax_settings', ['enabled'])

    op.create_table(
        'company_tax_info',
        *_base_columns(),
        sa.Column('company_name', sa.String(), nullable=False),
        sa.Column('address', sa.Text(), nullable=False),
        sa.Column('city', sa.String(), nullable=False),
        sa.Column('state', sa.String(), nullable=False),
        sa.Column('country', sa.String(), nullable=False, server_default='India'),
        sa.Column('postal_code', sa.String(), nullable=False),
        sa.Column('gstin', sa.String(), nullable=True),
        sa.Column('pan', sa.String(), nullable=True),
        sa.Column('tax_reg_number', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    _base_indexes('company_tax_info')

    op.create_table(
        'user_billing_details',
        *_base_columns(),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('full_name', sa.String(), nullable=False),
        sa.Column('country', sa.String(), nullable=False),
        sa.Column('address', sa.Text(), nullable=True),
        sa.Column('city', sa.String(), nullable=True),
        sa.Column('state', sa.String(), nullable=True),
        sa.Column('postal_code', sa.String(), nullable=True),
        sa.Column('tax_id', sa.String(), nullable=True),
        sa.Column('company_name', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    _base_indexes('user_billing_details')
    op.create_index(op.f('ix_user_billing_details_user_id'), 'user_billing_details', ['user_id'], unique=True)

    # 9. Invoices
    op.create_table(
        'invoice_settings',
        *_base_columns(),
        sa.Column('invoice_prefix', sa.String(), nullable=False, server_default='INV-'),
        sa.Column('next_invoice_number', sa.Integer(), nullable=False, server_default='1000'),
        sa.Column('default_due_days', sa.Integer(), nullable=False, server_default='15'),
        sa.PrimaryKeyConstraint('id')
    )
    _base_indexes('invoice_settings')

    op.create_table(
        'invoices',
        *_base_columns(),
        sa.Column('invoice_number', sa.String(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('subscription_id', sa.Uuid(), nullable=False),
        sa.Column('transaction_id', sa.Uuid(), nullable=False),
        sa.Column('status', invoicestatus, nullable=False, server_default='ISSUED'),
        sa.Column('subtotal', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('tax_amount', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('total', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('billing_details', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('company_details', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('tax_details', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('items', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('issued_at', sa.DateTime(), nullable=False),
        sa.Column('due_date', sa.DateTime(), nullable=False),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['subscription_id'], ['user_subscriptions.id']),
        sa.ForeignKeyConstraint(['transaction_id'], ['payment_transactions.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('transaction_id')
    )
    _base_indexes('invoices')
    op.create_index(op.f('ix_invoices_invoice_number'), 'invoices', ['invoice_number'], unique=True)
    op.create_index(op.f('ix_invoices_user_id'), 'invoices', ['user_id'])
    op.create_index(op.f('ix_invoices_subscription_id'), 'invoices', ['subscription_id'])
    op.create_index(op.f('ix_invoices_status'), 'invoices', ['status'])

    # 10. Notification outbox
    op.create_table(
        'notification_events',
        *_base_columns(),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('payload', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('delivered', sa.Boolean(), nullable=False, server_default='false'),
        sa.PrimaryKeyConstraint('id')
    )
    _base_indexes('notification_events')
    op.create_index(op.f('ix_notification_events_user_id'), 'notification_events', ['user_id'])
    op.create_index(op.f('ix_notification_events_event_type'), 'notification_events', ['event_type'])
    op.create_index(op.f('ix_notification_events_delivered'), 'notification_events', ['delivered'])


def downgrade() -> None:
    """Drop all tables and enum types."""
    for table in (
        'notification_events',
        'invoices',
        'invoice_settings',
        'user_billing_details',
        'company_tax_info',
        'tax_settings',
        'gateway_plan_mappings',
        'payment_gateway_configs',
        'payment_webhook_events',
        'disputes',
        'payment_refunds',
        'payment_transactions',
        'feature_usage',
        'subscription_history',
        'user_subscriptions',
        'plan_features',
        'features',
        'plan_pricing',
        'subscription_plans',
    ):
        op.drop_table(table)

    for enum_type in (
        invoicestatus,
        taxtype,
        disputestatus,
        paymentstatus,
        paymentgateway,
        planchangetype,
        subscriptionstatus,
        resetfrequency,
        limittype,
        featuretype,
        region,
        billingcycle,
    ):
        enum_type.drop(op.get_bind(), checkfirst=True)
