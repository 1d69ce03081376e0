"""Billing schema: plans, subscriptions, promo codes, usage and transactions.

Revision ID: 001_billing_schema
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_billing_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _money(name: str, nullable: bool = False, default: str = '0.00') -> sa.Column:
    return sa.Column(
        name,
        sa.Numeric(12, 2),
        nullable=nullable,
        server_default=None if default is None else sa.text(default),
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('plan_code', sa.String(50), nullable=False),
        sa.Column('plan_name', sa.String(100), nullable=False),
        sa.Column('plan_description', sa.Text(), nullable=True),
        sa.Column('plan_type', sa.String(50), nullable=False, server_default='STANDARD'),
        _money('monthly_price'),
        _money('yearly_price'),
        _money('lifetime_price'),
        sa.Column('max_contacts', sa.Integer(), nullable=True),
        sa.Column('max_templates', sa.Integer(), nullable=True),
        sa.Column('max_campaigns_per_month', sa.Integer(), nullable=True),
        sa.Column('max_messages_per_month', sa.Integer(), nullable=True),
        sa.Column('max_team_members', sa.Integer(), nullable=True),
        sa.Column('max_whatsapp_numbers', sa.Integer(), nullable=True),
        sa.Column('has_advanced_analytics', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('has_automation', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('has_api_access', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('has_priority_support', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('has_white_label', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('has_custom_reports', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('has_webhooks', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('has_bulk_messaging', sa.Boolean(), nullable=False, server_default=sa.false()),
        _money('marketing_message_price', default='0.35'),
        _money('utility_message_price', default='0.15'),
        _money('auth_message_price', default='0.15'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_visible', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('display_order', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('plan_code'),
    )
    op.create_index('ix_subscription_plans_is_active', 'subscription_plans', ['is_active'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('plan_id', sa.Uuid(), nullable=False),
        sa.Column('billing_cycle', sa.String(20), nullable=False),
        _money('amount_paid'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='INR'),
        sa.Column('status', sa.String(20), nullable=False, server_default='ACTIVE'),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_billing_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('auto_renew', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_trial', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('trial_end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('cancelled_by', sa.Uuid(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['plan_id'], ['subscription_plans.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_plan_id', 'subscriptions', ['plan_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_status_end_date', 'subscriptions', ['status', 'end_date'])
    # At most one ACTIVE subscription per user
    op.create_index(
        'uq_subscriptions_user_active',
        'subscriptions',
        ['user_id'],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'"),
        sqlite_where=sa.text("status = 'ACTIVE'"),
    )

    op.create_table(
        'promo_codes',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('discount_type', sa.String(20), nullable=False),
        _money('discount_value', default=None),
        _money('max_discount_amount', nullable=True, default=None),
        sa.Column('applicable_plans', sa.JSON(), nullable=True),
        sa.Column('applicable_billing_cycles', sa.JSON(), nullable=True),
        sa.Column('valid_from', sa.DateTime(timezone=True), nullable=False),
        sa.Column('valid_until', sa.DateTime(timezone=True), nullable=False),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('max_uses_per_user', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('current_uses', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_promo_codes_code', 'promo_codes', ['code'], unique=True)
    op.create_index('ix_promo_codes_is_active', 'promo_codes', ['is_active'])

    op.create_table(
        'transactions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('subscription_id', sa.Uuid(), nullable=True),
        sa.Column('transaction_type', sa.String(20), nullable=False),
        _money('amount'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='INR'),
        sa.Column('payment_method', sa.String(50), nullable=False, server_default='RAZORPAY'),
        sa.Column('payment_status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('payment_id', sa.String(255), nullable=True),
        sa.Column('gateway_order_id', sa.String(255), nullable=True),
        sa.Column('gateway_payment_id', sa.String(255), nullable=True),
        sa.Column('gateway_signature', sa.String(512), nullable=True),
        sa.Column('gateway_response', sa.JSON(), nullable=True),
        sa.Column('invoice_number', sa.String(50), nullable=True),
        sa.Column('invoice_url', sa.String(512), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('invoice_number'),
    )
    op.create_index('ix_transactions_user_id', 'transactions', ['user_id'])
    op.create_index('ix_transactions_subscription_id', 'transactions', ['subscription_id'])
    op.create_index('ix_transactions_payment_status', 'transactions', ['payment_status'])
    op.create_index('ix_transactions_gateway_order_id', 'transactions', ['gateway_order_id'])
    op.create_index('ix_transactions_created_at', 'transactions', ['created_at'])

    op.create_table(
        'promo_code_usage',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('promo_code_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('subscription_id', sa.Uuid(), nullable=True),
        sa.Column('transaction_id', sa.Uuid(), nullable=True),
        _money('discount_amount'),
        sa.Column('used_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['promo_code_id'], ['promo_codes.id']),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id']),
        sa.ForeignKeyConstraint(['transaction_id'], ['transactions.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_promo_code_usage_promo_code_id', 'promo_code_usage', ['promo_code_id'])
    op.create_index('ix_promo_code_usage_user_id', 'promo_code_usage', ['user_id'])
    op.create_index('ix_promo_usage_promo_user', 'promo_code_usage', ['promo_code_id', 'user_id'])

    op.create_table(
        'usage_tracking',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('subscription_id', sa.Uuid(), nullable=False),
        sa.Column('month_year', sa.String(7), nullable=False),
        sa.Column('contacts_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('templates_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('team_members_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('whatsapp_numbers_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('campaigns_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('messages_sent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('marketing_messages', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('utility_messages', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('auth_messages', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_reset_date', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'month_year', name='uq_usage_user_month'),
    )
    op.create_index('ix_usage_tracking_user_id', 'usage_tracking', ['user_id'])
    op.create_index('ix_usage_tracking_subscription_id', 'usage_tracking', ['subscription_id'])


def downgrade() -> None:
    op.drop_table('usage_tracking')
    op.drop_table('promo_code_usage')
    op.drop_table('transactions')
    op.drop_table('promo_codes')
    op.drop_index('uq_subscriptions_user_active', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('subscription_plans')
