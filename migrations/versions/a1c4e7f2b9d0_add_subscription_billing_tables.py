"""add_subscription_billing_tables

Revision ID: a1c4e7f2b9d0
Revises:
Create Date: 2026-10-19 09:12:44.301512

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a1c4e7f2b9d0'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'tenants',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('billing_email', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), sa.ForeignKey('tenants.id'), nullable=False, index=True),
        sa.Column('email', sa.String(255), nullable=False, index=True),
        sa.Column('role', sa.String(20), nullable=False, server_default='member'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_table(
        'referral_invitations',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('referred_by_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('referred_user_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=True, index=True),
        sa.Column('email', sa.String(255), nullable=False, index=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending', index=True),
        sa.Column('reward_earned', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('accepted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('converted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False, unique=True, index=True),
        sa.Column('external_customer_id', sa.String(255), nullable=True, index=True),
        sa.Column('external_subscription_id', sa.String(255), nullable=True, unique=True),
        sa.Column('plan_type', sa.String(20), nullable=False, server_default='basic', index=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active', index=True),
        sa.Column('extra_users_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('free_months_remaining', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('extra_users_count >= 0', name='ck_subscriptions_extra_users_non_negative'),
        sa.CheckConstraint('free_months_remaining >= 0', name='ck_subscriptions_free_months_non_negative'),
    )
    op.create_table(
        'usage_limits',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False, unique=True, index=True),
        sa.Column('customers_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('jobs_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('works_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('documents_generated_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('documents_generated_month', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_table(
        'processed_webhook_events',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('event_id', sa.String(255), nullable=False, unique=True, index=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('outcome', sa.String(20), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('processed_webhook_events')
    op.drop_table('usage_limits')
    op.drop_table('subscriptions')
    op.drop_table('referral_invitations')
    op.drop_table('users')
    op.drop_table('tenants')
