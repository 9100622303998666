"""create_billing_tables

Revision ID: 3c1f0a9b7d21
Revises:
Create Date: 2026-10-19 09:12:44.310582

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3c1f0a9b7d21'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'tenants',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('plan_tier', sa.String(20), nullable=False, server_default='FREE'),
        sa.Column('max_appointments', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), sa.ForeignKey('tenants.id'), nullable=False, unique=True, index=True),
        sa.Column('plan_tier', sa.String(20), nullable=False, server_default='FREE'),
        sa.Column('billing_cycle', sa.String(10), nullable=False, server_default='MONTHLY'),
        sa.Column('price_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='ARS'),
        sa.Column('status', sa.String(20), nullable=False, server_default='FREE', index=True),
        sa.Column('next_billing_date', sa.DateTime(timezone=True), nullable=True, index=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'payments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('subscription_id', sa.Uuid(), sa.ForeignKey('subscriptions.id'), nullable=False, index=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='ARS'),
        sa.Column('billing_cycle', sa.String(10), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING', index=True),
        sa.Column('payment_method', sa.String(50), nullable=True),
        sa.Column('charge_id', sa.String(255), nullable=True, unique=True),
        sa.Column('order_id', sa.String(255), nullable=True),
        sa.Column('checkout_url', sa.String(1024), nullable=True),
        sa.Column('failure_reason', sa.String(255), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('applied_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    # Backstop reconciliation scans open payments per subscription
    op.create_index('ix_payments_subscription_status', 'payments', ['subscription_id', 'status'])

    op.create_table(
        'payment_notifications',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('charge_id', sa.String(255), nullable=False, index=True),
        sa.Column('target_status', sa.String(20), nullable=False),
        sa.Column('payment_id', sa.Uuid(), sa.ForeignKey('payments.id'), nullable=True),
        sa.Column('outcome', sa.String(20), nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('charge_id', 'target_status', name='uq_payment_notification_effect'),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('payment_notifications')
    op.drop_index('ix_payments_subscription_status', table_name='payments')
    op.drop_table('payments')
    op.drop_table('subscriptions')
    op.drop_table('tenants')
