"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create accounts and payment_records tables."""

    # ========================================================================
    # Create accounts table
    # ========================================================================
    op.create_table(
        'accounts',
        sa.Column('account_id', sa.String(255), primary_key=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('credit_balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('plan_kind', sa.String(20), nullable=False, server_default='credits'),
        sa.Column('unlimited_total_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unlimited_activated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('unlimited_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_purchase_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('last_purchase_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('credit_balance >= 0', name='ck_credit_balance_non_negative'),
        sa.CheckConstraint('unlimited_total_days >= 0', name='ck_unlimited_days_non_negative'),
        sa.CheckConstraint("plan_kind IN ('credits', 'unlimited')", name='ck_plan_kind'),
        sa.CheckConstraint(
            "plan_kind <> 'unlimited' OR credit_balance = 0",
            name='ck_unlimited_has_no_credits',
        ),
    )

    op.create_index('idx_accounts_email', 'accounts', ['email'], postgresql_where=sa.text('email IS NOT NULL'))

    # ========================================================================
    # Create payment_records table
    # ========================================================================
    op.create_table(
        'payment_records',
        sa.Column('payment_ref', sa.String(255), primary_key=True),
        sa.Column('account_id', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('source_channel', sa.String(20), nullable=False),
        sa.Column('state', sa.String(30), nullable=False, server_default='unseen'),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('credits_granted', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('plan_granted', sa.String(20), nullable=True),
        sa.Column('days_granted', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('credits_before', sa.BigInteger(), nullable=True),
        sa.Column('credits_after', sa.BigInteger(), nullable=True),
        sa.Column('plan_before', sa.String(20), nullable=True),
        sa.Column('plan_after', sa.String(20), nullable=True),
        sa.Column('unlimited_days_before', sa.Integer(), nullable=True),
        sa.Column('unlimited_days_after', sa.Integer(), nullable=True),
        sa.Column('expires_before', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_after', sa.DateTime(timezone=True), nullable=True),
        sa.Column('receipt_url', sa.Text(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('registered_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('processing_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount > 0', name='ck_payment_amount_positive'),
        sa.CheckConstraint(
            "state IN ('unseen', 'processing', 'approved', 'failed', 'needs_manual_review')",
            name='ck_payment_state',
        ),
        sa.CheckConstraint(
            "source_channel IN ('payment_created', 'notification', 'manual')",
            name='ck_payment_source_channel',
        ),
        sa.CheckConstraint(
            "processed = false OR state = 'approved'",
            name='ck_processed_only_when_approved',
        ),
    )

    op.create_index('idx_payment_records_account_id', 'payment_records', ['account_id'])
    op.create_index('idx_payment_records_state', 'payment_records', ['state'])
    op.create_index('idx_payment_records_registered_at', 'payment_records', ['registered_at'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index('idx_payment_records_registered_at', table_name='payment_records')
    op.drop_index('idx_payment_records_state', table_name='payment_records')
    op.drop_index('idx_payment_records_account_id', table_name='payment_records')
    op.drop_table('payment_records')

    op.drop_index('idx_accounts_email', table_name='accounts')
    op.drop_table('accounts')
