"""initial schema

Revision ID: 2026_10_18_0000
Revises:
Create Date: 2026-10-18 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_18_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

NOW = sa.text('CURRENT_TIMESTAMP')


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Create ledger_entries table
    # ========================================================================
    op.create_table(
        'ledger_entries',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('operation', sa.String(20), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('balance_after', sa.BigInteger(), nullable=False),
        sa.Column('reason', sa.String(500), nullable=False),
        sa.Column('reference_type', sa.String(50), nullable=True),
        sa.Column('reference_id', sa.String(255), nullable=True),
        sa.Column('actor_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW),

        # Constraints
        sa.CheckConstraint('balance_after >= 0', name='ck_ledger_balance_after_non_negative'),
        sa.CheckConstraint(
            "operation IN ('ADD', 'CONSUME', 'REFUND', 'ADJUST', 'EXPIRE')",
            name='ck_ledger_operation',
        ),
        sa.UniqueConstraint('operation', 'reference_type', 'reference_id', name='uq_ledger_operation_reference'),
    )

    op.create_index('ix_ledger_entries_user_id', 'ledger_entries', ['user_id'])
    op.create_index('idx_ledger_entries_user_created', 'ledger_entries', ['user_id', 'created_at'])

    # ========================================================================
    # Create balance_cache table
    # ========================================================================
    op.create_table(
        'balance_cache',
        sa.Column('user_id', sa.String(255), primary_key=True),
        sa.Column('available', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('used', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('plan_type', sa.String(50), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW),

        sa.CheckConstraint('available >= 0', name='ck_balance_available_non_negative'),
        sa.CheckConstraint('available = total - used', name='ck_balance_consistency'),
    )

    # ========================================================================
    # Create user_roles table
    # ========================================================================
    op.create_table(
        'user_roles',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('role', sa.String(50), nullable=False),
        sa.Column('granted_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW),

        sa.UniqueConstraint('user_id', 'role', name='uq_user_role'),
    )

    op.create_index('ix_user_roles_user_id', 'user_roles', ['user_id'])

    # ========================================================================
    # Create registrations, anchors and submission_attempts tables
    # ========================================================================
    op.create_table(
        'registrations',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('owner_id', sa.String(255), nullable=False),
        sa.Column('content_path', sa.String(1024), nullable=True),
        sa.Column('content_hash', sa.String(64), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW),

        sa.CheckConstraint('attempt_count >= 0', name='ck_registration_attempts_non_negative'),
        sa.CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'CONFIRMED', 'FAILED')",
            name='ck_registration_status',
        ),
    )

    op.create_index('ix_registrations_owner_id', 'registrations', ['owner_id'])
    op.create_index('ix_registrations_content_hash', 'registrations', ['content_hash'])
    op.create_index('idx_registrations_status', 'registrations', ['status'])

    op.create_table(
        'anchors',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('registration_id', sa.Uuid(), nullable=False),
        sa.Column('method', sa.String(20), nullable=False),
        sa.Column('authority', sa.String(255), nullable=True),
        sa.Column('proof', sa.LargeBinary(), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW),

        sa.UniqueConstraint('registration_id', name='uq_anchor_registration'),
        sa.ForeignKeyConstraint(['registration_id'], ['registrations.id'], name='fk_anchors_registration', ondelete='RESTRICT'),
    )

    op.create_table(
        'submission_attempts',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('registration_id', sa.Uuid(), nullable=False),
        sa.Column('attempt_number', sa.Integer(), nullable=False),
        sa.Column('authority', sa.String(255), nullable=False),
        sa.Column('succeeded', sa.Boolean(), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW),

        sa.ForeignKeyConstraint(['registration_id'], ['registrations.id'], name='fk_submission_attempts_registration', ondelete='CASCADE'),
    )

    op.create_index('ix_submission_attempts_registration_id', 'submission_attempts', ['registration_id'])

    # ========================================================================
    # Create payment gateway tables
    # ========================================================================
    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('external_payment_id', sa.String(255), nullable=True),
        sa.Column('subscription_id', sa.String(255), nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
        sa.Column('source', sa.String(20), nullable=False, server_default='webhook'),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('action_taken', sa.String(100), nullable=False),
        sa.Column('credits_released', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('raw_payload', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(64), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW),
    )

    op.create_index('idx_webhook_events_idempotency', 'webhook_events', ['idempotency_key', 'processed'])
    op.create_index('idx_webhook_events_payment', 'webhook_events', ['external_payment_id'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('external_payment_id', sa.String(255), nullable=False, unique=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('plan_type', sa.String(50), nullable=False),
        sa.Column('credits_amount', sa.Integer(), nullable=False),
        sa.Column('value', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW),

        sa.CheckConstraint('credits_amount >= 0', name='ck_payment_credits_non_negative'),
    )

    op.create_index('ix_payments_user_id', 'payments', ['user_id'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('external_subscription_id', sa.String(255), nullable=False, unique=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('plan_type', sa.String(50), nullable=False),
        sa.Column('credits_per_cycle', sa.Integer(), nullable=False),
        sa.Column('current_cycle', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('last_credit_reset_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW),
    )

    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])

    op.create_table(
        'manual_reviews',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=True),
        sa.Column('reason', sa.String(100), nullable=False),
        sa.Column('reference_type', sa.String(50), nullable=False),
        sa.Column('reference_id', sa.String(255), nullable=False),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('resolved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW),
    )

    op.create_index('idx_manual_reviews_unresolved', 'manual_reviews', ['resolved'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('manual_reviews')
    op.drop_table('subscriptions')
    op.drop_table('payments')
    op.drop_table('webhook_events')
    op.drop_table('submission_attempts')
    op.drop_table('anchors')
    op.drop_table('registrations')
    op.drop_table('user_roles')
    op.drop_table('balance_cache')
    op.drop_table('ledger_entries')
