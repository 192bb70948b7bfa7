"""initial ledger tables

Revision ID: 0001_initial_ledger
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSON

revision = '0001_initial_ledger'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', UUID(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(20), nullable=True),
        sa.Column('name', sa.String(100), nullable=True),
        sa.Column('country', sa.String(2), nullable=True),
        sa.Column('region', sa.String(8), nullable=True),
        sa.Column('followers_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('engagement_rate', sa.Float(), server_default='0', nullable=False),
        sa.Column('phone_verified', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('email_verified', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('role', sa.String(20), server_default='user', nullable=False),
        sa.Column('is_blocked', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('blocked_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )

    op.create_table(
        'user_balances',
        sa.Column('user_id', UUID(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('total_earned', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('total_withdrawn', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('reserved', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('held', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('daily_earned', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('daily_date', sa.Date(), nullable=True),
        sa.Column('monthly_earned', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('monthly_period', sa.String(7), nullable=True),
        sa.Column('view_remainder_millicents', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('user_id'),
        sa.CheckConstraint('total_withdrawn + reserved <= total_earned', name='ck_user_balances_not_overdrawn'),
        sa.CheckConstraint('held >= 0 AND reserved >= 0', name='ck_user_balances_non_negative'),
    )

    op.create_table(
        'earning_events',
        sa.Column('id', UUID(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('user_id', UUID(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('activity', sa.String(20), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('quantity', sa.Integer(), server_default='1', nullable=False),
        sa.Column('video_id', sa.String(64), nullable=True),
        sa.Column('referred_user_id', UUID(), nullable=True),
        sa.Column('reference', sa.String(100), nullable=True),
        sa.Column('region', sa.String(8), nullable=True),
        sa.Column('description', sa.String(255), nullable=True),
        sa.Column('dedupe_key', sa.String(200), nullable=True),
        sa.Column('status', sa.String(20), server_default='completed', nullable=False),
        sa.Column('rejection_reason', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('verified_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('dedupe_key'),
    )

    op.create_index('ix_earning_events_user_id', 'earning_events', ['user_id'])
    op.create_index('ix_earning_events_user_activity_created', 'earning_events', ['user_id', 'activity', 'created_at'])

    op.create_table(
        'withdrawals',
        sa.Column('id', UUID(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('user_id', UUID(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('channel', sa.String(20), server_default='standard', nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('fee', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('net_amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), server_default='USD', nullable=False),
        sa.Column('country', sa.String(2), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('destination', sa.Text(), nullable=False),
        sa.Column('destination_hint', sa.String(32), nullable=True),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('transaction_id', sa.String(100), nullable=True),
        sa.Column('failure_code', sa.String(50), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('retryable', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('late_debit', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('parent_withdrawal_id', UUID(), sa.ForeignKey('withdrawals.id'), nullable=True),
        sa.Column('attempt', sa.Integer(), server_default='1', nullable=False),
        sa.Column('dispatched_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('parent_withdrawal_id'),
    )

    op.create_index('ix_withdrawals_status_updated', 'withdrawals', ['status', 'updated_at'])
    op.create_index('ix_withdrawals_user_created', 'withdrawals', ['user_id', 'created_at'])

    op.create_table(
        'withdrawal_events',
        sa.Column('id', UUID(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('withdrawal_id', UUID(), sa.ForeignKey('withdrawals.id', ondelete='CASCADE'), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('from_status', sa.String(20), nullable=True),
        sa.Column('to_status', sa.String(20), nullable=True),
        sa.Column('gateway_status', sa.String(50), nullable=True),
        sa.Column('payload', JSON(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_index('ix_withdrawal_events_withdrawal_id', 'withdrawal_events', ['withdrawal_id'])


def downgrade():
    op.drop_index('ix_withdrawal_events_withdrawal_id')
    op.drop_table('withdrawal_events')
    op.drop_index('ix_withdrawals_user_created')
    op.drop_index('ix_withdrawals_status_updated')
    op.drop_table('withdrawals')
    op.drop_index('ix_earning_events_user_activity_created')
    op.drop_index('ix_earning_events_user_id')
    op.drop_table('earning_events')
    op.drop_table('user_balances')
    op.drop_table('users')
