"""saved payout methods

Revision ID: 0002_payout_methods
Revises: 0001_initial_ledger
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

revision = '0002_payout_methods'
down_revision = '0001_initial_ledger'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'payout_methods',
        sa.Column('id', UUID(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('user_id', UUID(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('country', sa.String(2), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('destination', sa.Text(), nullable=False),
        sa.Column('destination_hint', sa.String(32), nullable=False),
        sa.Column('fingerprint', sa.String(64), nullable=False),
        sa.Column('label', sa.String(100), nullable=True),
        sa.Column('is_default', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column('last_used_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'fingerprint', name='uq_payout_methods_user_fingerprint'),
    )

    op.create_index('ix_payout_methods_user', 'payout_methods', ['user_id'])


def downgrade():
    op.drop_index('ix_payout_methods_user')
    op.drop_table('payout_methods')
