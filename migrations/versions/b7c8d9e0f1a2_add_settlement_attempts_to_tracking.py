"""Add settlement_attempts and settlement_error to referral_tracking

Revision ID: b7c8d9e0f1a2
Revises: a1b2c3d4e5f6
Create Date: 2026-10-20 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'b7c8d9e0f1a2'
down_revision = 'a1b2c3d4e5f6'
branch_labels = None
depends_on = None


def upgrade():
    # Failed settlement runs, so the repair job can stop retrying dead rows
    with op.batch_alter_table('referral_tracking', schema=None) as batch_op:
        batch_op.add_column(sa.Column('settlement_attempts', sa.Integer(), nullable=False, server_default='0'))
        batch_op.add_column(sa.Column('settlement_error', sa.String(length=500), nullable=True))


def downgrade():
    with op.batch_alter_table('referral_tracking', schema=None) as batch_op:
        batch_op.drop_column('settlement_error')
        batch_op.drop_column('settlement_attempts')
