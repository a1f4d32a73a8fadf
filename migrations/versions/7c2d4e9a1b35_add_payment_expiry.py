"""add payment expiry

Revision ID: 7c2d4e9a1b35
Revises: 3f1a9c2e7b10
Create Date: 2026-10-19 15:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '7c2d4e9a1b35'
down_revision = '3f1a9c2e7b10'
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table('payments', schema=None) as batch_op:
        batch_op.add_column(sa.Column('expires_at', sa.DateTime(), nullable=True))
        batch_op.create_index(batch_op.f('ix_payments_expires_at'), ['expires_at'], unique=False)


def downgrade():
    with op.batch_alter_table('payments', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_payments_expires_at'))
        batch_op.drop_column('expires_at')
