# alembic/versions/20261018_02_payout_and_window_tracking.py
"""Escrow refund claim, stable transfer keys, payment window on intents

Revision ID: 20261018_02_payout_and_window_tracking
Revises: 20261018_01_pipeline_baseline
Create Date: 2026-10-18 15:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261018_02_payout_and_window_tracking'
down_revision = '20261018_01_pipeline_baseline'
branch_labels = None
depends_on = None


def upgrade() -> None:
    if op.get_bind().dialect.name == 'postgresql':
        # ADD VALUE cannot run inside the migration transaction on older servers.
        with op.get_context().autocommit_block():
            op.execute("ALTER TYPE escrow_status ADD VALUE IF NOT EXISTS 'REFUNDING'")

    with op.batch_alter_table('escrows') as batch:
        batch.add_column(sa.Column('release_attempt', sa.Integer(), server_default='0', nullable=False))
        batch.create_check_constraint('ck_escrow_release_attempt_nonneg', 'release_attempt >= 0')

    with op.batch_alter_table('payment_intents') as batch:
        batch.add_column(sa.Column('payment_window_start', sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table('payment_intents') as batch:
        batch.drop_column('payment_window_start')

    with op.batch_alter_table('escrows') as batch:
        batch.drop_constraint('ck_escrow_release_attempt_nonneg', type_='check')
        batch.drop_column('release_attempt')
    # Postgres cannot drop an enum value; REFUNDING stays in escrow_status.
