# alembic/versions/20261018_01_pipeline_baseline.py
"""Baseline schema for the participation-to-settlement pipeline

Revision ID: 20261018_01_pipeline_baseline
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261018_01_pipeline_baseline'
down_revision = None
branch_labels = None
depends_on = None

participation_status = sa.Enum('REQUESTED', 'MATCHED', 'RESERVED', 'CONFIRMED', 'ATTENDED', 'EXPIRED',
                               'CANCELLED', name='participation_status')
match_source = sa.Enum('ML', 'FALLBACK', name='match_source')
payment_status = sa.Enum('PENDING', 'SUCCEEDED', 'FAILED', 'REFUNDED', name='payment_status')
product_type = sa.Enum('EVENT', 'SUBSCRIPTION', 'PROMOTION', name='product_type')
escrow_status = sa.Enum('HELD', 'SCHEDULED', 'RELEASED', 'FAILED', 'REFUNDED', name='escrow_status')
refund_status = sa.Enum('PENDING', 'APPROVED', 'PROCESSED', 'REJECTED', 'FAILED', name='refund_status')
refund_reason = sa.Enum('EVENT_CANCELLED', 'USER_REQUEST', 'NO_SHOW_HOST', 'QUALITY_ISSUE', 'SYSTEM_ERROR',
                        name='refund_reason')
discount_type = sa.Enum('PERCENTAGE', 'FIXED', name='discount_type')


def _timestamps(with_updated: bool = True):
    cols = [sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)]
    if with_updated:
        cols.append(sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(),
                              nullable=False))
    return cols


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('display_name', sa.String(120), nullable=True),
        sa.Column('hobby_ids', sa.JSON(), nullable=False),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('search_radius_km', sa.Float(), nullable=True),
        sa.Column('country', sa.String(2), nullable=True),
        sa.Column('city', sa.String(120), nullable=True),
        sa.Column('segment', sa.String(50), nullable=True),
        sa.Column('reward_tier', sa.String(30), nullable=True),
        sa.Column('ledger_customer_ref', sa.String(128), nullable=True),
        sa.Column('payout_destination', sa.String(128), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )
    op.create_index('ix_users_email', 'users', ['email'])

    op.create_table(
        'events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('host_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('capacity', sa.Integer(), nullable=False),
        sa.Column('reserved_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('confirmed_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('price_minor', sa.Integer(), server_default='0', nullable=False),
        sa.Column('currency', sa.String(3), server_default='EUR', nullable=False),
        sa.Column('hobby_ids', sa.JSON(), nullable=False),
        sa.Column('category_ids', sa.JSON(), nullable=False),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('country', sa.String(2), nullable=True),
        sa.Column('city', sa.String(120), nullable=True),
        sa.Column('is_cancelled', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_reason', sa.String(500), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('capacity >= 0', name='ck_events_capacity_nonneg'),
        sa.CheckConstraint('reserved_count >= 0', name='ck_events_reserved_nonneg'),
        sa.CheckConstraint('confirmed_count >= 0', name='ck_events_confirmed_nonneg'),
        sa.CheckConstraint('reserved_count + confirmed_count <= capacity', name='ck_events_within_capacity'),
        sa.CheckConstraint('price_minor >= 0', name='ck_events_price_nonneg'),
    )
    op.create_index('ix_events_host_id', 'events', ['host_id'])
    op.create_index('ix_events_starts_at', 'events', ['starts_at'])

    op.create_table(
        'participations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('event_id', sa.Integer(), sa.ForeignKey('events.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', participation_status, nullable=False),
        sa.Column('match_score', sa.Float(), nullable=True),
        sa.Column('match_source', match_source, nullable=True),
        sa.Column('match_reasons', sa.JSON(), nullable=False),
        sa.Column('fallback_used', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('payment_window_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('finalized_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('finalized_by', sa.Integer(), nullable=True),
        sa.Column('attended_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_by', sa.String(64), nullable=True),
        sa.Column('cancel_reason', sa.String(500), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'event_id', name='uq_participation_user_event'),
    )
    op.create_index('ix_participations_user_id', 'participations', ['user_id'])
    op.create_index('ix_participations_event_id', 'participations', ['event_id'])
    op.create_index('ix_participations_status_expires', 'participations', ['status', 'payment_expires_at'])

    op.create_table(
        'discount_codes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('code', sa.String(64), nullable=False),
        sa.Column('description', sa.String(500), nullable=True),
        sa.Column('discount_type', discount_type, nullable=False),
        sa.Column('value', sa.Integer(), nullable=False),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('max_uses_per_user', sa.Integer(), nullable=True),
        sa.Column('min_amount_minor', sa.Integer(), nullable=True),
        sa.Column('valid_from', sa.DateTime(timezone=True), nullable=False),
        sa.Column('valid_until', sa.DateTime(timezone=True), nullable=False),
        sa.Column('product_types', sa.JSON(), nullable=False),
        sa.Column('allowed_countries', sa.JSON(), nullable=False),
        sa.Column('allowed_cities', sa.JSON(), nullable=False),
        sa.Column('user_segments', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column('created_by', sa.Integer(), nullable=True),
        *_timestamps(with_updated=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code'),
        sa.CheckConstraint('value >= 0', name='ck_discount_value_nonneg'),
    )
    op.create_index('ix_discount_codes_code', 'discount_codes', ['code'])

    op.create_table(
        'reward_discounts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('tier', sa.String(30), nullable=False),
        sa.Column('discount_type', discount_type, nullable=False),
        sa.Column('value', sa.Integer(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('redeemed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_intent_id', sa.Integer(), nullable=True),
        *_timestamps(with_updated=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_reward_discounts_user_id', 'reward_discounts', ['user_id'])

    op.create_table(
        'payment_intents',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('event_id', sa.Integer(), sa.ForeignKey('events.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('participation_id', sa.Integer(), sa.ForeignKey('participations.id', ondelete='SET NULL'),
                  nullable=True),
        sa.Column('product_type', product_type, nullable=False),
        sa.Column('original_amount_minor', sa.Integer(), nullable=False),
        sa.Column('discount_amount_minor', sa.Integer(), nullable=False),
        sa.Column('final_amount_minor', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', payment_status, nullable=False),
        sa.Column('external_ref', sa.String(128), nullable=True),
        sa.Column('discount_code_id', sa.Integer(), sa.ForeignKey('discount_codes.id', ondelete='SET NULL'),
                  nullable=True),
        sa.Column('reward_discount_id', sa.Integer(), sa.ForeignKey('reward_discounts.id', ondelete='SET NULL'),
                  nullable=True),
        sa.Column('failure_reason', sa.String(500), nullable=True),
        sa.Column('succeeded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_ref'),
        sa.CheckConstraint('discount_amount_minor >= 0', name='ck_payment_discount_nonneg'),
        sa.CheckConstraint('discount_amount_minor <= original_amount_minor', name='ck_payment_discount_capped'),
        sa.CheckConstraint('final_amount_minor = original_amount_minor - discount_amount_minor',
                           name='ck_payment_final_amount'),
        sa.CheckConstraint('discount_code_id IS NULL OR reward_discount_id IS NULL',
                           name='ck_payment_single_discount'),
    )
    op.create_index('ix_payment_intents_user_id', 'payment_intents', ['user_id'])
    op.create_index('ix_payment_intents_status', 'payment_intents', ['status'])
    op.create_index('ix_payment_intents_user_event', 'payment_intents', ['user_id', 'event_id'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(128), nullable=False),
        sa.Column('event_type', sa.String(64), nullable=False),
        sa.Column('outcome', sa.String(64), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_id'),
    )
    op.create_index('ix_webhook_events_event_type', 'webhook_events', ['event_type'])

    op.create_table(
        'discount_redemptions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('discount_code_id', sa.Integer(), sa.ForeignKey('discount_codes.id', ondelete='CASCADE'),
                  nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('payment_intent_id', sa.Integer(), sa.ForeignKey('payment_intents.id', ondelete='CASCADE'),
                  nullable=False),
        sa.Column('amount_minor', sa.Integer(), nullable=False),
        sa.Column('redeemed_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_intent_id'),
    )
    op.create_index('ix_discount_redemptions_discount_code_id', 'discount_redemptions', ['discount_code_id'])
    op.create_index('ix_discount_redemptions_user_id', 'discount_redemptions', ['user_id'])

    op.create_table(
        'escrows',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('payment_intent_id', sa.Integer(), sa.ForeignKey('payment_intents.id', ondelete='RESTRICT'),
                  nullable=False),
        sa.Column('event_id', sa.Integer(), sa.ForeignKey('events.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('host_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('amount_minor', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', escrow_status, nullable=False),
        sa.Column('attendance_verified', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('attendance_verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('event_end_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('release_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('retry_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('transfer_ref', sa.String(128), nullable=True),
        sa.Column('platform_fee_minor', sa.Integer(), nullable=True),
        sa.Column('host_amount_minor', sa.Integer(), nullable=True),
        sa.Column('failure_reason', sa.String(500), nullable=True),
        sa.Column('released_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_intent_id'),
        sa.CheckConstraint("status NOT IN ('SCHEDULED', 'RELEASED') OR attendance_verified",
                           name='ck_escrow_release_requires_attendance'),
        sa.CheckConstraint('amount_minor >= 0', name='ck_escrow_amount_nonneg'),
        sa.CheckConstraint('retry_count >= 0', name='ck_escrow_retry_nonneg'),
    )
    op.create_index('ix_escrows_event_id', 'escrows', ['event_id'])
    op.create_index('ix_escrows_host_id', 'escrows', ['host_id'])
    op.create_index('ix_escrows_user_id', 'escrows', ['user_id'])
    op.create_index('ix_escrows_transfer_ref', 'escrows', ['transfer_ref'])
    op.create_index('ix_escrows_release_gate', 'escrows', ['status', 'attendance_verified', 'release_at'])

    op.create_table(
        'refund_requests',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('payment_intent_id', sa.Integer(), sa.ForeignKey('payment_intents.id', ondelete='RESTRICT'),
                  nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('reason', refund_reason, nullable=False),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('amount_minor', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', refund_status, nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processed_by', sa.Integer(), nullable=True),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('ledger_refund_ref', sa.String(128), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_refund_requests_payment_intent_id', 'refund_requests', ['payment_intent_id'])
    op.create_index('ix_refund_requests_user_id', 'refund_requests', ['user_id'])
    op.create_index('ix_refund_requests_status', 'refund_requests', ['status'])


def downgrade() -> None:
    for table in ('refund_requests', 'escrows', 'discount_redemptions', 'webhook_events', 'payment_intents',
                  'reward_discounts', 'discount_codes', 'participations', 'events', 'users'):
        op.drop_table(table)
    bind = op.get_bind()
    for enum in (participation_status, match_source, payment_status, product_type, escrow_status,
                 refund_status, refund_reason, discount_type):
        enum.drop(bind, checkfirst=True)
