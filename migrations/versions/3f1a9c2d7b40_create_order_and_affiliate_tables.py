"""create order and affiliate tables

Revision ID: 3f1a9c2d7b40
Revises:
Create Date: 2026-09-28 10:14:22.418306

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f1a9c2d7b40'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('email', sa.String(length=120), nullable=False, unique=True),
        sa.Column('role', sa.String(length=20), nullable=False, index=True),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'affiliates',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, unique=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('commission_rate', sa.Numeric(5, 2), nullable=False),
        sa.Column('balance', sa.Numeric(10, 2), nullable=False, server_default=sa.text('0.00')),
        sa.Column('total_paid', sa.Numeric(10, 2), nullable=False, server_default=sa.text('0.00')),
        sa.Column('payout_threshold', sa.Numeric(10, 2), nullable=False),
        sa.Column('content_platforms', sa.JSON(), nullable=True),
        sa.Column('audience_info', sa.Text(), nullable=True),
        sa.Column('promotion_strategy', sa.Text(), nullable=True),
        sa.Column('portfolio_links', sa.JSON(), nullable=True),
        sa.Column('denial_reason', sa.Text(), nullable=True),
        sa.Column('can_reapply', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('next_allowed_application_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('code_regenerated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approval_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_payout_date', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'promo_codes',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(length=50), nullable=False, unique=True),
        sa.Column('name', sa.String(length=120), nullable=True),
        sa.Column('code_type', sa.String(length=20), nullable=False),
        sa.Column('affiliate_id', sa.Integer(), sa.ForeignKey('affiliates.id'), nullable=True, index=True),
        sa.Column('discount_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('is_percentage', sa.Boolean(), nullable=False),
        sa.Column('min_order_value', sa.Numeric(10, 2), nullable=False),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('current_uses', sa.Integer(), nullable=False),
        sa.Column('max_uses_per_user', sa.Integer(), nullable=False),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_number', sa.String(length=32), nullable=False, unique=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('package_type', sa.String(length=20), nullable=False),
        sa.Column('original_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('total_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('status', sa.String(length=30), nullable=False, index=True),
        sa.Column('workflow_stage', sa.Integer(), nullable=True),
        sa.Column('lyrics_approved', sa.Boolean(), nullable=False),
        sa.Column('lyrics_revisions', sa.Integer(), nullable=False),
        sa.Column('song_revisions', sa.Integer(), nullable=False),
        sa.Column('payment_status', sa.String(length=20), nullable=False),
        sa.Column('payment_id', sa.String(length=120), nullable=True, index=True),
        sa.Column('used_promo_code', sa.String(length=50), nullable=True),
        sa.Column('promo_discount_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('referring_affiliate_id', sa.Integer(), sa.ForeignKey('affiliates.id'), nullable=True),
        sa.Column('song_purpose', sa.String(length=120), nullable=True),
        sa.Column('recipient_name', sa.String(length=120), nullable=True),
        sa.Column('emotion', sa.String(length=60), nullable=True),
        sa.Column('provide_lyrics', sa.Boolean(), nullable=True),
        sa.Column('lyrics', sa.Text(), nullable=True),
        sa.Column('system_generated_lyrics', sa.Text(), nullable=True),
        sa.Column('song_theme', sa.String(length=255), nullable=True),
        sa.Column('personal_story', sa.Text(), nullable=True),
        sa.Column('music_style', sa.String(length=120), nullable=True),
        sa.Column('show_in_gallery', sa.Boolean(), nullable=True),
        sa.Column('additional_notes', sa.Text(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'order_addons',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=False, index=True),
        sa.Column('addon_type', sa.String(length=50), nullable=False),
        sa.Column('price', sa.Numeric(10, 2), nullable=False),
    )

    op.create_table(
        'songs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=False, index=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=True),
        sa.Column('file_path', sa.String(length=500), nullable=False),
        sa.Column('is_selected', sa.Boolean(), nullable=False),
        sa.Column('is_downloaded', sa.Boolean(), nullable=False),
        sa.Column('downloaded_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('order_id', 'version', name='uq_song_order_version'),
    )

    op.create_table(
        'order_revisions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=False, index=True),
        sa.Column('revision_type', sa.String(length=40), nullable=False),
        sa.Column('comment', sa.Text(), nullable=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('user_type', sa.String(length=20), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        'promo_code_usage',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code_id', sa.Integer(), sa.ForeignKey('promo_codes.id'), nullable=False, index=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('discount_applied', sa.Numeric(10, 2), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        'affiliate_payouts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('affiliate_id', sa.Integer(), sa.ForeignKey('affiliates.id'), nullable=False),
        sa.Column('requested_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('transaction_id', sa.String(length=120), nullable=True),
        sa.Column('processing_notes', sa.Text(), nullable=True),
        sa.Column('processed_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('paid_date', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'commissions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('affiliate_id', sa.Integer(), sa.ForeignKey('affiliates.id'), nullable=False),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('rate', sa.Numeric(5, 2), nullable=False),
        sa.Column('order_total', sa.Numeric(10, 2), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('payout_id', sa.Integer(), sa.ForeignKey('affiliate_payouts.id'), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_date', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('actor_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True, index=True),
        sa.Column('action', sa.String(length=255), nullable=True),
        sa.Column('ip_address', sa.String(length=50), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('event_id', sa.String(length=120), nullable=False, unique=True),
        sa.Column('event_type', sa.String(length=100), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('signature', sa.String(length=255), nullable=True),
        sa.Column('reference', sa.String(length=120), nullable=True, index=True),
        sa.Column('processed', sa.Boolean(), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=True),
        sa.Column('remarks', sa.String(length=255), nullable=True),
        *_timestamps(),
    )


def downgrade():
    for table in (
        'webhook_events', 'audit_logs', 'commissions', 'affiliate_payouts',
        'promo_code_usage', 'order_revisions', 'songs', 'order_addons',
        'orders', 'promo_codes', 'affiliates', 'users',
    ):
        op.drop_table(table)
