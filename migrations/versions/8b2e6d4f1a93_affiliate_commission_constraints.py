"""affiliate commission constraints, payout details and balance resync

Revision ID: 8b2e6d4f1a93
Revises: 3f1a9c2d7b40
Create Date: 2026-10-06 16:41:09.052117

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '8b2e6d4f1a93'
down_revision = '3f1a9c2d7b40'
branch_labels = None
depends_on = None


def upgrade():
    # Step 1: One commission per (affiliate, order), plus lookup indexes
    with op.batch_alter_table('commissions', schema=None) as batch_op:
        batch_op.create_unique_constraint('unique_affiliate_order', ['affiliate_id', 'order_id'])
        batch_op.create_index('idx_commissions_affiliate_status', ['affiliate_id', 'status'])
        batch_op.create_index('idx_commissions_created_status', ['created_at', 'status'])

    op.create_index('idx_affiliates_user_status', 'affiliates', ['user_id', 'status'])
    op.create_index('idx_payouts_affiliate_status', 'affiliate_payouts', ['affiliate_id', 'status'])
    op.create_index('idx_orders_referring_affiliate', 'orders', ['referring_affiliate_id'])

    # Step 2: Lifetime earnings next to the balance
    with op.batch_alter_table('affiliates', schema=None) as batch_op:
        batch_op.add_column(
            sa.Column('total_earnings', sa.Numeric(10, 2), nullable=False, server_default=sa.text('0.00'))
        )

    # Step 3: Payout destination
    with op.batch_alter_table('affiliate_payouts', schema=None) as batch_op:
        batch_op.add_column(sa.Column('payment_method', sa.String(length=20), nullable=True))
        batch_op.add_column(sa.Column('payment_info', sa.JSON(), nullable=True))
    op.execute("UPDATE affiliate_payouts SET payment_method = 'stripe' WHERE payment_method IS NULL")
    with op.batch_alter_table('affiliate_payouts', schema=None) as batch_op:
        batch_op.alter_column('payment_method', existing_type=sa.String(length=20), nullable=False)

    # Step 4: Approve commissions whose orders are already paid
    op.execute(
        """
        UPDATE commissions
        SET status = 'approved', approved_at = CURRENT_TIMESTAMP
        WHERE status = 'pending'
          AND order_id IN (SELECT id FROM orders WHERE payment_status = 'paid')
        """
    )

    # Step 5: Resync balance (approved) and total earnings (all)
    op.execute(
        """
        UPDATE affiliates
        SET balance = (
                SELECT COALESCE(SUM(c.amount), 0) FROM commissions c
                WHERE c.affiliate_id = affiliates.id AND c.status = 'approved'
            ),
            total_earnings = (
                SELECT COALESCE(SUM(c.amount), 0) FROM commissions c
                WHERE c.affiliate_id = affiliates.id
            )
        """
    )


def downgrade():
    with op.batch_alter_table('affiliate_payouts', schema=None) as batch_op:
        batch_op.drop_column('payment_info')
        batch_op.drop_column('payment_method')

    with op.batch_alter_table('affiliates', schema=None) as batch_op:
        batch_op.drop_column('total_earnings')

    op.drop_index('idx_orders_referring_affiliate', table_name='orders')
    op.drop_index('idx_payouts_affiliate_status', table_name='affiliate_payouts')
    op.drop_index('idx_affiliates_user_status', table_name='affiliates')

    with op.batch_alter_table('commissions', schema=None) as batch_op:
        batch_op.drop_index('idx_commissions_created_status')
        batch_op.drop_index('idx_commissions_affiliate_status')
        batch_op.drop_constraint('unique_affiliate_order', type_='unique')
