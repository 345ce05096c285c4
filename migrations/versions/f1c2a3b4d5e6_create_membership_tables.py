"""Create membership catalog, subscription and activity tables

Revision ID: f1c2a3b4d5e6
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'f1c2a3b4d5e6'
down_revision = None
branch_labels = None
depends_on = None

LIVE_FILTER = "status IN ('ACTIVE', 'PENDING_RENEWAL')"


def upgrade():
    """Create all membership tables."""
    op.create_table(
        'membership_plans',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('plan_type', sa.String(20), nullable=False),
        sa.Column('duration_months', sa.Integer(), nullable=False),
        sa.Column('price', sa.Numeric(10, 2), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('price > 0', name='ck_membership_plans_price_positive'),
        sa.CheckConstraint('duration_months > 0', name='ck_membership_plans_duration_positive'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name')
    )

    op.create_table(
        'membership_tiers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('level', sa.String(20), nullable=False),
        sa.Column('min_orders_required', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('min_order_value_monthly', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('discount_percentage', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('free_delivery', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('priority_support', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('exclusive_deals', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('early_access', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('eligible_cohorts', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('min_orders_required >= 0', name='ck_membership_tiers_min_orders'),
        sa.CheckConstraint('min_order_value_monthly >= 0', name='ck_membership_tiers_min_value'),
        sa.CheckConstraint('discount_percentage >= 0', name='ck_membership_tiers_discount'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name')
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(50), nullable=False),
        sa.Column('plan_id', sa.Integer(), nullable=False),
        sa.Column('plan_name', sa.String(100), nullable=False),
        sa.Column('plan_type', sa.String(20), nullable=False),
        sa.Column('plan_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('plan_duration_months', sa.Integer(), nullable=False),
        sa.Column('tier_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('renewed_at', sa.DateTime(), nullable=True),
        sa.Column('renewal_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('cancellation_reason', sa.String(500), nullable=True),
        sa.Column('expired_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['plan_id'], ['membership_plans.id'], ),
        sa.ForeignKeyConstraint(['tier_id'], ['membership_tiers.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_expires_at', 'subscriptions', ['expires_at'])
    op.create_index('ix_subscriptions_status_expires', 'subscriptions', ['status', 'expires_at'])
    # At most one live subscription per user
    op.create_index(
        'uq_subscriptions_user_live',
        'subscriptions',
        ['user_id'],
        unique=True,
        sqlite_where=sa.text(LIVE_FILTER),
        postgresql_where=sa.text(LIVE_FILTER)
    )

    op.create_table(
        'tier_change_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('subscription_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(50), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('previous_tier_id', sa.Integer(), nullable=True),
        sa.Column('previous_tier_name', sa.String(100), nullable=True),
        sa.Column('new_tier_id', sa.Integer(), nullable=False),
        sa.Column('new_tier_name', sa.String(100), nullable=False),
        sa.Column('direction', sa.String(20), nullable=False),
        sa.Column('cause', sa.String(50), nullable=False),
        sa.Column('reason', sa.String(500), nullable=True),
        sa.Column('created_by', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ),
        sa.ForeignKeyConstraint(['previous_tier_id'], ['membership_tiers.id'], ),
        sa.ForeignKeyConstraint(['new_tier_id'], ['membership_tiers.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('subscription_id', 'sequence', name='uq_tier_change_logs_sequence')
    )
    op.create_index('ix_tier_change_logs_user_id', 'tier_change_logs', ['user_id'])

    op.create_table(
        'activity_buckets',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(50), nullable=False),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('order_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('order_value', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('return_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('return_value', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('review_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('referral_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'period_start', name='uq_activity_buckets_user_period')
    )

    op.create_table(
        'user_cohorts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(50), nullable=False),
        sa.Column('cohort', sa.String(50), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'cohort', name='uq_user_cohorts_user_cohort')
    )
    op.create_index('ix_user_cohorts_user_id', 'user_cohorts', ['user_id'])


def downgrade():
    """Drop all membership tables."""
    op.drop_index('ix_user_cohorts_user_id', table_name='user_cohorts')
    op.drop_table('user_cohorts')
    op.drop_table('activity_buckets')
    op.drop_index('ix_tier_change_logs_user_id', table_name='tier_change_logs')
    op.drop_table('tier_change_logs')
    op.drop_index('uq_subscriptions_user_live', table_name='subscriptions')
    op.drop_index('ix_subscriptions_status_expires', table_name='subscriptions')
    op.drop_index('ix_subscriptions_expires_at', table_name='subscriptions')
    op.drop_index('ix_subscriptions_user_id', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('membership_tiers')
    op.drop_table('membership_plans')
