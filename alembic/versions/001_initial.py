"""Initial migration

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Listings table
    op.create_table(
        'listings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.String(length=64), nullable=True),
        sa.Column('seller_username', sa.String(length=128), nullable=True),
        sa.Column('marketplace_item_id', sa.String(length=64), nullable=True),
        sa.Column('sku', sa.String(length=64), nullable=True),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('category', sa.String(length=64), nullable=True),
        sa.Column('product_identifier', sa.String(length=32), nullable=True),
        sa.Column('current_price', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('minimum_price', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('reduction_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('strategy', sa.String(length=32), nullable=False, server_default='fixed_percentage'),
        sa.Column('reduction_percentage', sa.Numeric(precision=5, scale=2), nullable=False, server_default='5.00'),
        sa.Column('reduction_interval_days', sa.Integer(), nullable=False, server_default='7'),
        sa.Column('target_price', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('last_reduction_at', sa.DateTime(), nullable=True),
        sa.Column('next_reduction_at', sa.DateTime(), nullable=True),
        sa.Column('listing_start_time', sa.DateTime(), nullable=True),
        sa.Column('listing_status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('archived', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('analyzed_state', sa.String(length=16), nullable=False, server_default='unanalyzed'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('minimum_price >= 0', name='ck_listing_minimum_non_negative'),
        sa.CheckConstraint('current_price >= minimum_price', name='ck_listing_price_above_floor'),
        sa.CheckConstraint(
            'reduction_percentage >= 0 AND reduction_percentage <= 100',
            name='ck_listing_reduction_percentage',
        ),
    )
    op.create_index('ix_listings_owner_id', 'listings', ['owner_id'])
    op.create_index('ix_listings_marketplace_item_id', 'listings', ['marketplace_item_id'])
    op.create_index('ix_listings_next_reduction_at', 'listings', ['next_reduction_at'])
    op.create_index('ix_listings_analyzed_state', 'listings', ['analyzed_state'])

    # Competitive snapshots table
    op.create_table(
        'competitive_snapshots',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('listing_id', sa.Integer(), nullable=False),
        sa.Column('tier_used', sa.String(length=20), nullable=False),
        sa.Column('competitor_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('suggested_min', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('suggested_avg', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('market_high', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('has_insufficient_data', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('computed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['listing_id'], ['listings.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('listing_id', name='uq_snapshot_listing'),
    )

    # Scheduler runs table (one row per UTC date)
    op.create_table(
        'scheduler_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('run_date', sa.Date(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('claim_token', sa.String(length=64), nullable=False),
        sa.Column('trigger', sa.String(length=32), nullable=True),
        sa.Column('forced', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('success_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('skip_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('fail_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('run_date', name='uq_scheduler_run_date'),
    )

    # Reduction attempts table (append-only outcome log)
    op.create_table(
        'reduction_attempts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('listing_id', sa.Integer(), nullable=False),
        sa.Column('scheduler_run_id', sa.Integer(), nullable=True),
        sa.Column('old_price', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('new_price', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('strategy_used', sa.String(length=32), nullable=False),
        sa.Column('outcome', sa.String(length=10), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('reduction_type', sa.String(length=16), nullable=False, server_default='scheduled'),
        sa.Column('remote_reference', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['listing_id'], ['listings.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['scheduler_run_id'], ['scheduler_runs.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_reduction_attempts_listing_id', 'reduction_attempts', ['listing_id'])
    op.create_index('ix_reduction_attempts_scheduler_run_id', 'reduction_attempts', ['scheduler_run_id'])
    op.create_index('ix_reduction_attempts_created_at', 'reduction_attempts', ['created_at'])


def downgrade() -> None:
    op.drop_index('ix_reduction_attempts_created_at', table_name='reduction_attempts')
    op.drop_index('ix_reduction_attempts_scheduler_run_id', table_name='reduction_attempts')
    op.drop_index('ix_reduction_attempts_listing_id', table_name='reduction_attempts')
    op.drop_table('reduction_attempts')
    op.drop_table('scheduler_runs')
    op.drop_table('competitive_snapshots')
    op.drop_index('ix_listings_analyzed_state', table_name='listings')
    op.drop_index('ix_listings_next_reduction_at', table_name='listings')
    op.drop_index('ix_listings_marketplace_item_id', table_name='listings')
    op.drop_index('ix_listings_owner_id', table_name='listings')
    op.drop_table('listings')
