"""Create api_credentials, sales and sync_runs

Revision ID: sales_ledger_001
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = 'sales_ledger_001'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'api_credentials',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('platform', sa.String(32), nullable=False),
        sa.Column('store_id', sa.String(255), nullable=True),
        sa.Column('store_name', sa.String(255), nullable=True),
        sa.Column('store_url', sa.String(512), nullable=True),
        sa.Column('public_key', sa.Text(), nullable=True),
        sa.Column('secret_key', sa.Text(), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'platform', name='uq_api_credentials_user_platform'),
    )
    op.create_index('ix_api_credentials_user_id', 'api_credentials', ['user_id'])

    op.create_table(
        'sales',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('platform', sa.String(32), nullable=False),
        sa.Column('order_id', sa.String(128), nullable=False),
        sa.Column('item_id', sa.String(255), nullable=False),
        sa.Column('item_title', sa.Text(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('price', sa.Float(), nullable=False),
        sa.Column('currency', sa.String(8), nullable=False),
        sa.Column('buyer_name', sa.String(255), nullable=True),
        sa.Column('buyer_email', sa.String(255), nullable=True),
        sa.Column('sale_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(64), nullable=True),
        sa.Column('normalized_status', sa.String(16), nullable=False),
        sa.Column('shipping_address', sa.Text(), nullable=True),
        sa.Column('tracking_number', sa.String(128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'platform', 'order_id', 'item_id', name='uq_sales_identity'),
    )
    op.create_index('idx_sales_user_date', 'sales', ['user_id', 'sale_date'])
    op.create_index('idx_sales_user_platform', 'sales', ['user_id', 'platform'])

    op.create_table(
        'sync_runs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('platform', sa.String(32), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('items_synced', sa.Integer(), nullable=False),
        sa.Column('outcome', sa.String(16), nullable=False),
        sa.Column('error_detail', sa.Text(), nullable=True),
        sa.Column('warnings', sa.JSON(), nullable=True),
    )
    op.create_index('ix_sync_runs_user_id', 'sync_runs', ['user_id'])
    op.create_index('idx_sync_runs_user_started', 'sync_runs', ['user_id', 'started_at'])


def downgrade() -> None:
    op.drop_index('idx_sync_runs_user_started', table_name='sync_runs')
    op.drop_index('ix_sync_runs_user_id', table_name='sync_runs')
    op.drop_table('sync_runs')
    op.drop_index('idx_sales_user_platform', table_name='sales')
    op.drop_index('idx_sales_user_date', table_name='sales')
    op.drop_table('sales')
    op.drop_index('ix_api_credentials_user_id', table_name='api_credentials')
    op.drop_table('api_credentials')
