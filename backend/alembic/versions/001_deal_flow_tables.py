"""Deal flow tables

Revision ID: 001
Revises: 
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy.sql import func

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JsonList = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')


def upgrade() -> None:
    # Sync run history
    op.create_table('deal_flow_sync_status',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('sync_type', sa.String(20), nullable=False),
    sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('status', sa.String(20), nullable=False),
    sa.Column('total_deals', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('processed_deals', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('successful_deals', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('failed_deals', JsonList, nullable=True),
    sa.Column('errors', JsonList, nullable=True),
    sa.Column('duration', sa.BigInteger(), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_deal_flow_sync_status_id'), 'deal_flow_sync_status', ['id'], unique=False)
    op.create_index('idx_deal_flow_sync_status_started_at', 'deal_flow_sync_status', ['started_at'], unique=False)
    op.create_index('idx_deal_flow_sync_status_status_completed', 'deal_flow_sync_status', ['status', 'completed_at'], unique=False)

    # Stage durations per deal
    op.create_table('pipedrive_deal_flow_data',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('pipedrive_event_id', sa.BigInteger(), nullable=False),
    sa.Column('deal_id', sa.BigInteger(), nullable=False),
    sa.Column('pipeline_id', sa.BigInteger(), nullable=False),
    sa.Column('stage_id', sa.BigInteger(), nullable=False),
    sa.Column('stage_name', sa.String(255), nullable=False),
    sa.Column('entered_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('left_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('duration_seconds', sa.BigInteger(), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('pipedrive_event_id')
    )
    op.create_index(op.f('ix_pipedrive_deal_flow_data_id'), 'pipedrive_deal_flow_data', ['id'], unique=False)
    op.create_index('idx_pipedrive_deal_flow_data_deal_id', 'pipedrive_deal_flow_data', ['deal_id'], unique=False)
    op.create_index('idx_pipedrive_deal_flow_data_entered_at', 'pipedrive_deal_flow_data', ['entered_at'], unique=False)


def downgrade() -> None:
    op.drop_index('idx_pipedrive_deal_flow_data_entered_at', table_name='pipedrive_deal_flow_data')
    op.drop_index('idx_pipedrive_deal_flow_data_deal_id', table_name='pipedrive_deal_flow_data')
    op.drop_index(op.f('ix_pipedrive_deal_flow_data_id'), table_name='pipedrive_deal_flow_data')
    op.drop_table('pipedrive_deal_flow_data')

    op.drop_index('idx_deal_flow_sync_status_status_completed', table_name='deal_flow_sync_status')
    op.drop_index('idx_deal_flow_sync_status_started_at', table_name='deal_flow_sync_status')
    op.drop_index(op.f('ix_deal_flow_sync_status_id'), table_name='deal_flow_sync_status')
    op.drop_table('deal_flow_sync_status')
