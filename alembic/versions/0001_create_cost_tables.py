"""Create cost ledger, budget config and processed content tables

Revision ID: 0001_create_cost_tables
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_create_cost_tables'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create cost tables."""
    # Append-only ledger; event_id is not unique because retried flushes may duplicate rows
    op.create_table('cost_ledger',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_id', sa.String(length=32), nullable=False),
        sa.Column('tenant_id', sa.String(length=255), nullable=False),
        sa.Column('service', sa.String(length=100), nullable=False),
        sa.Column('operation', sa.String(length=100), nullable=False),
        sa.Column('amount_cents', sa.Numeric(precision=18, scale=4), nullable=False),
        sa.Column('units', sa.Numeric(precision=18, scale=6), nullable=True),
        sa.Column('metadata_json', sa.JSON(), nullable=True),
        sa.Column('tracked_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_cost_ledger_id', 'cost_ledger', ['id'])
    op.create_index('ix_cost_ledger_event_id', 'cost_ledger', ['event_id'])
    op.create_index('ix_cost_ledger_tenant_id', 'cost_ledger', ['tenant_id'])
    op.create_index('ix_ledger_tenant_tracked', 'cost_ledger', ['tenant_id', 'tracked_at'])
    op.create_index('ix_ledger_tenant_service_tracked', 'cost_ledger', ['tenant_id', 'service', 'tracked_at'])

    op.create_table('budget_configs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.String(length=255), nullable=False),
        sa.Column('tier', sa.String(length=50), nullable=False),
        sa.Column('monthly_budget_cents', sa.Numeric(precision=18, scale=4), nullable=True),
        sa.Column('alert_thresholds', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_budget_configs_id', 'budget_configs', ['id'])
    op.create_index('ix_budget_configs_tenant_id', 'budget_configs', ['tenant_id'], unique=True)

    op.create_table('processed_content',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.String(length=255), nullable=False),
        sa.Column('content_hash', sa.String(length=64), nullable=False),
        sa.Column('perceptual_hash', sa.String(length=16), nullable=True),
        sa.Column('media_type', sa.String(length=20), nullable=True),
        sa.Column('result_json', sa.JSON(), nullable=True),
        sa.Column('cost_cents', sa.Numeric(precision=18, scale=4), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_processed_content_id', 'processed_content', ['id'])
    op.create_index('ix_processed_content_tenant_id', 'processed_content', ['tenant_id'])
    op.create_index('ix_processed_content_created_at', 'processed_content', ['created_at'])
    op.create_index('ix_processed_tenant_hash', 'processed_content', ['tenant_id', 'content_hash'])
    op.create_index('ix_processed_tenant_created', 'processed_content', ['tenant_id', 'created_at'])


def downgrade() -> None:
    """Drop cost tables."""
    op.drop_index('ix_processed_tenant_created', table_name='processed_content')
    op.drop_index('ix_processed_tenant_hash', table_name='processed_content')
    op.drop_index('ix_processed_content_created_at', table_name='processed_content')
    op.drop_index('ix_processed_content_tenant_id', table_name='processed_content')
    op.drop_index('ix_processed_content_id', table_name='processed_content')
    op.drop_table('processed_content')

    op.drop_index('ix_budget_configs_tenant_id', table_name='budget_configs')
    op.drop_index('ix_budget_configs_id', table_name='budget_configs')
    op.drop_table('budget_configs')

    op.drop_index('ix_ledger_tenant_service_tracked', table_name='cost_ledger')
    op.drop_index('ix_ledger_tenant_tracked', table_name='cost_ledger')
    op.drop_index('ix_cost_ledger_tenant_id', table_name='cost_ledger')
    op.drop_index('ix_cost_ledger_event_id', table_name='cost_ledger')
    op.drop_index('ix_cost_ledger_id', table_name='cost_ledger')
    op.drop_table('cost_ledger')
