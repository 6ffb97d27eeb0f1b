"""Add in-flight generations, token balances and usage events

Revision ID: 002_generation_tracking
Revises: 001_initial
Create Date: 2026-09-21

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '002_generation_tracking'
down_revision: Union[str, None] = '001_initial'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # At most one row per fingerprint; terminal rows are cleaned up before a new claim
    op.create_table(
        'study_guides_in_progress',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('input_type', sa.String(20), nullable=False),
        sa.Column('input_value_hash', sa.String(64), nullable=False),
        sa.Column('language', sa.String(5), nullable=False),
        sa.Column('study_mode', sa.String(20), nullable=False),
        sa.Column('caller_type', sa.String(20), nullable=True),
        sa.Column('caller_id', sa.String(100), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='running', index=True),
        sa.Column('sections', postgresql.JSON(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('last_heartbeat_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_code', sa.String(50), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.UniqueConstraint(
            'input_type', 'input_value_hash', 'language', 'study_mode',
            name='uq_in_progress_fingerprint',
        ),
    )

    op.create_table(
        'token_balances',
        sa.Column('identifier', sa.String(100), primary_key=True),
        sa.Column('identifier_type', sa.String(20), primary_key=True),
        sa.Column('plan', sa.String(20), nullable=False, server_default='free'),
        sa.Column('daily_tokens', sa.Integer(), nullable=False, default=0),
        sa.Column('purchased_tokens', sa.Integer(), nullable=False, default=0),
        sa.Column('daily_limit', sa.Integer(), nullable=False, default=0),
        sa.Column('total_consumed_today', sa.Integer(), nullable=False, default=0),
        sa.Column('last_reset', sa.Date(), nullable=False, server_default=sa.func.current_date()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'usage_events',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('event_type', sa.String(50), nullable=False, index=True),
        sa.Column('caller_type', sa.String(20), nullable=True),
        sa.Column('caller_id', sa.String(100), nullable=True, index=True),
        sa.Column('study_guide_id', sa.String(36), nullable=True),
        sa.Column('tokens_consumed', sa.Integer(), nullable=False, default=0),
        sa.Column('llm_provider', sa.String(20), nullable=True),
        sa.Column('llm_model', sa.String(100), nullable=True),
        sa.Column('llm_input_tokens', sa.Integer(), nullable=False, default=0),
        sa.Column('llm_output_tokens', sa.Integer(), nullable=False, default=0),
        sa.Column('llm_cost_usd', sa.Float(), nullable=False, default=0.0),
        sa.Column('details', postgresql.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_index('ix_usage_events_created_at', 'usage_events', ['created_at'])


def downgrade() -> None:
    op.drop_index('ix_usage_events_created_at')
    op.drop_table('usage_events')
    op.drop_table('token_balances')
    op.drop_table('study_guides_in_progress')
