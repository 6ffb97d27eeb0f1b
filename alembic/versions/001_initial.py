"""Initial migration

Revision ID: 001_initial
Revises:
Create Date: 2026-09-14

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create api_keys table
    op.create_table(
        'api_keys',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('key_hash', sa.String(255), nullable=False, unique=True, index=True),
        sa.Column('key_prefix', sa.String(12), nullable=False, index=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('user_id', sa.String(100), nullable=False, index=True),
        sa.Column('plan', sa.String(20), nullable=False, server_default='free'),
        sa.Column('rate_limit_per_minute', sa.Integer(), nullable=False, default=30),
        sa.Column('rate_limit_per_hour', sa.Integer(), nullable=False, default=300),
        sa.Column('is_active', sa.Boolean(), nullable=False, default=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
    )

    # Create study_guides table (one row per fingerprint)
    op.create_table(
        'study_guides',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('input_type', sa.String(20), nullable=False),
        sa.Column('input_value', sa.Text(), nullable=True),
        sa.Column('input_value_hash', sa.String(64), nullable=False, index=True),
        sa.Column('language', sa.String(5), nullable=False, server_default='en'),
        sa.Column('study_mode', sa.String(20), nullable=False, server_default='standard'),
        sa.Column('summary', sa.Text(), nullable=False),
        sa.Column('interpretation', sa.Text(), nullable=False),
        sa.Column('context', sa.Text(), nullable=False),
        sa.Column('related_verses', postgresql.JSON(), nullable=False),
        sa.Column('reflection_questions', postgresql.JSON(), nullable=False),
        sa.Column('prayer_points', postgresql.JSON(), nullable=False),
        sa.Column('passage', sa.Text(), nullable=True),
        sa.Column('interpretation_insights', postgresql.JSON(), nullable=True),
        sa.Column('summary_insights', postgresql.JSON(), nullable=True),
        sa.Column('reflection_answers', postgresql.JSON(), nullable=True),
        sa.Column('context_question', sa.Text(), nullable=True),
        sa.Column('summary_question', sa.Text(), nullable=True),
        sa.Column('related_verses_question', sa.Text(), nullable=True),
        sa.Column('reflection_question', sa.Text(), nullable=True),
        sa.Column('prayer_question', sa.Text(), nullable=True),
        sa.Column('extended_content', postgresql.JSON(), nullable=True),
        sa.Column('creator_user_id', sa.String(100), nullable=True, index=True),
        sa.Column('creator_session_id', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            'input_type', 'input_value_hash', 'language', 'study_mode',
            name='uq_study_guides_fingerprint',
        ),
    )

    # Create user_study_guides table (ownership)
    op.create_table(
        'user_study_guides',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('study_guide_id', postgresql.UUID(as_uuid=False), sa.ForeignKey('study_guides.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('caller_type', sa.String(20), nullable=False),
        sa.Column('caller_id', sa.String(100), nullable=False, index=True),
        sa.Column('is_saved', sa.Boolean(), nullable=False, default=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            'study_guide_id', 'caller_type', 'caller_id', name='uq_user_study_guides_owner'
        ),
    )

    # Create indexes
    op.create_index('ix_study_guides_created_at', 'study_guides', ['created_at'])
    op.create_index('ix_user_study_guides_saved', 'user_study_guides', ['caller_id', 'is_saved'])


def downgrade() -> None:
    op.drop_index('ix_user_study_guides_saved')
    op.drop_index('ix_study_guides_created_at')
    op.drop_table('user_study_guides')
    op.drop_table('study_guides')
    op.drop_table('api_keys')
