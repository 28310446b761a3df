"""emotion map schema: users, entries, aggregates

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'app_user',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('email', sa.Text(), nullable=True, unique=True),
        sa.Column('display_name', sa.Text(), nullable=True),
        sa.Column('role', sa.Text(), nullable=False, server_default='user'),
        sa.Column('reputation', sa.Float(), nullable=False, server_default='1.0'),
    )

    op.create_table(
        'emotion_entry',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('cell_id', sa.String(16), nullable=False),
        sa.Column('emotion', sa.Text(), nullable=False),
        sa.Column('intensity', sa.Integer(), nullable=False),
        sa.Column('valence', sa.Float(), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('tags', postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('dwell_seconds', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('gps_accuracy', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('visibility', sa.Text(), nullable=False, server_default='PUBLIC'),
        sa.Column('ttl_hours', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['app_user.id'], ),
        sa.CheckConstraint('intensity >= 0 AND intensity <= 100', name='ck_emotion_entry_intensity'),
        sa.CheckConstraint('dwell_seconds >= 0', name='ck_emotion_entry_dwell'),
        sa.CheckConstraint('gps_accuracy >= 1', name='ck_emotion_entry_gps_accuracy'),
    )
    op.create_index('ix_emotion_entry_cell_expires', 'emotion_entry', ['cell_id', 'expires_at'])
    op.create_index('ix_emotion_entry_user_cell_created', 'emotion_entry', ['user_id', 'cell_id', 'created_at'])
    op.create_index('ix_emotion_entry_user_created', 'emotion_entry', ['user_id', 'created_at'])
    op.create_index('ix_emotion_entry_expires_at', 'emotion_entry', ['expires_at'])

    op.create_table(
        'emotion_aggregate',
        sa.Column('cell_id', sa.String(16), primary_key=True),
        sa.Column('dominant_emotion', sa.Text(), nullable=False),
        sa.Column('mean_valence', sa.Float(), nullable=False),
        sa.Column('mean_intensity', sa.Float(), nullable=False),
        sa.Column('distribution', postgresql.JSONB(), nullable=False),
        sa.Column('coherence', sa.Float(), nullable=False),
        sa.Column('trend', sa.Float(), nullable=False),
        sa.Column('entry_count', sa.Integer(), nullable=False),
        sa.Column('last_entry_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )


def downgrade() -> None:
    op.drop_table('emotion_aggregate')
    op.drop_index('ix_emotion_entry_expires_at', table_name='emotion_entry')
    op.drop_index('ix_emotion_entry_user_created', table_name='emotion_entry')
    op.drop_index('ix_emotion_entry_user_cell_created', table_name='emotion_entry')
    op.drop_index('ix_emotion_entry_cell_expires', table_name='emotion_entry')
    op.drop_table('emotion_entry')
    op.drop_table('app_user')
