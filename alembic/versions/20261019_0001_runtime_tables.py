"""runtime tables: packages, sessions, records, interactions, sync queue

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19
"""
from __future__ import annotations
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261019_0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'packages',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('version', sa.String(length=64), nullable=True),
        sa.Column(
            'scorm_version', sa.String(length=16), nullable=False,
            server_default='unknown'
        ),
        sa.Column('identifier', sa.String(length=200), nullable=True),
        sa.Column('launch_path', sa.String(length=500), nullable=True),
        sa.Column('file_path', sa.String(length=500), nullable=False),
        sa.Column(
            'file_size', sa.Integer(), nullable=False, server_default='0'
        ),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column(
            'uploaded_at', sa.DateTime(),
            server_default=sa.text('CURRENT_TIMESTAMP')
        ),
        sa.Column(
            'updated_at', sa.DateTime(),
            server_default=sa.text('CURRENT_TIMESTAMP')
        ),
    )

    op.create_table(
        'scorm_sessions',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column(
            'package_id', sa.String(length=36),
            sa.ForeignKey('packages.id', ondelete='CASCADE'), nullable=False
        ),
        sa.Column('learner_id', sa.String(length=255), nullable=True),
        sa.Column(
            'state', sa.String(length=16), nullable=False,
            server_default='created'
        ),
        sa.Column(
            'created_at', sa.DateTime(),
            server_default=sa.text('CURRENT_TIMESTAMP')
        ),
        sa.Column(
            'last_accessed_at', sa.DateTime(),
            server_default=sa.text('CURRENT_TIMESTAMP')
        ),
        sa.Column('terminated_at', sa.DateTime(), nullable=True),
        sa.Column(
            'completed', sa.Boolean(), nullable=False,
            server_default=sa.false()
        ),
        sa.Column(
            'success_status', sa.String(length=16), nullable=False,
            server_default='unknown'
        ),
        sa.Column('score_raw', sa.Float(), nullable=True),
        sa.Column('score_min', sa.Float(), nullable=True),
        sa.Column('score_max', sa.Float(), nullable=True),
        sa.Column('session_time', sa.String(length=64), nullable=True),
        sa.Column('total_time', sa.String(length=64), nullable=True),
        sa.Column('suspend_data', sa.Text(), nullable=True),
    )
    op.create_index(
        'ix_scorm_sessions_package_id', 'scorm_sessions', ['package_id']
    )
    op.create_index(
        'ix_scorm_sessions_learner_id', 'scorm_sessions', ['learner_id']
    )

    op.create_table(
        'cmi_records',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            'session_id', sa.String(length=64),
            sa.ForeignKey('scorm_sessions.id', ondelete='CASCADE'),
            nullable=False
        ),
        sa.Column('path', sa.String(length=500), nullable=False),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column(
            'written_at', sa.DateTime(),
            server_default=sa.text('CURRENT_TIMESTAMP')
        ),
    )
    op.create_index('ix_cmi_records_session_id', 'cmi_records', ['session_id'])
    op.create_index(
        'ix_cmi_records_session_path', 'cmi_records', ['session_id', 'path']
    )

    op.create_table(
        'interactions',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            'session_id', sa.String(length=64),
            sa.ForeignKey('scorm_sessions.id', ondelete='CASCADE'),
            nullable=False
        ),
        sa.Column('interaction_id', sa.String(length=255), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=True),
        sa.Column('timestamp', sa.String(length=64), nullable=True),
        sa.Column('correct_responses', sa.JSON(), nullable=True),
        sa.Column('learner_response', sa.Text(), nullable=True),
        sa.Column('result', sa.String(length=64), nullable=True),
        sa.Column('latency', sa.String(length=64), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column(
            'updated_at', sa.DateTime(),
            server_default=sa.text('CURRENT_TIMESTAMP')
        ),
        sa.UniqueConstraint(
            'session_id', 'interaction_id',
            name='uq_interactions_session_interaction'
        ),
    )
    op.create_index(
        'ix_interactions_session_id', 'interactions', ['session_id']
    )

    op.create_table(
        'sync_queue',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('session_id', sa.String(length=64), nullable=False),
        sa.Column('package_id', sa.String(length=64), nullable=False),
        sa.Column('action', sa.String(length=16), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column(
            'created_at', sa.DateTime(),
            server_default=sa.text('CURRENT_TIMESTAMP')
        ),
        sa.Column('recorded_at', sa.DateTime(), nullable=True),
        sa.Column(
            'synced', sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column('synced_at', sa.DateTime(), nullable=True),
        sa.Column(
            'retry_count', sa.Integer(), nullable=False, server_default='0'
        ),
        sa.Column('last_error', sa.Text(), nullable=True),
    )
    op.create_index('ix_sync_queue_session_id', 'sync_queue', ['session_id'])
    op.create_index(
        'ix_sync_queue_pending', 'sync_queue', ['synced', 'created_at']
    )


def downgrade() -> None:
    op.drop_table('sync_queue')
    op.drop_table('interactions')
    op.drop_table('cmi_records')
    op.drop_table('scorm_sessions')
    op.drop_table('packages')
