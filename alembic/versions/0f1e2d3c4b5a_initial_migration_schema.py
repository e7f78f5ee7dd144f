"""initial_migration_schema

Revision ID: 0f1e2d3c4b5a
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = '0f1e2d3c4b5a'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Users, sessions, uploads, chunks, jobs, events, records, revoked tokens."""
    op.create_table(
        'user_accounts',
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('password_hash', sa.Text(), nullable=False, server_default=''),
        sa.Column('role', sa.Text(), nullable=False, server_default='basic'),
        sa.Column('is_active', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.Text(), nullable=False),
        sa.Column('updated_at', sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint('user_id'),
    )

    op.create_table(
        'migration_sessions',
        sa.Column('session_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False, server_default=''),
        sa.Column('state', sa.Text(), nullable=False, server_default='collecting'),
        sa.Column('settings_json', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.Float(), nullable=False),
        sa.Column('updated_at', sa.Float(), nullable=False),
        sa.Column('expires_at', sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint('session_id'),
    )
    op.create_index('idx_migration_sessions_user_state', 'migration_sessions', ['user_id', 'state'], unique=False)
    op.create_index('idx_migration_sessions_expires_at', 'migration_sessions', ['expires_at'], unique=False)

    op.create_table(
        'uploaded_files',
        sa.Column('file_id', sa.String(), nullable=False),
        sa.Column('session_id', sa.String(), nullable=False),
        sa.Column('logical_path', sa.Text(), nullable=False),
        sa.Column('bytes_ref', sa.Text(), nullable=False, server_default=''),
        sa.Column('size_bytes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('content_hash', sa.Text(), nullable=False, server_default=''),
        sa.Column('detected_dialect', sa.Text(), nullable=False, server_default='unknown'),
        sa.Column('detection_json', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('status', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('error', sa.Text(), nullable=False, server_default=''),
        sa.Column('created_at', sa.Float(), nullable=False),
        sa.ForeignKeyConstraint(['session_id'], ['migration_sessions.session_id']),
        sa.PrimaryKeyConstraint('file_id'),
        sa.UniqueConstraint('session_id', 'logical_path', name='uq_uploaded_files_session_path'),
    )
    op.create_index('ix_uploaded_files_session_id', 'uploaded_files', ['session_id'], unique=False)

    op.create_table(
        'code_chunks',
        sa.Column('chunk_id', sa.String(), nullable=False),
        sa.Column('session_id', sa.String(), nullable=False),
        sa.Column('file_id', sa.Text(), nullable=False, server_default=''),
        sa.Column('logical_path', sa.Text(), nullable=False),
        sa.Column('kind', sa.Text(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False, server_default=''),
        sa.Column('start_line', sa.Integer(), nullable=False),
        sa.Column('end_line', sa.Integer(), nullable=False),
        sa.Column('start_byte', sa.Integer(), nullable=False),
        sa.Column('end_byte', sa.Integer(), nullable=False),
        sa.Column('code', sa.Text(), nullable=False, server_default=''),
        sa.Column('dialect', sa.Text(), nullable=False, server_default='unknown'),
        sa.Column('complexity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('is_async', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_static', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('visibility', sa.Text(), nullable=False, server_default='public'),
        sa.Column('parameters_json', sa.Text(), nullable=False, server_default='[]'),
        sa.Column('dependencies_json', sa.Text(), nullable=False, server_default='[]'),
        sa.Column('comments_json', sa.Text(), nullable=False, server_default='[]'),
        sa.Column('tags_json', sa.Text(), nullable=False, server_default='[]'),
        sa.Column('embedding_json', sa.Text(), nullable=True),
        sa.Column('embedding_model', sa.Text(), nullable=True),
        sa.Column('embedded_at', sa.Float(), nullable=True),
        sa.Column('status', sa.Text(), nullable=False, server_default='pending-embedding'),
        sa.Column('updated_at', sa.Float(), nullable=False),
        sa.ForeignKeyConstraint(['session_id'], ['migration_sessions.session_id']),
        sa.PrimaryKeyConstraint('chunk_id'),
    )
    op.create_index(
        'idx_code_chunks_session_path_line', 'code_chunks', ['session_id', 'logical_path', 'start_line'], unique=False,
    )

    op.create_table(
        'jobs',
        sa.Column('job_id', sa.String(), nullable=False),
        sa.Column('session_id', sa.Text(), nullable=False),
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('kind', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False, server_default='queued'),
        sa.Column('phase', sa.Text(), nullable=False, server_default='queued'),
        sa.Column('progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('current_item', sa.Text(), nullable=False, server_default=''),
        sa.Column('attempt', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('next_retry_at', sa.Float(), nullable=True),
        sa.Column('request_json', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('result_json', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('errors_json', sa.Text(), nullable=False, server_default='[]'),
        sa.Column('warnings_json', sa.Text(), nullable=False, server_default='[]'),
        sa.Column('created_at', sa.Float(), nullable=False),
        sa.Column('updated_at', sa.Float(), nullable=False),
        sa.Column('started_at', sa.Float(), nullable=True),
        sa.Column('finished_at', sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint('job_id'),
    )
    op.create_index('idx_jobs_session_created', 'jobs', ['session_id', 'created_at'], unique=False)
    op.create_index('idx_jobs_status', 'jobs', ['status'], unique=False)

    op.create_table(
        'job_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('job_id', sa.String(), nullable=False),
        sa.Column('event', sa.Text(), nullable=False),
        sa.Column('data_json', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.Float(), nullable=False),
        sa.ForeignKeyConstraint(['job_id'], ['jobs.job_id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_job_events_job_id_id', 'job_events', ['job_id', 'id'], unique=False)

    op.create_table(
        'migration_records',
        sa.Column('migration_id', sa.String(), nullable=False),
        sa.Column('session_id', sa.String(), nullable=False),
        sa.Column('job_id', sa.Text(), nullable=False, server_default=''),
        sa.Column('user_id', sa.Text(), nullable=False, server_default=''),
        sa.Column('command', sa.Text(), nullable=False, server_default=''),
        sa.Column('target_dialect', sa.Text(), nullable=False),
        sa.Column('per_file_json', sa.Text(), nullable=False, server_default='[]'),
        sa.Column('validation_json', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('plan_json', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('statistics_json', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.Float(), nullable=False),
        sa.ForeignKeyConstraint(['session_id'], ['migration_sessions.session_id']),
        sa.PrimaryKeyConstraint('migration_id'),
    )
    op.create_index(
        'idx_migration_records_session_created', 'migration_records', ['session_id', 'created_at'], unique=False,
    )

    op.create_table(
        'revoked_tokens',
        sa.Column('token_hash', sa.Text(), nullable=False),
        sa.Column('expires_at', sa.Text(), nullable=False),
        sa.Column('revoked_at', sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint('token_hash'),
    )
    op.create_index('idx_revoked_tokens_expires_at', 'revoked_tokens', ['expires_at'], unique=False)


def downgrade() -> None:
    op.drop_index('idx_revoked_tokens_expires_at', table_name='revoked_tokens')
    op.drop_table('revoked_tokens')
    op.drop_index('idx_migration_records_session_created', table_name='migration_records')
    op.drop_table('migration_records')
    op.drop_index('idx_job_events_job_id_id', table_name='job_events')
    op.drop_table('job_events')
    op.drop_index('idx_jobs_status', table_name='jobs')
    op.drop_index('idx_jobs_session_created', table_name='jobs')
    op.drop_table('jobs')
    op.drop_index('idx_code_chunks_session_path_line', table_name='code_chunks')
    op.drop_table('code_chunks')
    op.drop_index('ix_uploaded_files_session_id', table_name='uploaded_files')
    op.drop_table('uploaded_files')
    op.drop_index('idx_migration_sessions_expires_at', table_name='migration_sessions')
    op.drop_index('idx_migration_sessions_user_state', table_name='migration_sessions')
    op.drop_table('migration_sessions')
    op.drop_table('user_accounts')
