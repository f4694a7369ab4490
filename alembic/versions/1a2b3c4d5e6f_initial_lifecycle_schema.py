"""initial_lifecycle_schema

Revision ID: 1a2b3c4d5e6f
Revises:
Create Date: 2026-10-18

Creates:
- users, auth_sessions and the user-owned tables (training_sessions,
  consents, user_settings, subscriptions)
- data_export_requests, deletion_requests, recovery_codes,
  deletion_certificates and audit_logs
- analytics_training_sessions and aggregated_stats
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = '1a2b3c4d5e6f'
down_revision = None
branch_labels = None
depends_on = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('password_hash', sa.String(255), nullable=True),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('nickname', sa.String(100)),
        sa.Column('birth_year', sa.Integer()),
        sa.Column('gender', sa.String(50)),
        sa.Column('height_cm', sa.Numeric(5, 1)),
        sa.Column('weight_kg', sa.Numeric(5, 1)),
        sa.Column('fitness_level', sa.String(20)),
        sa.Column('country_code', sa.String(2)),
        sa.Column('deletion_scheduled', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('scheduled_deletion_at', sa.DateTime(timezone=True)),
        sa.Column('force_logout_at', sa.DateTime(timezone=True)),
        sa.Column('active_deletion_request_id', sa.String(128), nullable=True),
        sa.Column('last_export_requested_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )

    op.create_table(
        'auth_sessions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('token', sa.String(64), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('user_agent', sa.String(512), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_auth_sessions_token'), 'auth_sessions', ['token'], unique=True)
    op.create_index(op.f('ix_auth_sessions_user_id'), 'auth_sessions', ['user_id'], unique=False)

    op.create_table(
        'training_sessions',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('exercise_type', sa.String(50), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True)),
        sa.Column('rep_count', sa.Integer()),
        sa.Column('total_score', sa.Float()),
        sa.Column('average_score', sa.Float()),
        sa.Column('duration_seconds', sa.Integer()),
        sa.Column('device_info', JSONType),
        sa.Column('average_fps', sa.Float()),
        sa.Column('app_version', sa.String(20)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True)),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_training_sessions_user_start_time', 'training_sessions', ['user_id', 'start_time'])
    op.create_index('idx_training_sessions_status', 'training_sessions', ['status'])

    op.create_table(
        'consents',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('document_type', sa.String(50), nullable=False),
        sa.Column('document_version', sa.String(20), nullable=False),
        sa.Column('action', sa.String(20), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_consents_user_id', 'consents', ['user_id'])

    op.create_table(
        'user_settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('notifications_enabled', sa.Boolean()),
        sa.Column('reminder_time', sa.String(5)),
        sa.Column('reminder_days', JSONType),
        sa.Column('language', sa.String(10)),
        sa.Column('theme', sa.String(10)),
        sa.Column('units', sa.String(10)),
        sa.Column('analytics_enabled', sa.Boolean()),
        sa.Column('crash_reporting_enabled', sa.Boolean()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', name='uq_user_settings_user_id'),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('plan', sa.String(50)),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('store', sa.String(20)),
        sa.Column('customer_id', sa.String(255)),
        sa.Column('subscription_id', sa.String(255)),
        sa.Column('start_date', sa.DateTime(timezone=True)),
        sa.Column('expiration_date', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('subscription_id'),
    )
    op.create_index('idx_subscriptions_user_id', 'subscriptions', ['user_id'])

    op.create_table(
        'data_export_requests',
        sa.Column('request_id', sa.String(128), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('format', sa.String(10), nullable=False),
        sa.Column('scope', JSONType, nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('requested_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('processing_started_at', sa.DateTime(timezone=True)),
        sa.Column('completed_at', sa.DateTime(timezone=True)),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('download_ref', sa.String(512)),
        sa.Column('expires_at', sa.DateTime(timezone=True)),
        sa.Column('record_count', sa.Integer()),
        sa.Column('size_bytes', sa.BigInteger()),
        sa.Column('error', sa.Text()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('request_id'),
    )
    op.create_index('idx_data_export_requests_user_requested', 'data_export_requests', ['user_id', 'requested_at'])
    op.create_index('idx_data_export_requests_status', 'data_export_requests', ['status'])

    op.create_table(
        'deletion_requests',
        sa.Column('request_id', sa.String(128), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('type', sa.String(10), nullable=False),
        sa.Column('scope', JSONType, nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('reason', sa.Text()),
        sa.Column('requested_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('can_recover', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('recover_deadline', sa.DateTime(timezone=True)),
        sa.Column('cancelled_at', sa.DateTime(timezone=True)),
        sa.Column('cancellation_reason', sa.Text()),
        sa.Column('processing_started_at', sa.DateTime(timezone=True)),
        sa.Column('executed_at', sa.DateTime(timezone=True)),
        sa.Column('error', sa.Text()),
        sa.Column('completed_steps', JSONType),
        sa.Column('certificate_id', sa.String(64)),
        sa.Column('task_message_id', sa.String(64)),
        sa.PrimaryKeyConstraint('request_id'),
    )
    op.create_index('idx_deletion_requests_user_status', 'deletion_requests', ['user_id', 'status'])
    op.create_index('idx_deletion_requests_status_scheduled', 'deletion_requests', ['status', 'scheduled_at'])

    op.create_table(
        'recovery_codes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('deletion_request_id', sa.String(128), nullable=False),
        sa.Column('code_hash', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('used_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_recovery_codes_request_status', 'recovery_codes', ['deletion_request_id', 'status'])
    op.create_index('idx_recovery_codes_user_id', 'recovery_codes', ['user_id'])

    op.create_table(
        'deletion_certificates',
        sa.Column('certificate_id', sa.String(64), nullable=False),
        sa.Column('user_id_hash', sa.String(64), nullable=False),
        sa.Column('request_id', sa.String(128), nullable=False),
        sa.Column('completed_at', sa.String(40), nullable=False),
        sa.Column('deleted_steps', JSONType, nullable=False),
        sa.Column('signature', sa.String(128), nullable=False),
        sa.Column('signature_algorithm', sa.String(20), nullable=False),
        sa.Column('issued_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('certificate_id'),
    )
    op.create_index('idx_deletion_certificates_user_hash', 'deletion_certificates', ['user_id_hash'])
    op.create_index('idx_deletion_certificates_request_id', 'deletion_certificates', ['request_id'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('actor', sa.String(128), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('resource_type', sa.String(30), nullable=False),
        sa.Column('resource_id', sa.String(128)),
        sa.Column('before', JSONType),
        sa.Column('after', JSONType),
        sa.Column('success', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('error_message', sa.Text()),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_audit_logs_actor', 'audit_logs', ['actor'])
    op.create_index('idx_audit_logs_resource', 'audit_logs', ['resource_type', 'resource_id'])
    op.create_index('idx_audit_logs_timestamp', 'audit_logs', ['timestamp'])

    op.create_table(
        'analytics_training_sessions',
        sa.Column('session_id', sa.String(64), nullable=False),
        sa.Column('user_id_hash', sa.String(64), nullable=False),
        sa.Column('exercise_id', sa.String(50), nullable=False),
        sa.Column('start_time', sa.DateTime(timezone=True)),
        sa.Column('end_time', sa.DateTime(timezone=True)),
        sa.Column('duration_seconds', sa.Integer()),
        sa.Column('rep_count', sa.Integer()),
        sa.Column('average_score', sa.Float()),
        sa.Column('device_info', JSONType),
        sa.Column('age_group', sa.String(10)),
        sa.Column('country_code', sa.String(2)),
        sa.Column('source_collection', sa.String(128)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ingested_at', sa.DateTime(timezone=True)),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('deleted_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('session_id'),
    )
    op.create_index('idx_analytics_sessions_user_hash', 'analytics_training_sessions', ['user_id_hash'])
    op.create_index('idx_analytics_sessions_created_at', 'analytics_training_sessions', ['created_at'])

    op.create_table(
        'aggregated_stats',
        sa.Column('period', sa.String(10), nullable=False),
        sa.Column('stat_date', sa.Date(), nullable=False),
        sa.Column('exercise_id', sa.String(50), nullable=False),
        sa.Column('segment', sa.String(10), nullable=False),
        sa.Column('total_sessions', sa.Integer(), nullable=False),
        sa.Column('total_users', sa.Integer(), nullable=False),
        sa.Column('total_duration_seconds', sa.Integer(), nullable=False),
        sa.Column('average_score', sa.Float()),
        sa.Column('average_rep_count', sa.Float()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('period', 'stat_date', 'exercise_id', 'segment'),
    )


def downgrade() -> None:
    op.drop_table('aggregated_stats')
    op.drop_index('idx_analytics_sessions_created_at', table_name='analytics_training_sessions')
    op.drop_index('idx_analytics_sessions_user_hash', table_name='analytics_training_sessions')
    op.drop_table('analytics_training_sessions')
    op.drop_index('idx_audit_logs_timestamp', table_name='audit_logs')
    op.drop_index('idx_audit_logs_resource', table_name='audit_logs')
    op.drop_index('idx_audit_logs_actor', table_name='audit_logs')
    op.drop_table('audit_logs')
    op.drop_index('idx_deletion_certificates_request_id', table_name='deletion_certificates')
    op.drop_index('idx_deletion_certificates_user_hash', table_name='deletion_certificates')
    op.drop_table('deletion_certificates')
    op.drop_index('idx_recovery_codes_user_id', table_name='recovery_codes')
    op.drop_index('idx_recovery_codes_request_status', table_name='recovery_codes')
    op.drop_table('recovery_codes')
    op.drop_index('idx_deletion_requests_status_scheduled', table_name='deletion_requests')
    op.drop_index('idx_deletion_requests_user_status', table_name='deletion_requests')
    op.drop_table('deletion_requests')
    op.drop_index('idx_data_export_requests_status', table_name='data_export_requests')
    op.drop_index('idx_data_export_requests_user_requested', table_name='data_export_requests')
    op.drop_table('data_export_requests')
    op.drop_index('idx_subscriptions_user_id', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('user_settings')
    op.drop_index('idx_consents_user_id', table_name='consents')
    op.drop_table('consents')
    op.drop_index('idx_training_sessions_status', table_name='training_sessions')
    op.drop_index('idx_training_sessions_user_start_time', table_name='training_sessions')
    op.drop_table('training_sessions')
    op.drop_index(op.f('ix_auth_sessions_user_id'), table_name='auth_sessions')
    op.drop_index(op.f('ix_auth_sessions_token'), table_name='auth_sessions')
    op.drop_table('auth_sessions')
    op.drop_table('users')
