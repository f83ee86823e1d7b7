"""attendance ingestion core tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from alembic import op
import sqlalchemy as sa


revision = '20261019_0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'levels',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('code', sa.String(length=10), nullable=False),
        sa.Column('name', sa.String(length=80), nullable=False, server_default=''),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_levels_code', 'levels', ['code'], unique=True)

    op.create_table(
        'students',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('matric_number', sa.String(length=40), nullable=False),
        sa.Column('first_name', sa.String(length=120), nullable=False),
        sa.Column('last_name', sa.String(length=120), nullable=False),
        sa.Column('gender', sa.String(length=10), nullable=False, server_default=''),
        sa.Column('level_id', sa.String(length=36), sa.ForeignKey('levels.id'), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_students_matric_number', 'students', ['matric_number'], unique=True)
    op.create_index('ix_students_level_id', 'students', ['level_id'])
    op.create_index('ix_students_status', 'students', ['status'])
    op.create_index('ix_students_level_status', 'students', ['level_id', 'status'])

    op.create_table(
        'admins',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('auth_user_id', sa.String(length=36), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('first_name', sa.String(length=120), nullable=False, server_default=''),
        sa.Column('last_name', sa.String(length=120), nullable=False, server_default=''),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_admins_auth_user_id', 'admins', ['auth_user_id'], unique=True)

    op.create_table(
        'services',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('name', sa.String(length=180), nullable=True),
        sa.Column('service_type', sa.String(length=40), nullable=False, server_default='sunday'),
        sa.Column('devotion_type', sa.String(length=40), nullable=True),
        sa.Column('service_date', sa.Date(), nullable=False),
        sa.Column('service_time', sa.Time(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='scheduled'),
        sa.Column('locked_after_ingestion', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_services_service_date', 'services', ['service_date'])
    op.create_index('ix_services_status', 'services', ['status'])
    op.create_index('ix_services_date_time', 'services', ['service_date', 'service_time'])

    op.create_table(
        'service_levels',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('service_id', sa.String(length=36), sa.ForeignKey('services.id'), nullable=False),
        sa.Column('level_id', sa.String(length=36), sa.ForeignKey('levels.id'), nullable=False),
        sa.UniqueConstraint('service_id', 'level_id', name='uq_service_levels_service_level'),
    )
    op.create_index('ix_service_levels_service_id', 'service_levels', ['service_id'])
    op.create_index('ix_service_levels_level_id', 'service_levels', ['level_id'])

    op.create_table(
        'override_reason_definitions',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('code', sa.String(length=60), nullable=False, unique=True),
        sa.Column('display_name', sa.String(length=120), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('requires_note', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_override_reason_definitions_is_active', 'override_reason_definitions', ['is_active'])

    op.create_table(
        'exeats',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('student_id', sa.String(length=36), sa.ForeignKey('students.id'), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False, server_default=''),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_exeats_student_id', 'exeats', ['student_id'])
    op.create_index('ix_exeats_status_range', 'exeats', ['status', 'start_date', 'end_date'])

    op.create_table(
        'scan_archives',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('service_id', sa.String(length=36), sa.ForeignKey('services.id'), nullable=False),
        sa.Column('level_id', sa.String(length=36), sa.ForeignKey('levels.id'), nullable=False),
        sa.Column('uploaded_by', sa.String(length=36), sa.ForeignKey('admins.id'), nullable=False),
        sa.Column('storage_path', sa.Text(), nullable=False),
        sa.Column('mime_type', sa.String(length=120), nullable=False, server_default='text/csv'),
        sa.Column('file_hash', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('uploaded_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_scan_archives_service_id', 'scan_archives', ['service_id'])
    op.create_index('ix_scan_archives_level_id', 'scan_archives', ['level_id'])
    op.create_index('ix_scan_archives_uploaded_by', 'scan_archives', ['uploaded_by'])
    op.create_index('ix_scan_archives_file_hash', 'scan_archives', ['file_hash'])
    op.create_index('ix_scan_archives_status', 'scan_archives', ['status'])
    op.create_index('ix_scan_archives_uploaded_at', 'scan_archives', ['uploaded_at'])
    op.create_index('ix_scan_archives_service_level', 'scan_archives', ['service_id', 'level_id'])

    op.create_table(
        'upload_sessions',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('service_id', sa.String(length=36), sa.ForeignKey('services.id'), nullable=False),
        sa.Column('level_id', sa.String(length=36), sa.ForeignKey('levels.id'), nullable=False),
        sa.Column('uploaded_by', sa.String(length=36), sa.ForeignKey('admins.id'), nullable=False),
        sa.Column('scan_archive_id', sa.String(length=36), sa.ForeignKey('scan_archives.id'), nullable=False),
        sa.Column('preview', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('batch_version_id', sa.String(length=36), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_upload_sessions_service_id', 'upload_sessions', ['service_id'])
    op.create_index('ix_upload_sessions_level_id', 'upload_sessions', ['level_id'])
    op.create_index('ix_upload_sessions_uploaded_by', 'upload_sessions', ['uploaded_by'])
    op.create_index('ix_upload_sessions_scan_archive_id', 'upload_sessions', ['scan_archive_id'])
    op.create_index('ix_upload_sessions_status', 'upload_sessions', ['status'])
    op.create_index('ix_upload_sessions_service_level_status', 'upload_sessions', ['service_id', 'level_id', 'status'])

    op.create_table(
        'attendance_batch_versions',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('service_id', sa.String(length=36), sa.ForeignKey('services.id'), nullable=False),
        sa.Column('level_id', sa.String(length=36), sa.ForeignKey('levels.id'), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('attendees', sa.JSON(), nullable=False),
        sa.Column('absentees', sa.JSON(), nullable=False),
        sa.Column('unmatched', sa.JSON(), nullable=False),
        sa.Column('exempted', sa.JSON(), nullable=False),
        sa.Column('upload_session_id', sa.String(length=36), nullable=True),
        sa.Column('ingested_by', sa.String(length=36), sa.ForeignKey('admins.id'), nullable=False),
        sa.Column('ingested_at', sa.DateTime(), nullable=True),
        sa.Column('superseded_by', sa.String(length=36), nullable=True),
        sa.UniqueConstraint('service_id', 'level_id', 'version', name='uq_batch_versions_service_level_version'),
    )
    op.create_index('ix_attendance_batch_versions_service_id', 'attendance_batch_versions', ['service_id'])
    op.create_index('ix_attendance_batch_versions_level_id', 'attendance_batch_versions', ['level_id'])
    op.create_index('ix_attendance_batch_versions_upload_session_id', 'attendance_batch_versions', ['upload_session_id'])
    op.create_index('ix_attendance_batch_versions_ingested_by', 'attendance_batch_versions', ['ingested_by'])
    op.create_index('ix_attendance_batch_versions_ingested_at', 'attendance_batch_versions', ['ingested_at'])
    op.create_index('ix_batch_versions_current', 'attendance_batch_versions', ['service_id', 'level_id', 'superseded_by'])

    op.create_table(
        'manual_overrides',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('student_id', sa.String(length=36), sa.ForeignKey('students.id'), nullable=False),
        sa.Column('service_id', sa.String(length=36), sa.ForeignKey('services.id'), nullable=False),
        sa.Column('level_id', sa.String(length=36), sa.ForeignKey('levels.id'), nullable=False),
        sa.Column('reason', sa.String(length=60), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('overridden_by', sa.String(length=36), sa.ForeignKey('admins.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.Column('deleted_by', sa.String(length=36), nullable=True),
    )
    op.create_index('ix_manual_overrides_student_id', 'manual_overrides', ['student_id'])
    op.create_index('ix_manual_overrides_service_id', 'manual_overrides', ['service_id'])
    op.create_index('ix_manual_overrides_level_id', 'manual_overrides', ['level_id'])
    op.create_index('ix_manual_overrides_overridden_by', 'manual_overrides', ['overridden_by'])
    op.create_index('ix_manual_overrides_created_at', 'manual_overrides', ['created_at'])
    op.create_index('ix_manual_overrides_service_student', 'manual_overrides', ['service_id', 'student_id'])

    op.create_table(
        'attendance_issues',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('service_id', sa.String(length=36), sa.ForeignKey('services.id'), nullable=False),
        sa.Column('level_id', sa.String(length=36), sa.ForeignKey('levels.id'), nullable=False),
        sa.Column('batch_version_id', sa.String(length=36), nullable=True),
        sa.Column('student_id', sa.String(length=36), nullable=True),
        sa.Column('issue_type', sa.String(length=40), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('raw_data', sa.JSON(), nullable=True),
        sa.Column('resolved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('resolved_by', sa.String(length=36), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_attendance_issues_service_id', 'attendance_issues', ['service_id'])
    op.create_index('ix_attendance_issues_level_id', 'attendance_issues', ['level_id'])
    op.create_index('ix_attendance_issues_batch_version_id', 'attendance_issues', ['batch_version_id'])
    op.create_index('ix_attendance_issues_issue_type', 'attendance_issues', ['issue_type'])
    op.create_index('ix_attendance_issues_created_at', 'attendance_issues', ['created_at'])
    op.create_index('ix_attendance_issues_service_resolved', 'attendance_issues', ['service_id', 'resolved'])

    op.create_table(
        'document_sync_failures',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('override_id', sa.String(length=36), nullable=True),
        sa.Column('service_id', sa.String(length=36), sa.ForeignKey('services.id'), nullable=False),
        sa.Column('level_code', sa.String(length=10), nullable=False),
        sa.Column('student_ids', sa.JSON(), nullable=False),
        sa.Column('action', sa.String(length=20), nullable=False, server_default='clear'),
        sa.Column('clearance', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=False, server_default=''),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_document_sync_failures_override_id', 'document_sync_failures', ['override_id'])
    op.create_index('ix_document_sync_failures_service_id', 'document_sync_failures', ['service_id'])
    op.create_index('ix_document_sync_failures_status_created', 'document_sync_failures', ['status', 'created_at'])


def downgrade() -> None:
    for table in (
        'document_sync_failures',
        'attendance_issues',
        'manual_overrides',
        'attendance_batch_versions',
        'upload_sessions',
        'scan_archives',
        'exeats',
        'override_reason_definitions',
        'service_levels',
        'services',
        'admins',
        'students',
        'levels',
    ):
        op.drop_table(table)
