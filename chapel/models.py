import uuid
from datetime import date, datetime, time
from enum import Enum

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, Time, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chapel.db import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class UploadStatus(str, Enum):
    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    CANCELLED = 'cancelled'


class ArchiveStatus(str, Enum):
    ACTIVE = 'active'
    DELETED = 'deleted'


class SyncStatus(str, Enum):
    PENDING = 'pending'
    RESOLVED = 'resolved'


class Level(Base):
    __tablename__ = 'levels'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    code: Mapped[str] = mapped_column(String(10), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(80), default='')
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Student(Base):
    __tablename__ = 'students'
    __table_args__ = (
        Index('ix_students_level_status', 'level_id', 'status'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    matric_number: Mapped[str] = mapped_column(String(40), unique=True, index=True)
    first_name: Mapped[str] = mapped_column(String(120))
    last_name: Mapped[str] = mapped_column(String(120))
    gender: Mapped[str] = mapped_column(String(10), default='')
    level_id: Mapped[str] = mapped_column(ForeignKey('levels.id'), index=True)
    status: Mapped[str] = mapped_column(String(20), default='active', index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    level: Mapped['Level'] = relationship('Level')

    @property
    def full_name(self) -> str:
        return f'{self.first_name} {self.last_name}'.strip()


class Admin(Base):
    __tablename__ = 'admins'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    auth_user_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    email: Mapped[str] = mapped_column(String(255), default='')
    first_name: Mapped[str] = mapped_column(String(120), default='')
    last_name: Mapped[str] = mapped_column(String(120), default='')
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Service(Base):
    __tablename__ = 'services'
    __table_args__ = (
        Index('ix_services_date_time', 'service_date', 'service_time'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str | None] = mapped_column(String(180), nullable=True)
    service_type: Mapped[str] = mapped_column(String(40), default='sunday')
    devotion_type: Mapped[str | None] = mapped_column(String(40), nullable=True)
    service_date: Mapped[date] = mapped_column(Date, index=True)
    service_time: Mapped[time | None] = mapped_column(Time, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default='scheduled', index=True)
    locked_after_ingestion: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    level_links: Mapped[list['ServiceLevel']] = relationship(
        'ServiceLevel', back_populates='service', cascade='all, delete-orphan'
    )

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        label = f'{self.devotion_type.capitalize()} Service' if self.devotion_type else 'Special Service'
        if self.service_time:
            return f'{label} - {self.service_time.strftime("%H:%M")}'
        return label


class ServiceLevel(Base):
    __tablename__ = 'service_levels'
    __table_args__ = (
        UniqueConstraint('service_id', 'level_id', name='uq_service_levels_service_level'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    service_id: Mapped[str] = mapped_column(ForeignKey('services.id'), index=True)
    level_id: Mapped[str] = mapped_column(ForeignKey('levels.id'), index=True)

    service: Mapped['Service'] = relationship('Service', back_populates='level_links')


class OverrideReason(Base):
    __tablename__ = 'override_reason_definitions'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    code: Mapped[str] = mapped_column(String(60), unique=True)
    display_name: Mapped[str] = mapped_column(String(120))
    description: Mapped[str] = mapped_column(Text, default='')
    requires_note: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Exeat(Base):
    __tablename__ = 'exeats'
    __table_args__ = (
        Index('ix_exeats_status_range', 'status', 'start_date', 'end_date'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    student_id: Mapped[str] = mapped_column(ForeignKey('students.id'), index=True)
    start_date: Mapped[date] = mapped_column(Date)
    end_date: Mapped[date] = mapped_column(Date)
    reason: Mapped[str] = mapped_column(Text, default='')
    status: Mapped[str] = mapped_column(String(20), default='active')
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class ScanArchive(Base):
    __tablename__ = 'scan_archives'
    __table_args__ = (
        Index('ix_scan_archives_service_level', 'service_id', 'level_id'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    service_id: Mapped[str] = mapped_column(ForeignKey('services.id'), index=True)
    level_id: Mapped[str] = mapped_column(ForeignKey('levels.id'), index=True)
    uploaded_by: Mapped[str] = mapped_column(ForeignKey('admins.id'), index=True)
    storage_path: Mapped[str] = mapped_column(Text)
    mime_type: Mapped[str] = mapped_column(String(120), default='text/csv')
    file_hash: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(20), default=ArchiveStatus.ACTIVE.value, index=True)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)


class UploadSession(Base):
    __tablename__ = 'upload_sessions'
    __table_args__ = (
        Index('ix_upload_sessions_service_level_status', 'service_id', 'level_id', 'status'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    service_id: Mapped[str] = mapped_column(ForeignKey('services.id'), index=True)
    level_id: Mapped[str] = mapped_column(ForeignKey('levels.id'), index=True)
    uploaded_by: Mapped[str] = mapped_column(ForeignKey('admins.id'), index=True)
    scan_archive_id: Mapped[str] = mapped_column(ForeignKey('scan_archives.id'), index=True)
    preview: Mapped[dict] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(20), default=UploadStatus.PENDING.value, index=True)
    batch_version_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    scan_archive: Mapped['ScanArchive'] = relationship('ScanArchive')


class AttendanceBatchVersion(Base):
    __tablename__ = 'attendance_batch_versions'
    __table_args__ = (
        UniqueConstraint('service_id', 'level_id', 'version', name='uq_batch_versions_service_level_version'),
        Index('ix_batch_versions_current', 'service_id', 'level_id', 'superseded_by'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    service_id: Mapped[str] = mapped_column(ForeignKey('services.id'), index=True)
    level_id: Mapped[str] = mapped_column(ForeignKey('levels.id'), index=True)
    version: Mapped[int] = mapped_column(Integer)
    attendees: Mapped[list] = mapped_column(JSON, default=list)
    absentees: Mapped[list] = mapped_column(JSON, default=list)
    unmatched: Mapped[list] = mapped_column(JSON, default=list)
    exempted: Mapped[list] = mapped_column(JSON, default=list)
    upload_session_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    ingested_by: Mapped[str] = mapped_column(ForeignKey('admins.id'), index=True)
    ingested_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    superseded_by: Mapped[str | None] = mapped_column(String(36), nullable=True)


class ManualOverride(Base):
    __tablename__ = 'manual_overrides'
    __table_args__ = (
        Index('ix_manual_overrides_service_student', 'service_id', 'student_id'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    student_id: Mapped[str] = mapped_column(ForeignKey('students.id'), index=True)
    service_id: Mapped[str] = mapped_column(ForeignKey('services.id'), index=True)
    level_id: Mapped[str] = mapped_column(ForeignKey('levels.id'), index=True)
    reason: Mapped[str] = mapped_column(String(60))
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    overridden_by: Mapped[str] = mapped_column(ForeignKey('admins.id'), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    deleted_by: Mapped[str | None] = mapped_column(String(36), nullable=True)


class AttendanceIssue(Base):
    __tablename__ = 'attendance_issues'
    __table_args__ = (
        Index('ix_attendance_issues_service_resolved', 'service_id', 'resolved'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    service_id: Mapped[str] = mapped_column(ForeignKey('services.id'), index=True)
    level_id: Mapped[str] = mapped_column(ForeignKey('levels.id'), index=True)
    batch_version_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    student_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    issue_type: Mapped[str] = mapped_column(String(40), index=True)
    description: Mapped[str] = mapped_column(Text)
    raw_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False)
    resolved_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)


class DocumentSyncFailure(Base):
    __tablename__ = 'document_sync_failures'
    __table_args__ = (
        Index('ix_document_sync_failures_status_created', 'status', 'created_at'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    override_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    service_id: Mapped[str] = mapped_column(ForeignKey('services.id'), index=True)
    level_code: Mapped[str] = mapped_column(String(10))
    student_ids: Mapped[list] = mapped_column(JSON, default=list)
    action: Mapped[str] = mapped_column(String(20), default='clear')
    clearance: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str] = mapped_column(Text, default='')
    attempts: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[str] = mapped_column(String(20), default=SyncStatus.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
