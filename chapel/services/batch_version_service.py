from __future__ import annotations

import logging
from typing import Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from chapel.core.time_provider import TimeProvider, default_time_provider
from chapel.errors import VersionNotFound
from chapel.models import AttendanceBatchVersion


logger = logging.getLogger(__name__)


def serialize_version(row: AttendanceBatchVersion) -> dict:
    return {
        'id': row.id,
        'service_id': row.service_id,
        'level_id': row.level_id,
        'version': int(row.version),
        'attendees': list(row.attendees or []),
        'absentees': list(row.absentees or []),
        'unmatched': list(row.unmatched or []),
        'exempted': list(row.exempted or []),
        'upload_session_id': row.upload_session_id,
        'ingested_by': row.ingested_by,
        'ingested_at': row.ingested_at.isoformat() if row.ingested_at else None,
        'superseded_by': row.superseded_by,
    }


def current_version(db: Session, service_id: str, level_id: str) -> AttendanceBatchVersion | None:
    # Highest unsuperseded version wins, so a crash between the two commit
    # steps leaves a readable head.
    return (
        db.query(AttendanceBatchVersion)
        .filter(
            AttendanceBatchVersion.service_id == service_id,
            AttendanceBatchVersion.level_id == level_id,
            AttendanceBatchVersion.superseded_by.is_(None),
        )
        .order_by(AttendanceBatchVersion.version.desc())
        .first()
    )


def list_versions(db: Session, service_id: str, level_id: str) -> list[AttendanceBatchVersion]:
    return (
        db.query(AttendanceBatchVersion)
        .filter(AttendanceBatchVersion.service_id == service_id, AttendanceBatchVersion.level_id == level_id)
        .order_by(AttendanceBatchVersion.version.asc())
        .all()
    )


def get_version(db: Session, version_id: str) -> AttendanceBatchVersion:
    row = db.query(AttendanceBatchVersion).filter(AttendanceBatchVersion.id == version_id).first()
    if not row:
        raise VersionNotFound(f'Batch version not found: {version_id}', details={'versionId': version_id})
    return row


def commit_version(
    db: Session,
    *,
    service_id: str,
    level_id: str,
    matched: Sequence[dict],
    absent: Sequence[dict],
    unmatched: Sequence[dict],
    admin_id: str,
    exempted: Sequence[dict] = (),
    upload_session_id: str | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> AttendanceBatchVersion:
    """Append a new version for (service, level) and supersede the previous head.

    The insert and the supersede are two separate commits. Concurrent commits
    for the same pair are not serialized here.
    """
    previous = current_version(db, service_id, level_id)
    highest = (
        db.query(func.max(AttendanceBatchVersion.version))
        .filter(AttendanceBatchVersion.service_id == service_id, AttendanceBatchVersion.level_id == level_id)
        .scalar()
    )
    next_number = max(int(highest or 0), int(previous.version) if previous else 0) + 1

    row = AttendanceBatchVersion(
        service_id=service_id,
        level_id=level_id,
        version=next_number,
        attendees=[dict(item) for item in matched],
        absentees=[dict(item) for item in absent],
        unmatched=[dict(item) for item in unmatched],
        exempted=[dict(item) for item in exempted],
        upload_session_id=upload_session_id,
        ingested_by=admin_id,
        ingested_at=time_provider.utc_naive(),
    )
    db.add(row)
    db.commit()
    db.refresh(row)

    stale_heads = (
        db.query(AttendanceBatchVersion)
        .filter(
            AttendanceBatchVersion.service_id == service_id,
            AttendanceBatchVersion.level_id == level_id,
            AttendanceBatchVersion.superseded_by.is_(None),
            AttendanceBatchVersion.id != row.id,
        )
        .all()
    )
    for stale in stale_heads:
        stale.superseded_by = row.id
    if stale_heads:
        db.commit()

    logger.info(
        'batch_version_committed',
        extra={
            'service_id': service_id,
            'level_id': level_id,
            'version': next_number,
            'superseded': [stale.id for stale in stale_heads],
        },
    )
    return row
