from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from chapel.core.time_provider import TimeProvider, default_time_provider
from chapel.errors import AlreadyResolved, IssueNotFound
from chapel.models import AttendanceIssue
from chapel.services.registry_service import get_admin


logger = logging.getLogger(__name__)


def serialize_issue(row: AttendanceIssue) -> dict:
    return {
        'id': row.id,
        'service_id': row.service_id,
        'level_id': row.level_id,
        'batch_version_id': row.batch_version_id,
        'student_id': row.student_id,
        'issue_type': row.issue_type,
        'description': row.description,
        'raw_data': row.raw_data,
        'resolved': bool(row.resolved),
        'resolved_by': row.resolved_by,
        'resolved_at': row.resolved_at.isoformat() if row.resolved_at else None,
        'created_at': row.created_at.isoformat() if row.created_at else None,
    }


def list_issues(db: Session, service_id: str | None = None, resolved: bool | None = None) -> list[dict]:
    query = db.query(AttendanceIssue)
    if service_id:
        query = query.filter(AttendanceIssue.service_id == service_id)
    if resolved is not None:
        query = query.filter(AttendanceIssue.resolved.is_(bool(resolved)))
    rows = query.order_by(AttendanceIssue.created_at.asc(), AttendanceIssue.id.asc()).all()
    return [serialize_issue(row) for row in rows]


def resolve_issue(
    db: Session,
    issue_id: str,
    admin_ref: str,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    row = db.query(AttendanceIssue).filter(AttendanceIssue.id == issue_id).first()
    if not row:
        raise IssueNotFound(f'Issue not found: {issue_id}', details={'issueId': issue_id})
    if row.resolved:
        raise AlreadyResolved('Issue is already resolved', details={'issueId': issue_id, 'resolvedBy': row.resolved_by})
    admin = get_admin(db, admin_ref)
    row.resolved = True
    row.resolved_by = admin.id
    row.resolved_at = time_provider.utc_naive()
    db.commit()
    db.refresh(row)
    logger.info('attendance_issue_resolved', extra={'issue_id': issue_id, 'admin_id': admin.id})
    return serialize_issue(row)
