from __future__ import annotations

import logging
from typing import Sequence

from sqlalchemy.orm import Session

from chapel.cache import invalidate_absentee_counts
from chapel.core.time_provider import TimeProvider, default_time_provider
from chapel.db import run_in_session
from chapel.errors import EngineError
from chapel.metrics import record_event
from chapel.models import DocumentSyncFailure, SyncStatus
from chapel.services.clearance_documents import ClearanceMetadata, update_level_documents
from chapel.services.registry_service import get_service
from chapel.storage.object_store import ObjectStore


logger = logging.getLogger(__name__)


def serialize_sync_failure(row: DocumentSyncFailure) -> dict:
    return {
        'id': row.id,
        'override_id': row.override_id,
        'service_id': row.service_id,
        'level': row.level_code,
        'student_ids': list(row.student_ids or []),
        'action': row.action,
        'error': row.error,
        'attempts': int(row.attempts or 0),
        'status': row.status,
        'created_at': row.created_at.isoformat() if row.created_at else None,
        'resolved_at': row.resolved_at.isoformat() if row.resolved_at else None,
    }


def record_sync_failure(
    db: Session,
    *,
    override_id: str | None,
    service_id: str,
    level_code: str,
    student_ids: Sequence[str],
    action: str,
    error: str,
    clearance: dict | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> str | None:
    row = DocumentSyncFailure(
        override_id=override_id,
        service_id=service_id,
        level_code=str(level_code),
        student_ids=list(student_ids),
        action=action,
        clearance=clearance,
        error=str(error or '')[:2000],
        attempts=1,
        status=SyncStatus.PENDING.value,
        created_at=time_provider.utc_naive(),
    )
    try:
        db.add(row)
        db.commit()
    except Exception:
        db.rollback()
        logger.error(
            'document_sync_failure_write_failed',
            extra={'override_id': override_id, 'service_id': service_id, 'level': level_code},
        )
        return None
    record_event('document_sync_failed')
    return row.id


def list_pending(db: Session, limit: int = 50) -> list[dict]:
    rows = (
        db.query(DocumentSyncFailure)
        .filter(DocumentSyncFailure.status == SyncStatus.PENDING.value)
        .order_by(DocumentSyncFailure.created_at.asc(), DocumentSyncFailure.id.asc())
        .limit(max(1, int(limit)))
        .all()
    )
    return [{**serialize_sync_failure(row), 'clearance': row.clearance} for row in rows]


def _mark_outcome(db: Session, failure_id: str, *, error: str | None, time_provider: TimeProvider) -> None:
    row = db.query(DocumentSyncFailure).filter(DocumentSyncFailure.id == failure_id).first()
    if not row:
        return
    if error is None:
        row.status = SyncStatus.RESOLVED.value
        row.resolved_at = time_provider.utc_naive()
    else:
        row.attempts = int(row.attempts or 0) + 1
        row.error = error[:2000]
    db.commit()


async def reconcile_pending(
    session_factory,
    store: ObjectStore,
    *,
    limit: int = 50,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Replay recorded document rewrites that failed after their override row was written."""
    pending = await run_in_session(session_factory, list_pending, limit)
    resolved = 0
    failed: list[dict] = []
    for item in pending:
        try:
            service = await run_in_session(session_factory, get_service, item['service_id'])
            await update_level_documents(
                store,
                service_date=service.service_date,
                service_id=item['service_id'],
                level=item['level'],
                student_ids=item['student_ids'],
                action=item['action'],
                metadata=ClearanceMetadata.from_dict(item.get('clearance')),
                time_provider=time_provider,
            )
        except EngineError as exc:
            logger.warning('document_sync_replay_failed', extra={'failure_id': item['id'], 'error': exc.message})
            await run_in_session(session_factory, _mark_outcome, item['id'], error=exc.message, time_provider=time_provider)
            failed.append({'id': item['id'], 'error': exc.to_dict()})
            continue
        await run_in_session(session_factory, _mark_outcome, item['id'], error=None, time_provider=time_provider)
        invalidate_absentee_counts(service.service_date.isoformat())
        resolved += 1
    logger.info('document_sync_reconciled', extra={'processed': len(pending), 'resolved': resolved, 'failed': len(failed)})
    return {'processed': len(pending), 'resolved': resolved, 'failed': len(failed), 'errors': failed}
