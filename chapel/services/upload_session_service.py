"""Upload sessions: scan file in, preview out, confirm or cancel.

A session moves pending -> confirmed or pending -> cancelled exactly once.
Confirmation commits a batch version first and writes the level documents
second; the session only turns confirmed after both succeed, so a failed
confirm can simply be retried.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import re

from sqlalchemy.orm import Session

from chapel.cache import invalidate_absentee_counts
from chapel.config import Settings, settings as default_settings
from chapel.core.time_provider import TimeProvider, default_time_provider
from chapel.db import run_in_session
from chapel.errors import (
    AlreadyTerminal,
    ArchiveNotFound,
    CommitFailed,
    EngineError,
    LevelNotApplicable,
    NotFoundError,
    SessionNotFound,
    StorageError,
)
from chapel.metrics import timed_service
from chapel.models import (
    ArchiveStatus,
    AttendanceIssue,
    ManualOverride,
    ScanArchive,
    Service,
    UploadSession,
    UploadStatus,
)
from chapel.services import batch_version_service
from chapel.services.registry_service import (
    exeat_student_ids,
    get_admin,
    get_level,
    get_service,
    load_roster,
)
from chapel.services.roster_matcher import match_rows, split_exempted
from chapel.services.scan_reader import read_scan_rows
from chapel.storage.documents import (
    ABSENTEES_FILE,
    ATTENDEES_FILE,
    EXEMPTED_FILE,
    ISSUES_FILE,
    attendance_path,
    level_directory,
    write_json,
)
from chapel.storage.locking import level_lock, retry_on_contention
from chapel.storage.object_store import ObjectStore


logger = logging.getLogger(__name__)

_UNSAFE_NAME = re.compile(r'[^A-Za-z0-9._-]+')


def _safe_filename(filename: str) -> str:
    name = _UNSAFE_NAME.sub('_', (filename or '').rsplit('/', 1)[-1]).strip('._')
    return name or 'scan'


def serialize_session(row: UploadSession) -> dict:
    preview = row.preview or {}
    return {
        'id': row.id,
        'service_id': row.service_id,
        'level_id': row.level_id,
        'uploaded_by': row.uploaded_by,
        'scan_archive_id': row.scan_archive_id,
        'status': row.status,
        'batch_version_id': row.batch_version_id,
        'summary': dict(preview.get('summary') or {}),
        'created_at': row.created_at.isoformat() if row.created_at else None,
        'confirmed_at': row.confirmed_at.isoformat() if row.confirmed_at else None,
        'cancelled_at': row.cancelled_at.isoformat() if row.cancelled_at else None,
    }


def serialize_archive(row: ScanArchive) -> dict:
    return {
        'id': row.id,
        'service_id': row.service_id,
        'level_id': row.level_id,
        'uploaded_by': row.uploaded_by,
        'storage_path': row.storage_path,
        'mime_type': row.mime_type,
        'file_hash': row.file_hash,
        'status': row.status,
        'uploaded_at': row.uploaded_at.isoformat() if row.uploaded_at else None,
    }


def _load_session(db: Session, session_id: str) -> UploadSession:
    row = db.query(UploadSession).filter(UploadSession.id == session_id).first()
    if not row:
        raise SessionNotFound(f'Upload session not found: {session_id}', details={'sessionId': session_id})
    return row


def _require_pending(row: UploadSession) -> None:
    if row.status != UploadStatus.PENDING.value:
        raise AlreadyTerminal(
            f'Upload session is already {row.status}',
            details={'sessionId': row.id, 'status': row.status},
        )


def _find_pending_duplicate(db: Session, service_id: str, level_id: str, file_hash: str) -> dict | None:
    row = (
        db.query(UploadSession)
        .join(ScanArchive, ScanArchive.id == UploadSession.scan_archive_id)
        .filter(
            UploadSession.service_id == service_id,
            UploadSession.level_id == level_id,
            UploadSession.status == UploadStatus.PENDING.value,
            ScanArchive.file_hash == file_hash,
            ScanArchive.status == ArchiveStatus.ACTIVE.value,
        )
        .order_by(UploadSession.created_at.desc())
        .first()
    )
    return serialize_session(row) if row else None


def _roster_with_exeats(db: Session, level_id: str, level_code: str, service_date):
    roster = load_roster(db, level_id, level_code)
    exempt = exeat_student_ids(db, [entry.student_id for entry in roster], service_date)
    return roster, exempt


def _create_session(
    db: Session,
    *,
    service_id: str,
    level_id: str,
    uploader_id: str,
    storage_path: str,
    mime_type: str,
    file_hash: str,
    preview: dict,
    time_provider: TimeProvider,
) -> dict:
    now = time_provider.utc_naive()
    archive = ScanArchive(
        service_id=service_id,
        level_id=level_id,
        uploaded_by=uploader_id,
        storage_path=storage_path,
        mime_type=mime_type or 'application/octet-stream',
        file_hash=file_hash,
        status=ArchiveStatus.ACTIVE.value,
        uploaded_at=now,
    )
    db.add(archive)
    db.flush()
    row = UploadSession(
        service_id=service_id,
        level_id=level_id,
        uploaded_by=uploader_id,
        scan_archive_id=archive.id,
        preview=preview,
        status=UploadStatus.PENDING.value,
        created_at=now,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return serialize_session(row)


def _confirm_context(db: Session, session_id: str) -> dict:
    row = _load_session(db, session_id)
    _require_pending(row)
    service = get_service(db, row.service_id)
    level = get_level(db, row.level_id)
    return {
        'session': serialize_session(row),
        'preview': dict(row.preview or {}),
        'service_date': service.service_date,
        'level_code': level.code,
    }


def _ensure_version(
    db: Session,
    session_id: str,
    preview: dict,
    admin_id: str,
    time_provider: TimeProvider,
) -> dict:
    row = _load_session(db, session_id)
    _require_pending(row)
    if row.batch_version_id:
        # A previous confirm got as far as the version; reuse it.
        return batch_version_service.serialize_version(batch_version_service.get_version(db, row.batch_version_id))
    version = batch_version_service.commit_version(
        db,
        service_id=row.service_id,
        level_id=row.level_id,
        matched=preview.get('matched') or [],
        absent=preview.get('absent') or [],
        unmatched=preview.get('unmatched') or [],
        exempted=preview.get('exempted') or [],
        admin_id=admin_id,
        upload_session_id=row.id,
        time_provider=time_provider,
    )
    row.batch_version_id = version.id
    db.commit()
    return batch_version_service.serialize_version(version)


def _active_cleared_ids(db: Session, service_id: str, level_id: str) -> set[str]:
    return {
        student_id
        for (student_id,) in db.query(ManualOverride.student_id).filter(
            ManualOverride.service_id == service_id,
            ManualOverride.level_id == level_id,
            ManualOverride.deleted_at.is_(None),
        )
    }


def _finalize_confirm(db: Session, session_id: str, version_id: str, unmatched: list[dict], time_provider: TimeProvider) -> dict:
    row = _load_session(db, session_id)
    _require_pending(row)
    now = time_provider.utc_naive()
    for item in unmatched:
        db.add(
            AttendanceIssue(
                service_id=row.service_id,
                level_id=row.level_id,
                batch_version_id=version_id,
                student_id=None,
                issue_type=str(item.get('reason') or 'unmatched'),
                description=str(item.get('description') or 'Unmatched scan row'),
                raw_data={'row_number': item.get('row_number'), 'unique_id': item.get('unique_id'), 'row': item.get('raw_data')},
                resolved=False,
                created_at=now,
            )
        )
    service = db.query(Service).filter(Service.id == row.service_id).first()
    if service is not None:
        service.locked_after_ingestion = True
    row.status = UploadStatus.CONFIRMED.value
    row.confirmed_at = now
    db.commit()
    db.refresh(row)
    return serialize_session(row)


def _cancel(db: Session, session_id: str, time_provider: TimeProvider) -> dict:
    row = _load_session(db, session_id)
    _require_pending(row)
    row.status = UploadStatus.CANCELLED.value
    row.cancelled_at = time_provider.utc_naive()
    db.commit()
    db.refresh(row)
    return serialize_session(row)


def _delete_archive(db: Session, archive_id: str) -> dict:
    row = db.query(ScanArchive).filter(ScanArchive.id == archive_id).first()
    if not row:
        raise ArchiveNotFound(f'Scan archive not found: {archive_id}', details={'archiveId': archive_id})
    if row.status != ArchiveStatus.DELETED.value:
        row.status = ArchiveStatus.DELETED.value
        db.commit()
        db.refresh(row)
    return serialize_archive(row)


def _list_sessions(db: Session, service_id: str, level_id: str | None) -> list[dict]:
    query = db.query(UploadSession).filter(UploadSession.service_id == service_id)
    if level_id:
        query = query.filter(UploadSession.level_id == level_id)
    rows = query.order_by(UploadSession.created_at.asc(), UploadSession.id.asc()).all()
    return [serialize_session(row) for row in rows]


def _preview(db: Session, session_id: str) -> dict:
    row = _load_session(db, session_id)
    preview = dict(row.preview or {})
    return {
        'session_id': row.id,
        'status': row.status,
        'matched': list(preview.get('matched') or []),
        'unmatched': list(preview.get('unmatched') or []),
        'absent': list(preview.get('absent') or []),
        'exempted': list(preview.get('exempted') or []),
        'summary': dict(preview.get('summary') or {}),
    }


class UploadSessionManager:
    def __init__(
        self,
        session_factory,
        store: ObjectStore,
        *,
        time_provider: TimeProvider = default_time_provider,
        config: Settings = default_settings,
    ) -> None:
        self.session_factory = session_factory
        self.store = store
        self.time_provider = time_provider
        self.config = config

    async def _db(self, fn, *args, **kwargs):
        return await run_in_session(self.session_factory, fn, *args, **kwargs)

    @timed_service('upload_open')
    async def open(
        self,
        service_id: str,
        level_id: str,
        file_bytes: bytes,
        filename: str,
        mime_type: str,
        uploader_id: str,
    ) -> dict:
        service, level, admin = await asyncio.gather(
            self._db(get_service, service_id),
            self._db(get_level, level_id),
            self._db(get_admin, uploader_id),
        )
        if level.id not in service.level_ids:
            raise LevelNotApplicable(
                f'Level {level.code} is not applicable to this service',
                details={'serviceId': service_id, 'level': level.code},
            )

        rows = read_scan_rows(file_bytes, filename=filename, mime_type=mime_type)
        file_hash = hashlib.sha256(file_bytes).hexdigest()
        existing = await self._db(_find_pending_duplicate, service.id, level.id, file_hash)
        if existing:
            logger.info('upload_session_reused', extra={'session_id': existing['id'], 'file_hash': file_hash})
            return existing

        roster, exempt_ids = await self._db(_roster_with_exeats, level.id, level.code, service.service_date)
        result = split_exempted(match_rows(roster, rows, level.code), exempt_ids)

        epoch_ms = int(self.time_provider.utc_now().timestamp() * 1000)
        storage_path = f'{level_directory(service.service_date, service.id, level.code)}/raw/{epoch_ms}-{_safe_filename(filename)}'
        try:
            await self.store.put(storage_path, file_bytes, content_type=mime_type or 'application/octet-stream', upsert=False)
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError('Failed to archive scan file', details={'path': storage_path, 'error': str(exc)}) from exc

        session = await self._db(
            _create_session,
            service_id=service.id,
            level_id=level.id,
            uploader_id=admin.id,
            storage_path=storage_path,
            mime_type=mime_type,
            file_hash=file_hash,
            preview=result.to_dict(),
            time_provider=self.time_provider,
        )
        logger.info(
            'upload_session_opened',
            extra={'session_id': session['id'], 'service_id': service.id, 'level': level.code, **result.summary},
        )
        return session

    async def preview(self, session_id: str) -> dict:
        return await self._db(_preview, session_id)

    async def _write_level_documents(self, service_date, service_id: str, level_code: str, version: dict, cleared_ids: set[str]) -> None:
        absentees = [record for record in version['absentees'] if record.get('student_id') not in cleared_ids]
        documents = {
            ATTENDEES_FILE: version['attendees'],
            ABSENTEES_FILE: absentees,
            EXEMPTED_FILE: version['exempted'],
            ISSUES_FILE: version['unmatched'],
        }
        directory = level_directory(service_date, service_id, level_code)

        async def _attempt() -> None:
            async with level_lock(self.store, directory, time_provider=self.time_provider):
                for filename, payload in documents.items():
                    await write_json(self.store, attendance_path(service_date, service_id, level_code, filename), payload)

        await retry_on_contention(
            _attempt,
            max_attempts=self.config.clearance_max_attempts,
            backoff_ms=self.config.clearance_backoff_ms,
        )

    @timed_service('upload_confirm')
    async def confirm(self, session_id: str, confirmed_by: str | None = None) -> dict:
        context = await self._db(_confirm_context, session_id)
        session = context['session']
        try:
            admin_id = session['uploaded_by']
            if confirmed_by:
                admin_id = (await self._db(get_admin, confirmed_by)).id
            version = await self._db(_ensure_version, session_id, context['preview'], admin_id, self.time_provider)
            cleared_ids = await self._db(_active_cleared_ids, session['service_id'], session['level_id'])
            await self._write_level_documents(
                context['service_date'], session['service_id'], context['level_code'], version, cleared_ids
            )
            confirmed = await self._db(_finalize_confirm, session_id, version['id'], version['unmatched'], self.time_provider)
        except (AlreadyTerminal, NotFoundError):
            raise
        except Exception as exc:
            logger.error(
                'upload_session_confirm_failed',
                extra={'session_id': session_id, 'error': str(exc)},
                exc_info=not isinstance(exc, EngineError),
            )
            raise CommitFailed(
                'Failed to confirm upload session',
                details={'sessionId': session_id, 'error': str(exc)},
            ) from exc

        invalidate_absentee_counts(context['service_date'].isoformat())
        logger.info(
            'upload_session_confirmed',
            extra={
                'session_id': session_id,
                'service_id': session['service_id'],
                'level': context['level_code'],
                'version': version['version'],
                'excluded_cleared': len(cleared_ids),
            },
        )
        return {**version, 'session': confirmed}

    async def cancel(self, session_id: str) -> dict:
        session = await self._db(_cancel, session_id, self.time_provider)
        logger.info('upload_session_cancelled', extra={'session_id': session_id})
        return session

    async def delete_archive(self, archive_id: str) -> dict:
        archive = await self._db(_delete_archive, archive_id)
        logger.info('scan_archive_deleted', extra={'archive_id': archive_id})
        return archive

    async def list_sessions(self, service_id: str, level_id: str | None = None) -> list[dict]:
        return await self._db(_list_sessions, service_id, level_id)
