"""Manual clearance of absentees.

The override row is written first and the level documents second. A document
failure after the insert never rolls the override back; it is logged, parked
in the document sync outbox and surfaced to the caller.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session

from chapel.cache import invalidate_absentee_counts
from chapel.config import Settings, settings as default_settings
from chapel.core.time_provider import TimeProvider, default_time_provider
from chapel.db import run_in_session
from chapel.errors import (
    ClearanceNotFound,
    EngineError,
    LevelMismatch,
    NoteRequired,
    OverrideCreateFailed,
    ValidationFailed,
)
from chapel.metrics import timed_service
from chapel.models import ManualOverride
from chapel.services.clearance_documents import ACTION_CLEAR, ACTION_REVERT, ClearanceMetadata, update_level_documents
from chapel.services.document_sync_service import record_sync_failure
from chapel.services.registry_service import (
    AdminRef,
    LevelRef,
    ReasonRef,
    ServiceRef,
    StudentRef,
    get_active_reason,
    get_admin,
    get_level_by_code,
    get_service,
    get_student,
)
from chapel.storage.object_store import ObjectStore


logger = logging.getLogger(__name__)

LEVEL_PATTERN = r'^[1-5]00$'
UUID_PATTERN = r'^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$'


class ClearanceParams(BaseModel):
    student_id: str = Field(pattern=UUID_PATTERN)
    service_id: str = Field(pattern=UUID_PATTERN)
    level: str = Field(pattern=LEVEL_PATTERN)
    reason_id: str = Field(pattern=UUID_PATTERN)
    admin_id: str = Field(pattern=UUID_PATTERN)
    note: str | None = None


class BatchClearanceParams(BaseModel):
    student_ids: list[str] = Field(min_length=1)
    service_id: str = Field(pattern=UUID_PATTERN)
    level: str = Field(pattern=LEVEL_PATTERN)
    reason_id: str = Field(pattern=UUID_PATTERN)
    admin_id: str = Field(pattern=UUID_PATTERN)
    note: str | None = None


class RevertParams(BaseModel):
    student_id: str = Field(pattern=UUID_PATTERN)
    service_id: str = Field(pattern=UUID_PATTERN)
    level: str = Field(pattern=LEVEL_PATTERN)
    admin_id: str = Field(pattern=UUID_PATTERN)


def parse_params(model: type[BaseModel], message: str, **values: Any) -> Any:
    try:
        return model(**values)
    except ValidationError as exc:
        details = {'.'.join(str(part) for part in error['loc']): error['msg'] for error in exc.errors()}
        raise ValidationFailed(message, details=details) from exc


def serialize_override(row: ManualOverride) -> dict:
    return {
        'id': row.id,
        'student_id': row.student_id,
        'service_id': row.service_id,
        'level_id': row.level_id,
        'reason': row.reason,
        'note': row.note,
        'overridden_by': row.overridden_by,
        'created_at': row.created_at.isoformat() if row.created_at else None,
        'deleted_at': row.deleted_at.isoformat() if row.deleted_at else None,
        'deleted_by': row.deleted_by,
    }


def _insert_override(
    db: Session,
    *,
    student_id: str,
    service_id: str,
    level_id: str,
    reason_code: str,
    note: str | None,
    admin_id: str,
    time_provider: TimeProvider,
) -> dict:
    row = ManualOverride(
        student_id=student_id,
        service_id=service_id,
        level_id=level_id,
        reason=reason_code,
        note=note or None,
        overridden_by=admin_id,
        created_at=time_provider.utc_naive(),
    )
    try:
        db.add(row)
        db.commit()
        db.refresh(row)
    except Exception as exc:
        db.rollback()
        raise OverrideCreateFailed('Failed to create manual override', details={'error': str(exc)}) from exc
    return serialize_override(row)


def _soft_delete_overrides(
    db: Session,
    *,
    student_id: str,
    service_id: str,
    level_id: str,
    admin_id: str,
    time_provider: TimeProvider,
) -> list[dict]:
    rows = (
        db.query(ManualOverride)
        .filter(
            ManualOverride.student_id == student_id,
            ManualOverride.service_id == service_id,
            ManualOverride.level_id == level_id,
            ManualOverride.deleted_at.is_(None),
        )
        .order_by(ManualOverride.created_at.asc())
        .all()
    )
    if not rows:
        raise ClearanceNotFound(
            'No active clearance for this student',
            details={'studentId': student_id, 'serviceId': service_id, 'levelId': level_id},
        )
    now = time_provider.utc_naive()
    for row in rows:
        row.deleted_at = now
        row.deleted_by = admin_id
    db.commit()
    return [serialize_override(row) for row in rows]


def _list_clearances(db: Session, service_id: str, include_reverted: bool) -> list[dict]:
    query = db.query(ManualOverride).filter(ManualOverride.service_id == service_id)
    if not include_reverted:
        query = query.filter(ManualOverride.deleted_at.is_(None))
    rows = query.order_by(ManualOverride.created_at.asc(), ManualOverride.id.asc()).all()
    return [serialize_override(row) for row in rows]


class ClearanceController:
    def __init__(
        self,
        session_factory,
        store: ObjectStore,
        *,
        time_provider: TimeProvider = default_time_provider,
        config: Settings = default_settings,
        sleep=asyncio.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.store = store
        self.time_provider = time_provider
        self.config = config
        self.sleep = sleep

    async def _db(self, fn, *args, **kwargs):
        return await run_in_session(self.session_factory, fn, *args, **kwargs)

    async def _lookups(
        self, params: ClearanceParams
    ) -> tuple[StudentRef, ServiceRef, ReasonRef, LevelRef, AdminRef]:
        # The first failing lookup wins; the rest are left to finish in their threads.
        return await asyncio.gather(
            self._db(get_student, params.student_id),
            self._db(get_service, params.service_id),
            self._db(get_active_reason, params.reason_id),
            self._db(get_level_by_code, params.level),
            self._db(get_admin, params.admin_id),
        )

    async def _sync_documents(
        self,
        *,
        service: ServiceRef,
        level_code: str,
        student_ids: list[str],
        action: str,
        metadata: ClearanceMetadata | None,
        override_id: str | None,
    ) -> None:
        try:
            await update_level_documents(
                self.store,
                service_date=service.service_date,
                service_id=service.id,
                level=level_code,
                student_ids=student_ids,
                action=action,
                metadata=metadata,
                time_provider=self.time_provider,
                max_attempts=self.config.clearance_max_attempts,
                backoff_ms=self.config.clearance_backoff_ms,
                sleep=self.sleep,
            )
        except EngineError as exc:
            logger.error(
                'clearance_document_update_failed',
                extra={
                    'override_id': override_id,
                    'service_id': service.id,
                    'level': level_code,
                    'student_ids': student_ids,
                    'action': action,
                    'error_code': exc.code,
                },
            )
            await self._db(
                record_sync_failure,
                override_id=override_id,
                service_id=service.id,
                level_code=level_code,
                student_ids=student_ids,
                action=action,
                error=exc.message,
                clearance=metadata.to_dict() if metadata else None,
                time_provider=self.time_provider,
            )
            raise
        finally:
            invalidate_absentee_counts(service.service_date.isoformat())

    async def _clear_validated(self, params: ClearanceParams) -> dict:
        student, service, reason, level, admin = await self._lookups(params)
        if student.level_id != level.id:
            raise LevelMismatch(
                f'Student is not in level {level.code}',
                details={'studentId': student.id, 'level': level.code},
            )
        if reason.requires_note and not (params.note or '').strip():
            raise NoteRequired(
                f'Note is required for reason: {reason.display_name}',
                details={'reasonId': reason.id, 'reasonName': reason.display_name},
            )

        override = await self._db(
            _insert_override,
            student_id=student.id,
            service_id=service.id,
            level_id=level.id,
            reason_code=reason.code,
            note=params.note,
            admin_id=admin.id,
            time_provider=self.time_provider,
        )
        await self._sync_documents(
            service=service,
            level_code=level.code,
            student_ids=[student.id],
            action=ACTION_CLEAR,
            metadata=ClearanceMetadata(
                admin_id=admin.id,
                admin_email=admin.email,
                reason=reason.display_name,
                notes=params.note or None,
            ),
            override_id=override['id'],
        )
        logger.info(
            'student_cleared',
            extra={'override_id': override['id'], 'student_id': student.id, 'service_id': service.id, 'level': level.code},
        )
        return override

    @timed_service('clear_student')
    async def clear_student(
        self,
        student_id: str,
        service_id: str,
        level: str,
        reason_id: str,
        admin_id: str,
        note: str | None = None,
    ) -> dict:
        params = parse_params(
            ClearanceParams,
            'Invalid clearance parameters',
            student_id=student_id,
            service_id=service_id,
            level=level,
            reason_id=reason_id,
            admin_id=admin_id,
            note=note,
        )
        return await self._clear_validated(params)

    @timed_service('batch_clear')
    async def batch_clear(
        self,
        student_ids: list[str],
        service_id: str,
        level: str,
        reason_id: str,
        admin_id: str,
        note: str | None = None,
    ) -> dict:
        params = parse_params(
            BatchClearanceParams,
            'Invalid batch clearance parameters',
            student_ids=student_ids,
            service_id=service_id,
            level=level,
            reason_id=reason_id,
            admin_id=admin_id,
            note=note,
        )
        results: list[dict] = []
        errors: list[dict] = []
        for student_id in params.student_ids:
            try:
                results.append(
                    await self.clear_student(student_id, params.service_id, params.level, params.reason_id, params.admin_id, params.note)
                )
            except EngineError as exc:
                errors.append({'student_id': student_id, **exc.to_dict()})
            except Exception as exc:
                logger.exception('batch_clear_student_failed', extra={'student_id': student_id})
                errors.append({'student_id': student_id, 'code': 'CLEARANCE_FAILED', 'message': str(exc)})

        logger.info(
            'batch_clearance_completed',
            extra={
                'service_id': params.service_id,
                'level': params.level,
                'total': len(params.student_ids),
                'successful': len(results),
                'failed': len(errors),
            },
        )
        return {
            'total': len(params.student_ids),
            'successful': len(results),
            'failed': len(errors),
            'results': results,
            'errors': errors,
        }

    async def revert_clearance(self, student_id: str, service_id: str, level: str, admin_id: str) -> dict:
        params = parse_params(
            RevertParams,
            'Invalid revert parameters',
            student_id=student_id,
            service_id=service_id,
            level=level,
            admin_id=admin_id,
        )
        service, level_ref, admin = await asyncio.gather(
            self._db(get_service, params.service_id),
            self._db(get_level_by_code, params.level),
            self._db(get_admin, params.admin_id),
        )
        reverted = await self._db(
            _soft_delete_overrides,
            student_id=params.student_id,
            service_id=service.id,
            level_id=level_ref.id,
            admin_id=admin.id,
            time_provider=self.time_provider,
        )
        await self._sync_documents(
            service=service,
            level_code=level_ref.code,
            student_ids=[params.student_id],
            action=ACTION_REVERT,
            metadata=None,
            override_id=reverted[0]['id'],
        )
        logger.info(
            'clearance_reverted',
            extra={'student_id': params.student_id, 'service_id': service.id, 'level': level_ref.code, 'count': len(reverted)},
        )
        return {'student_id': params.student_id, 'reverted': reverted}

    async def list_clearances(self, service_id: str, *, include_reverted: bool = False) -> list[dict]:
        await self._db(get_service, service_id)
        return await self._db(_list_clearances, service_id, include_reverted)
