from __future__ import annotations

import asyncio
from datetime import date

from chapel.config import Settings, settings as default_settings
from chapel.core.time_provider import TimeProvider, default_time_provider
from chapel.db import SessionLocal, run_in_session
from chapel.errors import ValidationFailed
from chapel.services import absentee_service, batch_version_service, issue_service
from chapel.services.clearance_service import ClearanceController
from chapel.services.document_sync_service import reconcile_pending
from chapel.services.registry_service import get_service
from chapel.services.upload_session_service import UploadSessionManager
from chapel.storage.object_store import ObjectStore, build_object_store


def parse_service_date(value: date | str) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).split('T')[0])
    except ValueError as exc:
        raise ValidationFailed('Invalid date format', details={'date': str(value)}) from exc


def _versions_for(db, service_id: str, level_id: str) -> list[dict]:
    return [batch_version_service.serialize_version(row) for row in batch_version_service.list_versions(db, service_id, level_id)]


def _current_version_for(db, service_id: str, level_id: str) -> dict | None:
    row = batch_version_service.current_version(db, service_id, level_id)
    return batch_version_service.serialize_version(row) if row else None


def _version_by_id(db, version_id: str) -> dict:
    return batch_version_service.serialize_version(batch_version_service.get_version(db, version_id))


class AttendanceEngine:
    """Entry point for ingestion, absentee reporting and clearance.

    Every method is a coroutine. Relational work runs on short-lived sessions
    from `session_factory`; documents live in `store`.
    """

    def __init__(
        self,
        session_factory=SessionLocal,
        store: ObjectStore | None = None,
        *,
        time_provider: TimeProvider = default_time_provider,
        config: Settings = default_settings,
        sleep=asyncio.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.store = store if store is not None else build_object_store(config)
        self.time_provider = time_provider
        self.config = config
        self.uploads = UploadSessionManager(session_factory, self.store, time_provider=time_provider, config=config)
        self.clearance = ClearanceController(
            session_factory, self.store, time_provider=time_provider, config=config, sleep=sleep
        )

    async def _db(self, fn, *args, **kwargs):
        return await run_in_session(self.session_factory, fn, *args, **kwargs)

    # Ingestion

    async def open_upload(
        self,
        service_id: str,
        level_id: str,
        file: bytes,
        uploader_id: str,
        *,
        filename: str = 'scan.csv',
        mime_type: str = 'text/csv',
    ) -> dict:
        return await self.uploads.open(service_id, level_id, file, filename, mime_type, uploader_id)

    async def get_preview(self, session_id: str) -> dict:
        return await self.uploads.preview(session_id)

    async def confirm_upload(self, session_id: str, confirmed_by: str | None = None) -> dict:
        return await self.uploads.confirm(session_id, confirmed_by)

    async def cancel_upload(self, session_id: str) -> dict:
        return await self.uploads.cancel(session_id)

    async def delete_archive(self, archive_id: str) -> dict:
        return await self.uploads.delete_archive(archive_id)

    async def list_upload_sessions(self, service_id: str, level_id: str | None = None) -> list[dict]:
        return await self.uploads.list_sessions(service_id, level_id)

    async def list_versions(self, service_id: str, level_id: str) -> list[dict]:
        return await self._db(_versions_for, service_id, level_id)

    async def current_version(self, service_id: str, level_id: str) -> dict | None:
        return await self._db(_current_version_for, service_id, level_id)

    async def get_version(self, version_id: str) -> dict:
        return await self._db(_version_by_id, version_id)

    # Absentees

    async def get_services_with_absentee_counts(self, service_date: date | str) -> list[dict]:
        return await absentee_service.services_with_counts(
            self.session_factory,
            self.store,
            parse_service_date(service_date),
            levels=self.config.attendance_levels,
        )

    async def get_level_counts(self, service_id: str) -> dict:
        service = await self._db(get_service, service_id)
        return await absentee_service.level_counts(
            self.store, service.id, service.service_date, self.config.attendance_levels
        )

    async def get_absentees(self, service_id: str, page: int = 1, page_size: int | None = None) -> dict:
        return await absentee_service.absentees_for_service(
            self.session_factory,
            self.store,
            service_id,
            page,
            page_size if page_size is not None else self.config.default_page_size,
            levels=self.config.attendance_levels,
        )

    # Clearance

    async def clear_student(
        self,
        student_id: str,
        service_id: str,
        level: str,
        reason_id: str,
        admin_id: str,
        note: str | None = None,
    ) -> dict:
        return await self.clearance.clear_student(student_id, service_id, level, reason_id, admin_id, note)

    async def batch_clear_students(
        self,
        student_ids: list[str],
        service_id: str,
        level: str,
        reason_id: str,
        admin_id: str,
        note: str | None = None,
    ) -> dict:
        return await self.clearance.batch_clear(student_ids, service_id, level, reason_id, admin_id, note)

    async def revert_clearance(self, student_id: str, service_id: str, level: str, admin_id: str) -> dict:
        return await self.clearance.revert_clearance(student_id, service_id, level, admin_id)

    async def list_clearances(self, service_id: str, *, include_reverted: bool = False) -> list[dict]:
        return await self.clearance.list_clearances(service_id, include_reverted=include_reverted)

    # Issues and reconciliation

    async def list_issues(self, service_id: str | None = None, resolved: bool | None = None) -> list[dict]:
        return await self._db(issue_service.list_issues, service_id, resolved)

    async def resolve_issue(self, issue_id: str, admin_id: str) -> dict:
        return await self._db(issue_service.resolve_issue, issue_id, admin_id, self.time_provider)

    async def reconcile_documents(self, limit: int | None = None) -> dict:
        return await reconcile_pending(
            self.session_factory,
            self.store,
            limit=limit if limit is not None else self.config.reconcile_batch_size,
            time_provider=self.time_provider,
        )

    async def close(self) -> None:
        await self.store.close()
