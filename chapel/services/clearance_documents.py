"""Rewrites of a level's absentees.json / manually_cleared.json pair.

Both rewrites work from a single snapshot of the two documents and are
idempotent per student id, so replaying one is always safe.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable, Sequence

from chapel.core.time_provider import TimeProvider, default_time_provider, iso_utc
from chapel.errors import EngineError, StorageUpdateFailed
from chapel.storage.documents import ABSENTEES_FILE, CLEARED_FILE, attendance_path, level_directory, read_json_list, write_json
from chapel.storage.locking import level_lock, retry_on_contention
from chapel.storage.object_store import ObjectStore


logger = logging.getLogger(__name__)

ACTION_CLEAR = 'clear'
ACTION_REVERT = 'revert'


@dataclass(frozen=True)
class ClearanceMetadata:
    admin_id: str
    admin_email: str
    reason: str
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {'admin_id': self.admin_id, 'admin_email': self.admin_email, 'reason': self.reason, 'notes': self.notes}

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> 'ClearanceMetadata':
        payload = payload or {}
        return cls(
            admin_id=str(payload.get('admin_id') or ''),
            admin_email=str(payload.get('admin_email') or 'system'),
            reason=str(payload.get('reason') or 'Manual clearance'),
            notes=payload.get('notes'),
        )


@dataclass
class RewriteOutcome:
    absentees: list[dict] = field(default_factory=list)
    cleared: list[dict] = field(default_factory=list)
    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def apply_clearance(
    absentees: Sequence[dict],
    cleared: Sequence[dict],
    student_ids: Iterable[str],
    metadata: ClearanceMetadata,
    cleared_at: str,
) -> RewriteOutcome:
    ids = list(dict.fromkeys(student_ids))
    target = set(ids)
    by_student = {record.get('student_id'): record for record in absentees}
    already_cleared = {record.get('student_id'): record for record in cleared}

    outcome = RewriteOutcome()
    outcome.absentees = [dict(record) for record in absentees if record.get('student_id') not in target]

    fresh: list[dict] = []
    for student_id in ids:
        source = by_student.get(student_id)
        if source is None:
            outcome.skipped.append(student_id)
            previous = already_cleared.get(student_id)
            if previous is not None:
                fresh.append(dict(previous))
            continue
        base = {key: value for key, value in source.items() if key != 'clearance'}
        clearance: dict[str, Any] = {
            'status': 'cleared',
            'cleared_at': cleared_at,
            'cleared_by': metadata.admin_email or 'system',
            'admin_id': metadata.admin_id,
            'reason': metadata.reason or 'Manual clearance',
        }
        if metadata.notes:
            clearance['notes'] = metadata.notes
        fresh.append({**base, 'clearance': clearance})
        outcome.applied.append(student_id)

    outcome.cleared = [dict(record) for record in cleared if record.get('student_id') not in target] + fresh
    return outcome


def apply_revert(absentees: Sequence[dict], cleared: Sequence[dict], student_ids: Iterable[str]) -> RewriteOutcome:
    ids = list(dict.fromkeys(student_ids))
    target = set(ids)
    present = {record.get('student_id') for record in absentees}

    outcome = RewriteOutcome()
    outcome.absentees = [dict(record) for record in absentees]
    outcome.cleared = []
    for record in cleared:
        student_id = record.get('student_id')
        if student_id not in target:
            outcome.cleared.append(dict(record))
            continue
        if student_id not in present:
            outcome.absentees.append({key: value for key, value in record.items() if key != 'clearance'})
            present.add(student_id)
        outcome.applied.append(student_id)
    applied = set(outcome.applied)
    outcome.skipped = [student_id for student_id in ids if student_id not in applied]
    return outcome


async def _rewrite_once(
    store: ObjectStore,
    service_date: date | str,
    service_id: str,
    level: str,
    student_ids: list[str],
    action: str,
    metadata: ClearanceMetadata | None,
    time_provider: TimeProvider,
) -> RewriteOutcome:
    directory = level_directory(service_date, service_id, level)
    absentees_path = attendance_path(service_date, service_id, level, ABSENTEES_FILE)
    cleared_path = attendance_path(service_date, service_id, level, CLEARED_FILE)

    async with level_lock(store, directory, student_ids=student_ids, time_provider=time_provider):
        absentees, cleared = await asyncio.gather(
            read_json_list(store, absentees_path),
            read_json_list(store, cleared_path),
        )
        absentees = absentees or []
        cleared = cleared or []
        if action == ACTION_REVERT:
            outcome = apply_revert(absentees, cleared, student_ids)
        else:
            outcome = apply_clearance(
                absentees,
                cleared,
                student_ids,
                metadata or ClearanceMetadata(admin_id='', admin_email='system', reason='Manual clearance'),
                iso_utc(time_provider.utc_now()),
            )
        await write_json(store, absentees_path, outcome.absentees)
        await write_json(store, cleared_path, outcome.cleared)

    for student_id in outcome.skipped:
        logger.warning(
            'clearance_student_not_in_document',
            extra={'student_id': student_id, 'service_id': service_id, 'level': level, 'action': action},
        )
    return outcome


async def update_level_documents(
    store: ObjectStore,
    *,
    service_date: date | str,
    service_id: str,
    level: str,
    student_ids: Sequence[str],
    action: str = ACTION_CLEAR,
    metadata: ClearanceMetadata | None = None,
    time_provider: TimeProvider = default_time_provider,
    max_attempts: int | None = None,
    backoff_ms: int | None = None,
    sleep=asyncio.sleep,
) -> RewriteOutcome:
    ids = list(dict.fromkeys(student_ids))

    async def _attempt() -> RewriteOutcome:
        return await _rewrite_once(store, service_date, service_id, level, ids, action, metadata, time_provider)

    try:
        return await retry_on_contention(_attempt, max_attempts=max_attempts, backoff_ms=backoff_ms, sleep=sleep)
    except EngineError:
        raise
    except Exception as exc:
        raise StorageUpdateFailed(
            'Failed to update attendance files',
            details={'serviceId': service_id, 'level': level, 'error': str(exc)},
        ) from exc
