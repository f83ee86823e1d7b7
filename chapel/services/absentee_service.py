"""Read side of the absentee documents.

Counts and listings are computed from each level's absentees.json; the
relational store only supplies which services exist on a date.
"""
from __future__ import annotations

import logging
import math
from datetime import date
from typing import Any, Iterable, Sequence

from sqlalchemy.orm import Session

from chapel.cache import counts_cache
from chapel.config import settings
from chapel.db import run_in_session
from chapel.errors import IdentityConflict, InvalidDocument, ValidationFailed
from chapel.metrics import timed_service
from chapel.models import Level
from chapel.services.registry_service import get_service, list_services_on
from chapel.storage.documents import ABSENTEES_FILE, attendance_path, read_many_json
from chapel.storage.object_store import ObjectStore


logger = logging.getLogger(__name__)


def _levels(levels: Sequence[str] | None) -> list[str]:
    return [str(level) for level in (levels if levels is not None else settings.attendance_levels)]


def _level_sort_value(level: Any) -> int:
    text = str(level or '').strip()
    return int(text) if text.isdigit() else 10**6


async def level_counts(
    store: ObjectStore,
    service_id: str,
    service_date: date | str,
    levels: Sequence[str] | None = None,
) -> dict:
    """Absentee totals per level; a malformed document counts as zero and is reported."""
    codes = _levels(levels)
    paths = [attendance_path(service_date, service_id, level, ABSENTEES_FILE) for level in codes]
    by_level: dict[str, int] = {}
    errors: dict[str, str] = {}
    for level, (path, value) in zip(codes, await read_many_json(store, paths)):
        if isinstance(value, InvalidDocument):
            logger.warning('absentee_document_invalid', extra={'path': path, 'level': level})
            errors[level] = value.message
            by_level[level] = 0
            continue
        if isinstance(value, BaseException):
            raise value
        if value is not None and not isinstance(value, list):
            errors[level] = f'Expected a JSON array: {path}'
            by_level[level] = 0
            continue
        by_level[level] = len(value or [])
    return {'total': sum(by_level.values()), 'by_level': by_level, 'errors': errors}


def _services_for_date(db: Session, service_date: date) -> list[dict]:
    codes = {level_id: code for level_id, code in db.query(Level.id, Level.code)}
    services = []
    for ref in list_services_on(db, service_date):
        services.append(
            {
                'id': ref.id,
                'name': ref.name,
                'service_date': ref.service_date.isoformat(),
                'service_time': ref.service_time.strftime('%H:%M') if ref.service_time else None,
                'service_type': ref.service_type,
                'devotion_type': ref.devotion_type,
                'status': ref.status,
                'levels': sorted((codes[level_id] for level_id in ref.level_ids if level_id in codes), key=_level_sort_value),
            }
        )
    return services


@timed_service('services_with_counts')
async def services_with_counts(
    session_factory,
    store: ObjectStore,
    service_date: date,
    *,
    levels: Sequence[str] | None = None,
    use_cache: bool = True,
) -> list[dict]:
    codes = _levels(levels)
    if use_cache:
        cached = counts_cache.get(service_date, codes)
        if cached is not None:
            return cached

    services = await run_in_session(session_factory, _services_for_date, service_date)
    payload = []
    for service in services:
        counts = await level_counts(store, service['id'], service_date, codes)
        payload.append({**service, 'absentee_counts': counts})

    if use_cache:
        counts_cache.put(service_date, codes, payload)
    return payload


def identity_key(record: dict) -> str:
    return str(record.get('unique_id') or record.get('student_id') or '')


def merge_level_documents(documents: Iterable[tuple[str, Sequence[dict]]]) -> list[dict]:
    """Flatten per-level documents, tagging each entry with the level it was read from."""
    merged: list[dict] = []
    for level, records in documents:
        for record in records or []:
            if isinstance(record, dict):
                merged.append({**record, 'level': level})
    return merged


def dedupe_absentees(records: Iterable[dict]) -> list[dict]:
    seen: dict[str, dict] = {}
    ordered: list[dict] = []
    for record in records:
        key = identity_key(record)
        if not key:
            ordered.append(record)
            continue
        existing = seen.get(key)
        if existing is None:
            seen[key] = record
            ordered.append(record)
            continue
        if existing.get('student_id') != record.get('student_id'):
            raise IdentityConflict(
                f'Conflicting absentee records for identifier {key}',
                details={
                    'uniqueId': key,
                    'studentIds': [existing.get('student_id'), record.get('student_id')],
                    'levels': [existing.get('level'), record.get('level')],
                },
            )
    return ordered


def sort_absentees(records: Iterable[dict]) -> list[dict]:
    return sorted(
        records,
        key=lambda item: (
            _level_sort_value(item.get('level')),
            str(item.get('matric_number') or ''),
            str(item.get('student_id') or ''),
        ),
    )


def paginate(records: Sequence[dict], page: int, page_size: int) -> tuple[list[dict], dict]:
    total = len(records)
    start = (page - 1) * page_size
    return list(records[start:start + page_size]), {
        'page': page,
        'pageSize': page_size,
        'total': total,
        'totalPages': math.ceil(total / page_size) if total else 0,
    }


def _validate_page(page: Any, page_size: Any) -> tuple[int, int]:
    errors = {}
    try:
        page_value = int(page)
    except (TypeError, ValueError):
        page_value = 0
    try:
        size_value = int(page_size)
    except (TypeError, ValueError):
        size_value = 0
    if page_value < 1:
        errors['page'] = 'Page must be at least 1'
    if size_value < 1:
        errors['pageSize'] = 'Page size must be at least 1'
    if errors:
        raise ValidationFailed('Invalid pagination parameters', details=errors)
    return page_value, size_value


@timed_service('absentees_for_service')
async def absentees_for_service(
    session_factory,
    store: ObjectStore,
    service_id: str,
    page: int = 1,
    page_size: int | None = None,
    *,
    levels: Sequence[str] | None = None,
) -> dict:
    page, page_size = _validate_page(page, page_size if page_size is not None else settings.default_page_size)
    service = await run_in_session(session_factory, get_service, service_id)
    codes = _levels(levels)
    paths = [attendance_path(service.service_date, service.id, level, ABSENTEES_FILE) for level in codes]

    documents: list[tuple[str, list]] = []
    for level, (path, value) in zip(codes, await read_many_json(store, paths)):
        if isinstance(value, BaseException):
            raise value
        if value is not None and not isinstance(value, list):
            raise InvalidDocument(f'Expected a JSON array: {path}', details={'path': path})
        documents.append((level, value or []))

    records = sort_absentees(dedupe_absentees(merge_level_documents(documents)))
    by_level = {level: 0 for level in codes}
    for record in records:
        by_level[str(record.get('level'))] = by_level.get(str(record.get('level')), 0) + 1

    data, pagination = paginate(records, page, page_size)
    return {
        'data': data,
        'pagination': pagination,
        'summary': {'totalAbsentees': len(records), 'byLevel': by_level},
    }
