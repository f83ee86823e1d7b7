from __future__ import annotations

import asyncio
import json
from datetime import date
from typing import Any, Iterable

from chapel.errors import InvalidDocument, StorageError
from chapel.storage.object_store import ObjectStore


ABSENTEES_FILE = 'absentees.json'
CLEARED_FILE = 'manually_cleared.json'
ATTENDEES_FILE = 'attendees.json'
EXEMPTED_FILE = 'exempted.json'
ISSUES_FILE = 'issues.json'
LOCK_PREFIX = '.lock-'


def _date_str(value: date | str) -> str:
    if isinstance(value, date):
        return value.isoformat()
    return str(value).split('T')[0]


def level_directory(service_date: date | str, service_id: str, level: str) -> str:
    return f'attendance/{_date_str(service_date)}/{service_id}/{level}'


def attendance_path(service_date: date | str, service_id: str, level: str, filename: str) -> str:
    return f'{level_directory(service_date, service_id, level)}/{filename}'


def dump_json(value: Any) -> bytes:
    return json.dumps(value, indent=2, default=str).encode('utf-8')


async def read_json(store: ObjectStore, path: str) -> Any | None:
    raw = await store.get(path)
    if raw is None:
        return None
    try:
        return json.loads(raw.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidDocument(f'Invalid JSON format: {path}', details={'path': path, 'error': str(exc)}) from exc


async def read_json_list(store: ObjectStore, path: str) -> list[dict] | None:
    value = await read_json(store, path)
    if value is None:
        return None
    if not isinstance(value, list):
        raise InvalidDocument(f'Expected a JSON array: {path}', details={'path': path})
    return value


async def write_json(store: ObjectStore, path: str, value: Any) -> None:
    try:
        await store.put(path, dump_json(value), content_type='application/json', upsert=True)
    except StorageError:
        raise
    except Exception as exc:
        raise StorageError(f'Failed to store JSON at {path}', details={'path': path, 'error': str(exc)}) from exc


async def read_many_json(store: ObjectStore, paths: Iterable[str]) -> list[tuple[str, Any | BaseException | None]]:
    """Reads every path concurrently; per-path failures are returned, not raised."""
    path_list = list(paths)
    results = await asyncio.gather(*(read_json(store, path) for path in path_list), return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException) and not isinstance(result, Exception):
            raise result
    return list(zip(path_list, results))
