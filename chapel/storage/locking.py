"""Mutual exclusion over the object store.

The store has no native locks. A writer drops a uniquely named, create-only
`.lock-{operationId}` marker into the level directory and then lists the
directory: if any other live marker is present it backs off. Whoever listed
first with no competitor holds the directory until its marker is removed.
"""
from __future__ import annotations

import asyncio
import logging
import random
import secrets
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Iterable, TypeVar

from chapel.config import settings
from chapel.core.time_provider import TimeProvider, default_time_provider, iso_utc
from chapel.errors import StorageLocked, is_retryable
from chapel.metrics import record_event
from chapel.storage.documents import LOCK_PREFIX, dump_json
from chapel.storage.object_store import ObjectExistsError, ObjectStore


logger = logging.getLogger(__name__)

T = TypeVar('T')


def new_operation_id(time_provider: TimeProvider = default_time_provider) -> str:
    epoch_ms = int(time_provider.utc_now().timestamp() * 1000)
    return f'{epoch_ms}-{secrets.token_hex(5)}'


def _marker_epoch_ms(path: str) -> int | None:
    name = path.rsplit('/', 1)[-1]
    if not name.startswith(LOCK_PREFIX):
        return None
    head = name[len(LOCK_PREFIX):].split('-', 1)[0]
    return int(head) if head.isdigit() else None


def _live_competitors(paths: Iterable[str], own_path: str, now_ms: int, stale_after_ms: int) -> list[str]:
    competitors = []
    for path in paths:
        if path == own_path or not path.rsplit('/', 1)[-1].startswith(LOCK_PREFIX):
            continue
        created_ms = _marker_epoch_ms(path)
        if created_ms is not None and now_ms - created_ms > stale_after_ms:
            logger.warning('stale_lock_marker_ignored', extra={'lock_path': path})
            continue
        competitors.append(path)
    return competitors


@asynccontextmanager
async def level_lock(
    store: ObjectStore,
    directory: str,
    *,
    student_ids: Iterable[str] = (),
    time_provider: TimeProvider = default_time_provider,
    stale_after_seconds: int | None = None,
) -> AsyncIterator[str]:
    operation_id = new_operation_id(time_provider)
    lock_path = f'{directory}/{LOCK_PREFIX}{operation_id}'
    marker = {
        'operationId': operation_id,
        'timestamp': iso_utc(time_provider.utc_now()),
        'studentIds': list(student_ids),
    }
    try:
        await store.put(lock_path, dump_json(marker), content_type='application/json', upsert=False)
    except ObjectExistsError as exc:
        record_event('lock_contended')
        raise StorageLocked('File operation in progress - please retry', details={'lockPath': lock_path}) from exc

    try:
        stale_ms = (stale_after_seconds if stale_after_seconds is not None else settings.lock_stale_seconds) * 1000
        now_ms = int(time_provider.utc_now().timestamp() * 1000)
        competitors = _live_competitors(await store.list(directory), lock_path, now_ms, stale_ms)
        if competitors:
            record_event('lock_contended')
            logger.info('level_lock_contended', extra={'directory': directory, 'competitors': competitors})
            raise StorageLocked(
                'File operation in progress - please retry',
                details={'lockPath': lock_path, 'heldBy': competitors},
            )
        record_event('lock_acquired')
        yield operation_id
    finally:
        try:
            await store.remove([lock_path])
        except Exception:
            logger.warning('lock_cleanup_failed', extra={'lock_path': lock_path}, exc_info=True)


async def retry_on_contention(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int | None = None,
    backoff_ms: int | None = None,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    jitter: Callable[[float, float], float] | None = None,
) -> T:
    """Run `operation`, retrying retryable failures with exponential backoff.

    Delays are backoff, 2x backoff, 4x backoff... each scaled by a random
    factor in [0.5, 1.5] so writers that collided on a marker do not retry in
    lockstep. Non-retryable errors propagate at once; running out of attempts
    on contention raises StorageLocked.
    """
    attempts = max(1, int(max_attempts if max_attempts is not None else settings.clearance_max_attempts))
    base_ms = int(backoff_ms if backoff_ms is not None else settings.clearance_backoff_ms)
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            attempt += 1
            if not is_retryable(exc):
                raise
            if attempt >= attempts:
                if isinstance(exc, StorageLocked):
                    raise
                raise StorageLocked(
                    'Storage is busy, retries exhausted - please retry',
                    details={'attempts': attempt, 'error': str(exc)},
                ) from exc
            delay_ms = base_ms * (2 ** (attempt - 1)) * (jitter or random.uniform)(0.5, 1.5)
            record_event('document_retry')
            logger.info('document_update_retry', extra={'attempt': attempt, 'delay_ms': delay_ms, 'error': str(exc)})
            await sleep(delay_ms / 1000.0)
