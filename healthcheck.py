import asyncio
import sys

from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import text

from chapel.config import settings
from chapel.core.time_provider import default_time_provider
from chapel.db import SessionLocal, engine
from chapel.models import DocumentSyncFailure, Level, OverrideReason, SyncStatus
from chapel.storage.documents import LOCK_PREFIX
from chapel.storage.object_store import ObjectStore, build_object_store


GREEN = '\033[32m'
RED = '\033[31m'
RESET = '\033[0m'

PROBE_DIRECTORY = 'healthcheck'


def run_check(name, fn):
    try:
        message = fn() or ''
        suffix = f' - {message}' if message else ''
        print(f'{GREEN}PASS{RESET} {name}{suffix}')
        return True
    except Exception as exc:
        print(f'{RED}FAIL{RESET} {name} - {exc}')
        return False


def check_db_connectivity_and_write():
    with engine.begin() as conn:
        conn.execute(text('SELECT 1'))
        conn.execute(text('CREATE TABLE IF NOT EXISTS _healthcheck_probe (id INTEGER PRIMARY KEY, note TEXT)'))
        conn.execute(text("INSERT INTO _healthcheck_probe (note) VALUES ('probe')"))
        conn.execute(text("DELETE FROM _healthcheck_probe WHERE note='probe'"))
        conn.execute(text('DROP TABLE IF EXISTS _healthcheck_probe'))
    return 'connect + write ok'


def check_alembic_head():
    cfg = Config('alembic.ini')
    script = ScriptDirectory.from_config(cfg)
    heads = set(script.get_heads())
    if not heads:
        raise RuntimeError('No alembic heads found in repository')

    with engine.connect() as conn:
        current = MigrationContext.configure(conn).get_current_revision()

    if current is None:
        raise RuntimeError('No migration version in DB (run alembic upgrade head)')
    if current not in heads:
        raise RuntimeError(f'DB revision {current} is not at head {sorted(heads)}')
    return f'current={current}'


def check_reference_data():
    db = SessionLocal()
    try:
        levels = {code for (code,) in db.query(Level.code)}
        missing = sorted(set(settings.attendance_levels) - levels)
        if missing:
            raise RuntimeError(f'Missing levels: {missing}')
        reasons = db.query(OverrideReason).filter(OverrideReason.is_active.is_(True)).count()
        if not reasons:
            raise RuntimeError('No active override reasons')
        return f'levels={len(levels)} reasons={reasons}'
    finally:
        db.close()


def check_pending_document_syncs():
    db = SessionLocal()
    try:
        pending = db.query(DocumentSyncFailure).filter(DocumentSyncFailure.status == SyncStatus.PENDING.value).count()
    finally:
        db.close()
    if pending:
        raise RuntimeError(f'{pending} document rewrites waiting for reconciliation')
    return 'outbox empty'


async def _storage_roundtrip(store: ObjectStore) -> str:
    stamp = int(default_time_provider.utc_now().timestamp() * 1000)
    path = f'{PROBE_DIRECTORY}/{LOCK_PREFIX}{stamp}-probe'
    try:
        await store.put(path, b'{}', upsert=False)
        if await store.get(path) != b'{}':
            raise RuntimeError('Probe object read back differently')
        if path not in await store.list(PROBE_DIRECTORY):
            raise RuntimeError('Probe object missing from listing')
    finally:
        await store.remove([path])
        await store.close()
    return f'backend={settings.storage_backend}'


def check_storage_roundtrip(store: ObjectStore | None = None):
    return asyncio.run(_storage_roundtrip(store if store is not None else build_object_store()))


def main():
    checks = [
        ('Database connectivity and write access', check_db_connectivity_and_write),
        ('Alembic migration status at head', check_alembic_head),
        ('Levels and override reasons seeded', check_reference_data),
        ('Object storage put/get/list/remove', check_storage_roundtrip),
        ('No pending document rewrites', check_pending_document_syncs),
    ]

    all_ok = True
    for name, fn in checks:
        all_ok = run_check(name, fn) and all_ok

    if not all_ok:
        sys.exit(1)
    sys.exit(0)


if __name__ == '__main__':
    main()
