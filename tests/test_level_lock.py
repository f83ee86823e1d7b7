import asyncio
import json
import unittest
from datetime import date, datetime, timedelta, timezone
from unittest import mock

from chapel.core.time_provider import FixedTimeProvider
from chapel.errors import StorageError, StorageLocked, ValidationFailed
from chapel.services.clearance_documents import ClearanceMetadata, update_level_documents
from chapel.storage import locking
from chapel.storage.documents import attendance_path
from chapel.storage.locking import level_lock, new_operation_id, retry_on_contention
from chapel.storage.object_store import MemoryObjectStore


DIRECTORY = 'attendance/2026-01-04/svc/100'
SERVICE_DATE = date(2026, 1, 4)
NOW = datetime(2026, 1, 4, 9, 0, tzinfo=timezone.utc)


class LevelLockTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = MemoryObjectStore()
        self.clock = FixedTimeProvider(NOW)

    async def _markers(self):
        return [path for path in await self.store.list(DIRECTORY) if '/.lock-' in path]

    def test_operation_id_carries_epoch_millis(self):
        operation_id = new_operation_id(self.clock)
        head, tail = operation_id.split('-', 1)
        self.assertEqual(int(head), int(NOW.timestamp() * 1000))
        self.assertEqual(len(tail), 10)

    async def test_marker_written_while_held_and_removed_after(self):
        async with level_lock(self.store, DIRECTORY, student_ids=['s1'], time_provider=self.clock) as operation_id:
            markers = await self._markers()
            self.assertEqual(markers, [f'{DIRECTORY}/.lock-{operation_id}'])
            payload = json.loads(await self.store.get(markers[0]))
            self.assertEqual(payload['operationId'], operation_id)
            self.assertEqual(payload['studentIds'], ['s1'])
            self.assertEqual(payload['timestamp'], '2026-01-04T09:00:00Z')
        self.assertEqual(await self._markers(), [])

    async def test_marker_removed_when_body_raises(self):
        with self.assertRaises(ValueError):
            async with level_lock(self.store, DIRECTORY, time_provider=self.clock):
                raise ValueError('boom')
        self.assertEqual(await self._markers(), [])

    async def test_live_competitor_means_contention(self):
        competitor = f'{DIRECTORY}/.lock-{int(NOW.timestamp() * 1000)}-other'
        await self.store.put(competitor, b'{}', upsert=False)
        with self.assertRaises(StorageLocked) as ctx:
            async with level_lock(self.store, DIRECTORY, time_provider=self.clock):
                self.fail('lock should not be granted')
        self.assertEqual(ctx.exception.details['heldBy'], [competitor])
        self.assertEqual(await self._markers(), [competitor])

    async def test_stale_marker_is_ignored(self):
        old_ms = int((NOW - timedelta(minutes=5)).timestamp() * 1000)
        await self.store.put(f'{DIRECTORY}/.lock-{old_ms}-old', b'{}', upsert=False)
        async with level_lock(self.store, DIRECTORY, time_provider=self.clock, stale_after_seconds=60) as operation_id:
            self.assertTrue(operation_id)

    async def test_other_files_do_not_count_as_locks(self):
        await self.store.put(f'{DIRECTORY}/absentees.json', b'[]')
        async with level_lock(self.store, DIRECTORY, time_provider=self.clock):
            pass


class RetryOnContentionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.delays = []

    async def _sleep(self, seconds):
        self.delays.append(seconds)

    @staticmethod
    def _no_jitter(low, high):
        return 1.0

    async def test_backoff_doubles_between_attempts(self):
        calls = {'n': 0}

        async def operation():
            calls['n'] += 1
            if calls['n'] < 3:
                raise StorageLocked('File operation in progress - please retry')
            return 'done'

        result = await retry_on_contention(operation, max_attempts=3, backoff_ms=100, sleep=self._sleep, jitter=self._no_jitter)
        self.assertEqual(result, 'done')
        self.assertEqual(self.delays, [0.1, 0.2])

    async def test_exhausted_retries_raise_storage_locked(self):
        async def operation():
            raise StorageError('Write conflict on object')

        with self.assertRaises(StorageLocked):
            await retry_on_contention(operation, max_attempts=3, backoff_ms=100, sleep=self._sleep, jitter=self._no_jitter)
        self.assertEqual(self.delays, [0.1, 0.2])

    async def test_non_retryable_errors_fail_immediately(self):
        calls = {'n': 0}

        async def operation():
            calls['n'] += 1
            raise ValidationFailed('bad input')

        with self.assertRaises(ValidationFailed):
            await retry_on_contention(operation, max_attempts=3, backoff_ms=100, sleep=self._sleep, jitter=self._no_jitter)
        self.assertEqual(calls['n'], 1)
        self.assertEqual(self.delays, [])

    async def test_delays_are_scaled_by_jitter(self):
        bounds = []

        def jitter(low, high):
            bounds.append((low, high))
            return 0.5

        async def operation():
            raise StorageLocked('File operation in progress - please retry')

        with self.assertRaises(StorageLocked):
            await retry_on_contention(operation, max_attempts=3, backoff_ms=100, sleep=self._sleep, jitter=jitter)
        self.assertEqual(bounds, [(0.5, 1.5), (0.5, 1.5)])
        self.assertEqual(self.delays, [0.05, 0.1])


class SlowMemoryObjectStore(MemoryObjectStore):
    def __init__(self, latency=0.002):
        super().__init__()
        self.latency = latency

    async def get(self, path):
        await asyncio.sleep(self.latency)
        return await super().get(path)

    async def put(self, path, data, *, content_type='application/json', upsert=True):
        await asyncio.sleep(self.latency)
        await super().put(path, data, content_type=content_type, upsert=upsert)

    async def remove(self, paths):
        await asyncio.sleep(self.latency)
        await super().remove(paths)

    async def list(self, directory):
        await asyncio.sleep(self.latency)
        return await super().list(directory)


class ConcurrentRewriteTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = SlowMemoryObjectStore()
        self.clock = FixedTimeProvider(NOW)
        self.metadata = ClearanceMetadata(admin_id='admin-1', admin_email='dean@example.edu', reason='exeat')
        for level, students in (('100', ['a', 'b']), ('200', ['c'])):
            await self.store.put(
                attendance_path(SERVICE_DATE, 'svc', level, 'absentees.json'),
                json.dumps([{'student_id': student_id} for student_id in students]).encode('utf-8'),
            )
        self.factors = []

    def _jitter(self, low, high):
        # First contender to back off retries early, the next one late.
        factor = 0.5 if len(self.factors) % 2 == 0 else 1.5
        self.factors.append(factor)
        return factor

    async def _clear(self, level, student_id):
        return await update_level_documents(
            self.store,
            service_date=SERVICE_DATE,
            service_id='svc',
            level=level,
            student_ids=[student_id],
            metadata=self.metadata,
            time_provider=self.clock,
            max_attempts=3,
            backoff_ms=100,
        )

    async def _ids(self, level, filename):
        raw = await self.store.get(attendance_path(SERVICE_DATE, 'svc', level, filename))
        return sorted(record['student_id'] for record in json.loads(raw)) if raw is not None else []

    async def test_same_level_clearances_both_apply(self):
        with mock.patch.object(locking.random, 'uniform', side_effect=self._jitter):
            first, second = await asyncio.gather(self._clear('100', 'a'), self._clear('100', 'b'))

        self.assertEqual(first.applied, ['a'])
        self.assertEqual(second.applied, ['b'])
        self.assertTrue(self.factors)
        self.assertEqual(await self._ids('100', 'absentees.json'), [])
        self.assertEqual(await self._ids('100', 'manually_cleared.json'), ['a', 'b'])
        self.assertEqual([path for path in await self.store.list(DIRECTORY) if '/.lock-' in path], [])

    async def test_different_levels_do_not_contend(self):
        with mock.patch.object(locking.random, 'uniform', side_effect=self._jitter):
            first, second = await asyncio.gather(self._clear('100', 'a'), self._clear('200', 'c'))

        self.assertEqual(first.applied, ['a'])
        self.assertEqual(second.applied, ['c'])
        self.assertEqual(self.factors, [])
        self.assertEqual(await self._ids('100', 'manually_cleared.json'), ['a'])
        self.assertEqual(await self._ids('200', 'manually_cleared.json'), ['c'])
        self.assertEqual(await self._ids('200', 'absentees.json'), [])


if __name__ == '__main__':
    unittest.main()
