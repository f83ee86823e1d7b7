import asyncio
import json
import tempfile
import unittest
import uuid
from datetime import date, datetime, timezone
from pathlib import Path
from unittest import mock

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from chapel.cache import counts_cache
from chapel.config import Settings
from chapel.core.time_provider import FixedTimeProvider
from chapel.db import Base
from chapel.errors import (
    ClearanceNotFound,
    InvalidReason,
    LevelMismatch,
    NoteRequired,
    ServiceNotFound,
    StorageLocked,
    StudentNotFound,
    ValidationFailed,
)
from chapel.models import (
    Admin,
    DocumentSyncFailure,
    Level,
    ManualOverride,
    OverrideReason,
    Service,
    ServiceLevel,
    Student,
)
from chapel.services.clearance_service import ClearanceController
from chapel.services.document_sync_service import reconcile_pending
from chapel.storage import locking
from chapel.storage.documents import attendance_path, level_directory
from chapel.storage.object_store import MemoryObjectStore


SERVICE_DATE = date(2026, 1, 4)
NOW = datetime(2026, 1, 4, 12, 0, tzinfo=timezone.utc)


class SlowMemoryObjectStore(MemoryObjectStore):
    async def get(self, path):
        await asyncio.sleep(0.002)
        return await super().get(path)

    async def put(self, path, data, *, content_type='application/json', upsert=True):
        await asyncio.sleep(0.002)
        await super().put(path, data, content_type=content_type, upsert=upsert)

    async def remove(self, paths):
        await asyncio.sleep(0.002)
        await super().remove(paths)

    async def list(self, directory):
        await asyncio.sleep(0.002)
        return await super().list(directory)


class ClearanceTests(unittest.IsolatedAsyncioTestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_clearance.db'
        cls._engine = create_engine(f"sqlite:///{db_path}", connect_args={'check_same_thread': False})
        cls._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=cls._engine)
        Base.metadata.create_all(bind=cls._engine)

    @classmethod
    def tearDownClass(cls):
        cls._engine.dispose()
        cls._tmpdir.cleanup()

    def setUp(self):
        db = self._session_factory()
        try:
            for model in (DocumentSyncFailure, ManualOverride, OverrideReason, ServiceLevel, Service, Student, Admin, Level):
                db.query(model).delete()
            levels = {code: Level(code=code, name=f'{code} Level') for code in ('100', '200', '300', '400', '500')}
            admin = Admin(auth_user_id=str(uuid.uuid4()), email='dean@example.edu', first_name='Grace', last_name='Dean')
            service = Service(name='Sunday Service', service_date=SERVICE_DATE)
            exeat = OverrideReason(code='late_exeat', display_name='exeat', requires_note=False)
            needs_note = OverrideReason(code='other', display_name='Other Reason', requires_note=True)
            retired = OverrideReason(code='retired', display_name='Retired', is_active=False)
            db.add_all([*levels.values(), admin, service, exeat, needs_note, retired])
            db.flush()
            db.add(ServiceLevel(service_id=service.id, level_id=levels['100'].id))
            students = [
                Student(matric_number='CU/100/001', first_name='Ada', last_name='Obi', level_id=levels['100'].id),
                Student(matric_number='CU/100/002', first_name='Bola', last_name='Ade', level_id=levels['100'].id),
                Student(matric_number='CU/200/001', first_name='Zee', last_name='Oke', level_id=levels['200'].id),
            ]
            db.add_all(students)
            db.commit()
            self.admin_auth_id = admin.auth_user_id
            self.admin_row_id = admin.id
            self.service_id = service.id
            self.exeat_id = exeat.id
            self.note_reason_id = needs_note.id
            self.retired_id = retired.id
            self.student_a, self.student_b, self.student_z = [row.id for row in students]
        finally:
            db.close()

        self.clock = FixedTimeProvider(NOW)
        self.store = MemoryObjectStore()
        self.delays = []
        self.controller = ClearanceController(
            self._session_factory,
            self.store,
            time_provider=self.clock,
            config=Settings(clearance_max_attempts=3, clearance_backoff_ms=100),
            sleep=self._sleep,
        )

    async def asyncSetUp(self):
        await self.store.put(
            self._path('absentees.json'),
            json.dumps([
                {'student_id': self.student_a, 'matric_number': 'CU/100/001', 'unique_id': 'CU/100/001'},
                {'student_id': self.student_b, 'matric_number': 'CU/100/002', 'unique_id': 'CU/100/002'},
            ]).encode('utf-8'),
        )

    async def _sleep(self, seconds):
        self.delays.append(seconds)

    def _path(self, filename):
        return attendance_path(SERVICE_DATE, self.service_id, '100', filename)

    async def _doc(self, filename):
        raw = await self.store.get(self._path(filename))
        return json.loads(raw) if raw is not None else None

    async def _clear(self, student_id, reason_id=None, note=None, level='100'):
        return await self.controller.clear_student(
            student_id, self.service_id, level, reason_id or self.exeat_id, self.admin_auth_id, note
        )

    def _overrides(self):
        db = self._session_factory()
        try:
            return db.query(ManualOverride).order_by(ManualOverride.created_at.asc()).all()
        finally:
            db.close()

    async def test_clear_moves_student_into_cleared_document(self):
        counts_cache.put(SERVICE_DATE, ['100'], [{'stale': True}])
        override = await self._clear(self.student_a, note='Came back late')

        self.assertEqual(override['reason'], 'late_exeat')
        self.assertEqual(override['overridden_by'], self.admin_row_id)
        self.assertEqual([item['student_id'] for item in await self._doc('absentees.json')], [self.student_b])
        cleared = await self._doc('manually_cleared.json')
        self.assertEqual(len(cleared), 1)
        self.assertEqual(cleared[0]['student_id'], self.student_a)
        self.assertEqual(cleared[0]['matric_number'], 'CU/100/001')
        self.assertEqual(
            cleared[0]['clearance'],
            {
                'status': 'cleared',
                'cleared_at': '2026-01-04T12:00:00Z',
                'cleared_by': 'dean@example.edu',
                'admin_id': self.admin_row_id,
                'reason': 'exeat',
                'notes': 'Came back late',
            },
        )
        self.assertIsNone(counts_cache.get(SERVICE_DATE, ['100']))

    async def test_clearing_twice_keeps_documents_stable(self):
        await self._clear(self.student_a)
        await self._clear(self.student_a)
        self.assertEqual([item['student_id'] for item in await self._doc('absentees.json')], [self.student_b])
        self.assertEqual([item['student_id'] for item in await self._doc('manually_cleared.json')], [self.student_a])
        self.assertEqual(len(self._overrides()), 2)

    async def test_clearance_errors(self):
        with self.assertRaises(StudentNotFound):
            await self._clear(str(uuid.uuid4()))
        with self.assertRaises(InvalidReason):
            await self._clear(self.student_a, reason_id=self.retired_id)
        with self.assertRaises(LevelMismatch):
            await self._clear(self.student_z)
        with self.assertRaises(NoteRequired):
            await self._clear(self.student_a, reason_id=self.note_reason_id, note='   ')
        with self.assertRaises(ValidationFailed) as ctx:
            await self._clear(self.student_a, level='600')
        self.assertIn('level', ctx.exception.details)
        with self.assertRaises(ValidationFailed):
            await self._clear('not-a-uuid')
        with self.assertRaises(ServiceNotFound):
            await self.controller.clear_student(
                self.student_a, str(uuid.uuid4()), '100', self.exeat_id, self.admin_auth_id
            )

        self.assertEqual(self._overrides(), [])
        self.assertEqual(len(await self._doc('absentees.json')), 2)
        self.assertIsNone(await self._doc('manually_cleared.json'))

    async def test_batch_clear_reports_each_student(self):
        missing = str(uuid.uuid4())
        result = await self.controller.batch_clear(
            [self.student_a, self.student_z, missing, self.student_b],
            self.service_id,
            '100',
            self.exeat_id,
            self.admin_auth_id,
        )
        self.assertEqual((result['total'], result['successful'], result['failed']), (4, 2, 2))
        self.assertEqual([item['student_id'] for item in result['results']], [self.student_a, self.student_b])
        self.assertEqual(
            [(item['student_id'], item['code']) for item in result['errors']],
            [(self.student_z, 'LEVEL_MISMATCH'), (missing, 'STUDENT_NOT_FOUND')],
        )
        self.assertEqual(await self._doc('absentees.json'), [])

        with self.assertRaises(ValidationFailed):
            await self.controller.batch_clear([], self.service_id, '100', self.exeat_id, self.admin_auth_id)

    async def test_revert_restores_absentee_and_soft_deletes_override(self):
        await self._clear(self.student_a)
        result = await self.controller.revert_clearance(self.student_a, self.service_id, '100', self.admin_auth_id)

        self.assertEqual(result['student_id'], self.student_a)
        self.assertEqual(result['reverted'][0]['deleted_by'], self.admin_row_id)
        self.assertEqual(
            sorted(item['student_id'] for item in await self._doc('absentees.json')),
            sorted([self.student_a, self.student_b]),
        )
        self.assertEqual(await self._doc('manually_cleared.json'), [])
        self.assertEqual(await self.controller.list_clearances(self.service_id), [])
        history = await self.controller.list_clearances(self.service_id, include_reverted=True)
        self.assertEqual(len(history), 1)
        self.assertIsNotNone(history[0]['deleted_at'])

        with self.assertRaises(ClearanceNotFound):
            await self.controller.revert_clearance(self.student_a, self.service_id, '100', self.admin_auth_id)

    async def test_concurrent_clearances_on_one_level_both_land(self):
        store = SlowMemoryObjectStore()
        await store.put(self._path('absentees.json'), await self.store.get(self._path('absentees.json')))
        controller = ClearanceController(
            self._session_factory,
            store,
            time_provider=self.clock,
            config=Settings(clearance_max_attempts=3, clearance_backoff_ms=100),
        )
        factors = iter([0.5, 1.5, 0.5, 1.5])

        with mock.patch.object(locking.random, 'uniform', side_effect=lambda low, high: next(factors, 1.0)):
            first, second = await asyncio.gather(
                controller.clear_student(self.student_a, self.service_id, '100', self.exeat_id, self.admin_auth_id),
                controller.clear_student(self.student_b, self.service_id, '100', self.exeat_id, self.admin_auth_id),
            )

        self.assertEqual({first['student_id'], second['student_id']}, {self.student_a, self.student_b})
        self.assertEqual(json.loads(await store.get(self._path('absentees.json'))), [])
        cleared = json.loads(await store.get(self._path('manually_cleared.json')))
        self.assertEqual(sorted(item['student_id'] for item in cleared), sorted([self.student_a, self.student_b]))

        db = self._session_factory()
        try:
            self.assertEqual(db.query(DocumentSyncFailure).count(), 0)
        finally:
            db.close()

    async def test_lock_contention_keeps_override_and_parks_document_sync(self):
        competitor = f'{level_directory(SERVICE_DATE, self.service_id, "100")}/.lock-{int(NOW.timestamp() * 1000)}-busy'
        await self.store.put(competitor, b'{}', upsert=False)

        with self.assertRaises(StorageLocked):
            await self._clear(self.student_a, note='late paperwork')
        self.assertEqual(len(self.delays), 2)
        self.assertTrue(0.05 <= self.delays[0] <= 0.15)
        self.assertTrue(0.1 <= self.delays[1] <= 0.3)

        overrides = self._overrides()
        self.assertEqual(len(overrides), 1)
        self.assertIsNone(overrides[0].deleted_at)
        self.assertEqual(len(await self._doc('absentees.json')), 2)

        db = self._session_factory()
        try:
            failure = db.query(DocumentSyncFailure).one()
            self.assertEqual(failure.status, 'pending')
            self.assertEqual(failure.override_id, overrides[0].id)
            self.assertEqual(failure.student_ids, [self.student_a])
            self.assertEqual(failure.clearance['reason'], 'exeat')
        finally:
            db.close()

        await self.store.remove([competitor])
        outcome = await reconcile_pending(self._session_factory, self.store, time_provider=self.clock)
        self.assertEqual(outcome, {'processed': 1, 'resolved': 1, 'failed': 0, 'errors': []})
        self.assertEqual([item['student_id'] for item in await self._doc('absentees.json')], [self.student_b])
        cleared = await self._doc('manually_cleared.json')
        self.assertEqual(cleared[0]['clearance']['notes'], 'late paperwork')

        db = self._session_factory()
        try:
            failure = db.query(DocumentSyncFailure).one()
            self.assertEqual(failure.status, 'resolved')
            self.assertIsNotNone(failure.resolved_at)
        finally:
            db.close()

        again = await reconcile_pending(self._session_factory, self.store, time_provider=self.clock)
        self.assertEqual(again['processed'], 0)


if __name__ == '__main__':
    unittest.main()
