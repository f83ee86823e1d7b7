import json
import tempfile
import unittest
import uuid
from datetime import date, datetime, timezone
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from chapel.config import Settings
from chapel.core.time_provider import FixedTimeProvider
from chapel.db import Base
from chapel.errors import (
    AdminNotFound,
    AlreadyTerminal,
    ArchiveNotFound,
    CommitFailed,
    InvalidFile,
    InvalidLevel,
    LevelNotApplicable,
    ServiceNotFound,
    SessionNotFound,
    StorageError,
)
from chapel.models import (
    Admin,
    AttendanceBatchVersion,
    AttendanceIssue,
    Exeat,
    Level,
    ManualOverride,
    ScanArchive,
    Service,
    ServiceLevel,
    Student,
    UploadSession,
)
from chapel.services.upload_session_service import UploadSessionManager
from chapel.storage.documents import attendance_path
from chapel.storage.object_store import MemoryObjectStore


SERVICE_DATE = date(2026, 1, 4)
SCAN_CSV = b'uniqueid,name\nCU/100/001,Ada\nCU/100/003,Chidi\nCU/999/000,Ghost\n'


class FlakyStore(MemoryObjectStore):
    def __init__(self):
        super().__init__()
        self.fail_absentees = False

    async def put(self, path, data, *, content_type='application/json', upsert=True):
        if self.fail_absentees and path.endswith('absentees.json'):
            raise StorageError('Simulated outage')
        await super().put(path, data, content_type=content_type, upsert=upsert)


class UploadSessionTests(unittest.IsolatedAsyncioTestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_upload_sessions.db'
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
            for model in (
                AttendanceIssue,
                AttendanceBatchVersion,
                UploadSession,
                ScanArchive,
                ManualOverride,
                Exeat,
                ServiceLevel,
                Service,
                Student,
                Admin,
                Level,
            ):
                db.query(model).delete()
            level_100 = Level(code='100', name='100 Level')
            level_200 = Level(code='200', name='200 Level')
            admin = Admin(auth_user_id=str(uuid.uuid4()), email='admin@example.edu', first_name='Ada', last_name='Admin')
            service = Service(name='Sunday Service', service_date=SERVICE_DATE)
            db.add_all([level_100, level_200, admin, service])
            db.flush()
            db.add(ServiceLevel(service_id=service.id, level_id=level_100.id))
            students = [
                Student(matric_number='CU/100/001', first_name='Ada', last_name='Obi', gender='F', level_id=level_100.id),
                Student(matric_number='CU/100/002', first_name='Bola', last_name='Ade', gender='M', level_id=level_100.id),
                Student(matric_number='CU/100/003', first_name='Chidi', last_name='Eze', gender='M', level_id=level_100.id),
            ]
            db.add_all(students)
            db.commit()
            self.level_id = level_100.id
            self.other_level_id = level_200.id
            self.admin_id = admin.id
            self.service_id = service.id
            self.student_a, self.student_b, self.student_c = [row.id for row in students]
        finally:
            db.close()

        self.clock = FixedTimeProvider(datetime(2026, 1, 4, 10, 0, tzinfo=timezone.utc))
        self.store = FlakyStore()
        self.manager = UploadSessionManager(
            self._session_factory,
            self.store,
            time_provider=self.clock,
            config=Settings(clearance_max_attempts=3, clearance_backoff_ms=1),
        )

    async def _open(self, content=SCAN_CSV, level_id=None):
        return await self.manager.open(
            self.service_id, level_id or self.level_id, content, 'scan export.csv', 'text/csv', self.admin_id
        )

    async def _read_doc(self, filename):
        raw = await self.store.get(attendance_path(SERVICE_DATE, self.service_id, '100', filename))
        return json.loads(raw) if raw is not None else None

    async def test_open_builds_preview_and_archives_raw_file(self):
        session = await self._open()
        self.assertEqual(session['status'], 'pending')
        self.assertEqual(session['summary']['matched_count'], 2)

        preview = await self.manager.preview(session['id'])
        self.assertEqual([item['student_id'] for item in preview['matched']], [self.student_a, self.student_c])
        self.assertEqual([item['student_id'] for item in preview['absent']], [self.student_b])
        self.assertEqual(preview['unmatched'][0]['reason'], 'no_roster_entry')
        self.assertEqual(preview['summary']['total_records'], 3)

        db = self._session_factory()
        try:
            archive = db.query(ScanArchive).filter(ScanArchive.id == session['scan_archive_id']).one()
            self.assertTrue(archive.storage_path.startswith(f'attendance/2026-01-04/{self.service_id}/100/raw/'))
            self.assertTrue(archive.storage_path.endswith('-scan_export.csv'))
            self.assertEqual(len(archive.file_hash), 64)
        finally:
            db.close()
        self.assertEqual(await self.store.get(archive.storage_path), SCAN_CSV)

    async def test_preview_is_side_effect_free(self):
        session = await self._open()
        first = await self.manager.preview(session['id'])
        second = await self.manager.preview(session['id'])
        self.assertEqual(first, second)
        self.assertIsNone(await self._read_doc('absentees.json'))
        with self.assertRaises(SessionNotFound):
            await self.manager.preview('missing')

    async def test_identical_reupload_returns_pending_session(self):
        first = await self._open()
        second = await self._open()
        self.assertEqual(first['id'], second['id'])
        sessions = await self.manager.list_sessions(self.service_id)
        self.assertEqual(len(sessions), 1)

    async def test_open_validation_errors(self):
        with self.assertRaises(LevelNotApplicable):
            await self._open(level_id=self.other_level_id)
        with self.assertRaises(ServiceNotFound):
            await self.manager.open('missing', self.level_id, SCAN_CSV, 'scan.csv', 'text/csv', self.admin_id)
        with self.assertRaises(InvalidLevel):
            await self.manager.open(self.service_id, 'missing', SCAN_CSV, 'scan.csv', 'text/csv', self.admin_id)
        with self.assertRaises(AdminNotFound):
            await self.manager.open(self.service_id, self.level_id, SCAN_CSV, 'scan.csv', 'text/csv', 'nobody')
        with self.assertRaises(InvalidFile):
            await self._open(content=b'')

    async def test_confirm_commits_version_and_writes_documents(self):
        session = await self._open()
        version = await self.manager.confirm(session['id'])

        self.assertEqual(version['version'], 1)
        self.assertEqual(version['session']['status'], 'confirmed')
        self.assertEqual([item['student_id'] for item in version['absentees']], [self.student_b])
        self.assertEqual([item['student_id'] for item in await self._read_doc('absentees.json')], [self.student_b])
        self.assertEqual(
            [item['student_id'] for item in await self._read_doc('attendees.json')],
            [self.student_a, self.student_c],
        )
        self.assertEqual(await self._read_doc('exempted.json'), [])
        self.assertEqual(len(await self._read_doc('issues.json')), 1)
        self.assertEqual(await self.store.list(f'attendance/2026-01-04/{self.service_id}/100'), [
            attendance_path(SERVICE_DATE, self.service_id, '100', name)
            for name in ('absentees.json', 'attendees.json', 'exempted.json', 'issues.json')
        ])

        db = self._session_factory()
        try:
            self.assertTrue(db.query(Service).filter(Service.id == self.service_id).one().locked_after_ingestion)
            issues = db.query(AttendanceIssue).all()
            self.assertEqual(len(issues), 1)
            self.assertEqual(issues[0].issue_type, 'no_roster_entry')
            self.assertEqual(issues[0].batch_version_id, version['id'])
        finally:
            db.close()

        with self.assertRaises(AlreadyTerminal):
            await self.manager.confirm(session['id'])
        with self.assertRaises(AlreadyTerminal):
            await self.manager.cancel(session['id'])

    async def test_cancel_is_terminal_and_keeps_archive(self):
        session = await self._open()
        cancelled = await self.manager.cancel(session['id'])
        self.assertEqual(cancelled['status'], 'cancelled')
        self.assertIsNotNone(cancelled['cancelled_at'])
        with self.assertRaises(AlreadyTerminal):
            await self.manager.confirm(session['id'])
        with self.assertRaises(AlreadyTerminal):
            await self.manager.cancel(session['id'])

        db = self._session_factory()
        try:
            archive = db.query(ScanArchive).filter(ScanArchive.id == session['scan_archive_id']).one()
            self.assertEqual(archive.status, 'active')
            self.assertEqual(db.query(AttendanceBatchVersion).count(), 0)
        finally:
            db.close()

    async def test_failed_confirm_stays_pending_and_retry_reuses_version(self):
        session = await self._open()
        self.store.fail_absentees = True
        with self.assertRaises(CommitFailed):
            await self.manager.confirm(session['id'])

        db = self._session_factory()
        try:
            row = db.query(UploadSession).filter(UploadSession.id == session['id']).one()
            self.assertEqual(row.status, 'pending')
            self.assertIsNotNone(row.batch_version_id)
        finally:
            db.close()

        self.store.fail_absentees = False
        version = await self.manager.confirm(session['id'])
        self.assertEqual(version['version'], 1)
        db = self._session_factory()
        try:
            self.assertEqual(db.query(AttendanceBatchVersion).count(), 1)
        finally:
            db.close()

    async def test_reupload_does_not_resurrect_cleared_students(self):
        first = await self._open()
        await self.manager.confirm(first['id'])
        db = self._session_factory()
        try:
            db.add(
                ManualOverride(
                    student_id=self.student_b,
                    service_id=self.service_id,
                    level_id=self.level_id,
                    reason='late_exeat',
                    overridden_by=self.admin_id,
                )
            )
            db.commit()
        finally:
            db.close()

        second = await self._open(content=b'uniqueid\nCU/100/001\n')
        version = await self.manager.confirm(second['id'])
        self.assertEqual(version['version'], 2)
        self.assertEqual(
            sorted(item['student_id'] for item in version['absentees']),
            sorted([self.student_b, self.student_c]),
        )
        self.assertEqual([item['student_id'] for item in await self._read_doc('absentees.json')], [self.student_c])

    async def test_exeat_holders_are_exempted(self):
        db = self._session_factory()
        try:
            db.add(Exeat(student_id=self.student_b, start_date=date(2026, 1, 3), end_date=date(2026, 1, 5)))
            db.commit()
        finally:
            db.close()
        session = await self._open()
        preview = await self.manager.preview(session['id'])
        self.assertEqual(preview['absent'], [])
        self.assertEqual([item['student_id'] for item in preview['exempted']], [self.student_b])

        await self.manager.confirm(session['id'])
        self.assertEqual(await self._read_doc('absentees.json'), [])
        self.assertEqual([item['student_id'] for item in await self._read_doc('exempted.json')], [self.student_b])

    async def test_delete_archive_and_list_sessions(self):
        session = await self._open()
        other = await self._open(content=b'uniqueid\nCU/100/002\n')
        sessions = await self.manager.list_sessions(self.service_id, self.level_id)
        self.assertEqual({item['id'] for item in sessions}, {session['id'], other['id']})
        self.assertEqual(await self.manager.list_sessions(self.service_id, self.other_level_id), [])

        archive = await self.manager.delete_archive(session['scan_archive_id'])
        self.assertEqual(archive['status'], 'deleted')
        with self.assertRaises(ArchiveNotFound):
            await self.manager.delete_archive('missing')


if __name__ == '__main__':
    unittest.main()
