import tempfile
import unittest
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from chapel.db import Base
from chapel.models import Level, OverrideReason
from chapel.services.bootstrap_service import run_bootstrap


class BootstrapTests(unittest.TestCase):
    def setUp(self):
        self._tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmpdir.cleanup)
        engine = create_engine(f"sqlite:///{Path(self._tmpdir.name) / 'test_bootstrap.db'}")
        self.addCleanup(engine.dispose)
        Base.metadata.create_all(bind=engine)
        self.session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    def test_seeds_levels_and_reasons_once(self):
        db = self.session_factory()
        try:
            db.add(Level(code='100', name='Freshers'))
            db.commit()

            first = run_bootstrap(db)
            self.assertEqual(first['levels'], ['200', '300', '400', '500'])
            self.assertEqual(len(first['reasons']), 5)
            self.assertEqual(db.query(Level).filter(Level.code == '100').one().name, 'Freshers')

            late = db.query(OverrideReason).filter(OverrideReason.code == 'late_exeat').one()
            self.assertTrue(late.requires_note)
            scanner = db.query(OverrideReason).filter(OverrideReason.code == 'scanning_error').one()
            self.assertFalse(scanner.requires_note)

            self.assertEqual(run_bootstrap(db), {'levels': [], 'reasons': []})
            self.assertEqual(db.query(OverrideReason).count(), 5)
        finally:
            db.close()


if __name__ == '__main__':
    unittest.main()
