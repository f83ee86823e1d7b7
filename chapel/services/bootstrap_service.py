import logging

from sqlalchemy.orm import Session

from chapel.config import settings
from chapel.models import Level, OverrideReason


logger = logging.getLogger(__name__)

DEFAULT_OVERRIDE_REASONS = (
    ('late_exeat', 'Late Exeat Submission', 'Exeat was submitted after absence was recorded', True),
    ('scanning_error', 'Scanner Error', 'Technical issue with attendance scanner', False),
    ('manual_correction', 'Manual Correction', 'Admin correction of attendance record', True),
    ('permission', 'Special Permission', 'Student had official permission to be absent', True),
    ('other', 'Other Reason', 'Custom reason requiring explanation', True),
)


def _seed_levels(db: Session) -> list[str]:
    existing = {code for (code,) in db.query(Level.code)}
    created = []
    for code in settings.attendance_levels:
        if str(code) in existing:
            continue
        db.add(Level(code=str(code), name=f'{code} Level'))
        created.append(str(code))
    return created


def _seed_override_reasons(db: Session) -> list[str]:
    if db.query(OverrideReason).count() > 0:
        return []
    for code, display_name, description, requires_note in DEFAULT_OVERRIDE_REASONS:
        db.add(
            OverrideReason(
                code=code,
                display_name=display_name,
                description=description,
                requires_note=requires_note,
                is_active=True,
            )
        )
    return [item[0] for item in DEFAULT_OVERRIDE_REASONS]


def run_bootstrap(db: Session) -> dict:
    levels = _seed_levels(db)
    reasons = _seed_override_reasons(db)
    db.commit()
    if levels or reasons:
        logger.info('bootstrap_seeded levels=%s reasons=%s', ','.join(levels) or '-', ','.join(reasons) or '-')
    return {'levels': levels, 'reasons': reasons}
