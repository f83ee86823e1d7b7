from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, time

from sqlalchemy import or_
from sqlalchemy.orm import Session

from chapel.errors import AdminNotFound, InvalidLevel, InvalidReason, ServiceNotFound, StudentNotFound
from chapel.models import Admin, Exeat, Level, OverrideReason, Service, ServiceLevel, Student
from chapel.services.roster_matcher import RosterEntry


@dataclass(frozen=True)
class StudentRef:
    id: str
    matric_number: str
    full_name: str
    gender: str
    level_id: str
    status: str


@dataclass(frozen=True)
class ServiceRef:
    id: str
    name: str
    service_date: date
    service_time: time | None
    service_type: str
    devotion_type: str | None
    status: str
    level_ids: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ReasonRef:
    id: str
    code: str
    display_name: str
    requires_note: bool


@dataclass(frozen=True)
class LevelRef:
    id: str
    code: str


@dataclass(frozen=True)
class AdminRef:
    id: str
    email: str
    display_name: str


def _service_ref(db: Session, row: Service) -> ServiceRef:
    level_ids = tuple(
        level_id
        for (level_id,) in db.query(ServiceLevel.level_id).filter(ServiceLevel.service_id == row.id).order_by(ServiceLevel.id.asc())
    )
    return ServiceRef(
        id=row.id,
        name=row.display_name,
        service_date=row.service_date,
        service_time=row.service_time,
        service_type=row.service_type,
        devotion_type=row.devotion_type,
        status=row.status,
        level_ids=level_ids,
    )


def get_student(db: Session, student_id: str) -> StudentRef:
    row = db.query(Student).filter(Student.id == student_id).first()
    if not row:
        raise StudentNotFound(f'Student not found: {student_id}', details={'studentId': student_id})
    return StudentRef(
        id=row.id,
        matric_number=row.matric_number,
        full_name=row.full_name,
        gender=row.gender or '',
        level_id=row.level_id,
        status=row.status,
    )


def get_service(db: Session, service_id: str) -> ServiceRef:
    row = db.query(Service).filter(Service.id == service_id).first()
    if not row:
        raise ServiceNotFound(f'Service not found: {service_id}', details={'serviceId': service_id})
    return _service_ref(db, row)


def list_services_on(db: Session, service_date: date) -> list[ServiceRef]:
    rows = (
        db.query(Service)
        .filter(Service.service_date == service_date)
        .order_by(Service.service_time.asc(), Service.id.asc())
        .all()
    )
    return [_service_ref(db, row) for row in rows]


def get_active_reason(db: Session, reason_id: str) -> ReasonRef:
    row = (
        db.query(OverrideReason)
        .filter(OverrideReason.id == reason_id, OverrideReason.is_active.is_(True))
        .first()
    )
    if not row:
        raise InvalidReason(f'Invalid reason ID: {reason_id}', details={'reasonId': reason_id})
    return ReasonRef(id=row.id, code=row.code, display_name=row.display_name, requires_note=bool(row.requires_note))


def get_level_by_code(db: Session, code: str) -> LevelRef:
    row = db.query(Level).filter(Level.code == str(code)).first()
    if not row:
        raise InvalidLevel(f'Invalid level code: {code}', details={'level': code})
    return LevelRef(id=row.id, code=row.code)


def get_level(db: Session, level_id: str) -> LevelRef:
    row = db.query(Level).filter(Level.id == level_id).first()
    if not row:
        raise InvalidLevel(f'Level not found: {level_id}', details={'levelId': level_id})
    return LevelRef(id=row.id, code=row.code)


def get_admin(db: Session, admin_ref: str) -> AdminRef:
    # Callers hold either the auth user id (clearance) or the admin row id (uploads).
    row = (
        db.query(Admin)
        .filter(or_(Admin.auth_user_id == admin_ref, Admin.id == admin_ref))
        .order_by((Admin.auth_user_id == admin_ref).desc())
        .first()
    )
    if not row:
        raise AdminNotFound(f'Admin not found for auth user: {admin_ref}', details={'authUserId': admin_ref})
    display_name = f'{row.first_name} {row.last_name}'.strip() or row.email
    return AdminRef(id=row.id, email=row.email or '', display_name=display_name)


def load_roster(db: Session, level_id: str, level_code: str) -> list[RosterEntry]:
    rows = db.query(Student).filter(Student.level_id == level_id).order_by(Student.matric_number.asc()).all()
    return [
        RosterEntry(
            student_id=row.id,
            matric_number=row.matric_number,
            student_name=row.full_name,
            level=level_code,
            gender=row.gender or '',
            active=(row.status or 'active') == 'active',
        )
        for row in rows
    ]


def exeat_student_ids(db: Session, student_ids: list[str], service_date: date) -> set[str]:
    if not student_ids:
        return set()
    return {
        student_id
        for (student_id,) in (
            db.query(Exeat.student_id)
            .filter(
                Exeat.student_id.in_(student_ids),
                Exeat.status == 'active',
                Exeat.start_date <= service_date,
                Exeat.end_date >= service_date,
            )
            .distinct()
        )
    }
