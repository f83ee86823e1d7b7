"""Roster matching for uploaded scan rows.

Pure functions only: the same roster and rows always produce the same result,
so a preview computed at upload time is exactly what gets confirmed later.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Mapping, Sequence


NO_ROSTER_ENTRY = 'no_roster_entry'
AMBIGUOUS_IDENTIFIER = 'ambiguous_identifier'
MALFORMED_ROW = 'malformed_row'
LEVEL_MISMATCH = 'level_mismatch'
DUPLICATE_ROW = 'duplicate_row'

UNMATCHED_REASONS = (NO_ROSTER_ENTRY, AMBIGUOUS_IDENTIFIER, MALFORMED_ROW, LEVEL_MISMATCH, DUPLICATE_ROW)

IDENTIFIER_KEYS = ('uniqueid', 'unique_id', 'matric_number', 'matric', 'matricnumber')
LEVEL_KEYS = ('level', 'level_code')

_REASON_TEXT = {
    NO_ROSTER_ENTRY: 'Student not found in roster',
    AMBIGUOUS_IDENTIFIER: 'Identifier matches more than one active student',
    MALFORMED_ROW: 'Row has no usable identifier',
    LEVEL_MISMATCH: 'Row level does not match the upload level',
    DUPLICATE_ROW: 'Student already matched by an earlier row',
}


@dataclass(frozen=True)
class RosterEntry:
    student_id: str
    matric_number: str
    student_name: str
    level: str
    gender: str = ''
    active: bool = True

    def absentee_record(self) -> dict[str, str]:
        return {
            'student_id': self.student_id,
            'matric_number': self.matric_number,
            'student_name': self.student_name,
            'level': self.level,
            'gender': self.gender,
            'unique_id': self.matric_number,
        }


@dataclass(frozen=True)
class UnmatchedRow:
    row_number: int
    reason: str
    description: str
    unique_id: str
    raw_data: Any

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MatchResult:
    matched: list[dict[str, str]] = field(default_factory=list)
    unmatched: list[UnmatchedRow] = field(default_factory=list)
    absent: list[dict[str, str]] = field(default_factory=list)
    exempted: list[dict[str, str]] = field(default_factory=list)
    total_rows: int = 0

    @property
    def summary(self) -> dict[str, int]:
        return {
            'total_records': self.total_rows,
            'matched_count': len(self.matched),
            'unmatched_count': len(self.unmatched),
            'absent_count': len(self.absent),
            'exempted_count': len(self.exempted),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            'matched': [dict(item) for item in self.matched],
            'unmatched': [item.to_dict() for item in self.unmatched],
            'absent': [dict(item) for item in self.absent],
            'exempted': [dict(item) for item in self.exempted],
            'summary': self.summary,
        }


def normalize_identifier(value: Any) -> str:
    if value is None:
        return ''
    return str(value).strip().casefold()


def _normalize_level(value: Any) -> str:
    text = str(value if value is not None else '').strip().upper()
    if text.endswith('L'):
        text = text[:-1].strip()
    return text


def _lookup(row: Mapping[Any, Any], keys: Sequence[str]) -> Any:
    lowered = {str(key).strip().casefold(): value for key, value in row.items()}
    for key in keys:
        value = lowered.get(key)
        if value is not None and str(value).strip():
            return value
    return None


def _unmatched(row_number: int, reason: str, unique_id: str, raw: Any, detail: str = '') -> UnmatchedRow:
    description = _REASON_TEXT[reason]
    if detail:
        description = f'{description} ({detail})'
    return UnmatchedRow(row_number=row_number, reason=reason, description=description, unique_id=unique_id, raw_data=raw)


def match_rows(roster: Iterable[RosterEntry], rows: Iterable[Any], level_code: str) -> MatchResult:
    """Classify each raw row as matched or unmatched and derive the absent set.

    Matching is on the normalized institutional identifier. An identifier shared
    by more than one active roster entry is never guessed at.
    """
    active = [entry for entry in roster if entry.active]
    index: dict[str, list[RosterEntry]] = {}
    for entry in active:
        index.setdefault(normalize_identifier(entry.matric_number), []).append(entry)

    target_level = _normalize_level(level_code)
    result = MatchResult()
    matched_ids: set[str] = set()

    for row_number, row in enumerate(rows, start=1):
        result.total_rows += 1
        if not isinstance(row, Mapping):
            result.unmatched.append(_unmatched(row_number, MALFORMED_ROW, '', row))
            continue
        raw_identifier = _lookup(row, IDENTIFIER_KEYS)
        identifier = normalize_identifier(raw_identifier)
        if not identifier:
            result.unmatched.append(_unmatched(row_number, MALFORMED_ROW, '', dict(row)))
            continue
        unique_id = str(raw_identifier).strip()
        candidates = index.get(identifier, [])
        if not candidates:
            result.unmatched.append(_unmatched(row_number, NO_ROSTER_ENTRY, unique_id, dict(row)))
            continue
        if len(candidates) > 1:
            result.unmatched.append(_unmatched(row_number, AMBIGUOUS_IDENTIFIER, unique_id, dict(row)))
            continue
        student = candidates[0]
        row_level = _lookup(row, LEVEL_KEYS)
        if row_level is not None and target_level and _normalize_level(row_level) != target_level:
            result.unmatched.append(
                _unmatched(
                    row_number,
                    LEVEL_MISMATCH,
                    unique_id,
                    dict(row),
                    f'student is {target_level}L but row shows {_normalize_level(row_level)}L',
                )
            )
            continue
        if student.student_id in matched_ids:
            result.unmatched.append(_unmatched(row_number, DUPLICATE_ROW, unique_id, dict(row)))
            continue
        matched_ids.add(student.student_id)
        result.matched.append(student.absentee_record())

    absent_entries = sorted(
        (entry for entry in active if entry.student_id not in matched_ids),
        key=lambda entry: (normalize_identifier(entry.matric_number), entry.student_id),
    )
    result.absent = [entry.absentee_record() for entry in absent_entries]
    return result


def split_exempted(result: MatchResult, exempt_student_ids: Iterable[str]) -> MatchResult:
    """Move absent students holding an active exeat into the exempted set."""
    exempt = set(exempt_student_ids)
    if not exempt:
        return result
    still_absent = []
    for record in result.absent:
        if record['student_id'] in exempt:
            result.exempted.append({**record, 'status': 'exempted', 'reason': 'Active exeat'})
        else:
            still_absent.append(record)
    result.absent = still_absent
    return result
