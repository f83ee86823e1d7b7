"""Typed engine errors.

Every error carries a machine-readable ``code``, a human-readable message and
optional ``details``. The ``kind`` groups codes the way callers react to them:
``validation`` and ``not_found`` are caller mistakes, ``state`` means a rule was
violated, and ``consistency`` covers storage and cross-store problems.
"""
from __future__ import annotations

from typing import Any


class EngineError(Exception):
    code = 'ENGINE_ERROR'
    kind = 'consistency'
    retryable = False

    def __init__(self, message: str, *, details: Any | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        if code:
            self.code = code

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {'code': self.code, 'message': self.message}
        if self.details is not None:
            payload['details'] = self.details
        return payload


class ValidationFailed(EngineError):
    code = 'INVALID_INPUT'
    kind = 'validation'


class InvalidFile(EngineError):
    code = 'INVALID_FILE'
    kind = 'validation'


class NotFoundError(EngineError):
    code = 'NOT_FOUND'
    kind = 'not_found'


class StudentNotFound(NotFoundError):
    code = 'STUDENT_NOT_FOUND'


class ServiceNotFound(NotFoundError):
    code = 'SERVICE_NOT_FOUND'


class InvalidReason(NotFoundError):
    code = 'INVALID_REASON'


class InvalidLevel(NotFoundError):
    code = 'INVALID_LEVEL'


class AdminNotFound(NotFoundError):
    code = 'ADMIN_NOT_FOUND'


class SessionNotFound(NotFoundError):
    code = 'SESSION_NOT_FOUND'


class ArchiveNotFound(NotFoundError):
    code = 'ARCHIVE_NOT_FOUND'


class VersionNotFound(NotFoundError):
    code = 'VERSION_NOT_FOUND'


class IssueNotFound(NotFoundError):
    code = 'ISSUE_NOT_FOUND'


class ClearanceNotFound(NotFoundError):
    code = 'CLEARANCE_NOT_FOUND'


class StateError(EngineError):
    code = 'INVALID_STATE'
    kind = 'state'


class AlreadyTerminal(StateError):
    code = 'ALREADY_TERMINAL'


class LevelMismatch(StateError):
    code = 'LEVEL_MISMATCH'


class LevelNotApplicable(StateError):
    code = 'LEVEL_NOT_APPLICABLE'


class NoteRequired(StateError):
    code = 'NOTE_REQUIRED'


class AlreadyResolved(StateError):
    code = 'ALREADY_RESOLVED'


class StorageError(EngineError):
    code = 'STORAGE_ERROR'


class InvalidDocument(StorageError):
    code = 'INVALID_JSON'


class StorageLocked(StorageError):
    code = 'STORAGE_LOCKED'
    retryable = True


class StorageUpdateFailed(StorageError):
    code = 'STORAGE_UPDATE_FAILED'


class CommitFailed(EngineError):
    code = 'COMMIT_FAILED'


class OverrideCreateFailed(EngineError):
    code = 'CREATE_OVERRIDE_FAILED'


class IdentityConflict(EngineError):
    code = 'IDENTITY_CONFLICT'


_RETRYABLE_MARKERS = ('conflict', 'concurrent', 'retry', 'locked')


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, EngineError) and error.retryable:
        return True
    message = str(error).lower()
    return any(marker in message for marker in _RETRYABLE_MARKERS)
