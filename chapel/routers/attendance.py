from __future__ import annotations

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile

from chapel.domain.engine import AttendanceEngine
from chapel.request_context import EndpointNameRoute
from chapel.routers import get_engine
from chapel.schemas import ConfirmUploadRequest, ResolveIssueRequest


router = APIRouter(prefix='/api/attendance', tags=['Attendance Ingestion'], route_class=EndpointNameRoute)


@router.post('/uploads')
async def open_upload(
    service_id: str = Form(...),
    level_id: str = Form(...),
    uploader_id: str = Form(...),
    file: UploadFile = File(...),
    engine: AttendanceEngine = Depends(get_engine),
):
    content = await file.read()
    return await engine.open_upload(
        service_id,
        level_id,
        content,
        uploader_id,
        filename=file.filename or 'scan.csv',
        mime_type=file.content_type or 'text/csv',
    )


@router.get('/uploads/{session_id}/preview')
async def upload_preview(session_id: str, engine: AttendanceEngine = Depends(get_engine)):
    return await engine.get_preview(session_id)


@router.post('/uploads/{session_id}/confirm')
async def confirm_upload(
    session_id: str,
    payload: ConfirmUploadRequest | None = None,
    engine: AttendanceEngine = Depends(get_engine),
):
    return await engine.confirm_upload(session_id, payload.confirmed_by if payload else None)


@router.post('/uploads/{session_id}/cancel')
async def cancel_upload(session_id: str, engine: AttendanceEngine = Depends(get_engine)):
    return await engine.cancel_upload(session_id)


@router.get('/services/{service_id}/uploads')
async def list_uploads(
    service_id: str,
    level_id: str | None = Query(default=None),
    engine: AttendanceEngine = Depends(get_engine),
):
    return {'sessions': await engine.list_upload_sessions(service_id, level_id)}


@router.delete('/archives/{archive_id}')
async def delete_archive(archive_id: str, engine: AttendanceEngine = Depends(get_engine)):
    return await engine.delete_archive(archive_id)


@router.get('/services/{service_id}/levels/{level_id}/versions')
async def list_versions(service_id: str, level_id: str, engine: AttendanceEngine = Depends(get_engine)):
    return {
        'versions': await engine.list_versions(service_id, level_id),
        'current': await engine.current_version(service_id, level_id),
    }


@router.get('/versions/{version_id}')
async def get_version(version_id: str, engine: AttendanceEngine = Depends(get_engine)):
    return await engine.get_version(version_id)


@router.get('/issues')
async def list_issues(
    service_id: str | None = Query(default=None),
    resolved: bool | None = Query(default=None),
    engine: AttendanceEngine = Depends(get_engine),
):
    return {'issues': await engine.list_issues(service_id, resolved)}


@router.post('/issues/{issue_id}/resolve')
async def resolve_issue(issue_id: str, payload: ResolveIssueRequest, engine: AttendanceEngine = Depends(get_engine)):
    return await engine.resolve_issue(issue_id, payload.admin_id)


@router.post('/documents/reconcile')
async def reconcile_documents(
    limit: int | None = Query(default=None, ge=1, le=500),
    engine: AttendanceEngine = Depends(get_engine),
):
    return await engine.reconcile_documents(limit)
