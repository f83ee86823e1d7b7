from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from chapel.domain.engine import AttendanceEngine
from chapel.request_context import EndpointNameRoute
from chapel.routers import get_engine
from chapel.schemas import BatchClearRequest, ClearStudentRequest, RevertClearanceRequest


router = APIRouter(prefix='/api/manual-clearance', tags=['Manual Clearance'], route_class=EndpointNameRoute)


@router.post('/clear')
async def clear_student(payload: ClearStudentRequest, engine: AttendanceEngine = Depends(get_engine)):
    override = await engine.clear_student(
        payload.student_id,
        payload.service_id,
        payload.level,
        payload.reason_id,
        payload.admin_id,
        payload.note,
    )
    return {'success': True, 'override': override}


@router.post('/batch')
async def batch_clear(payload: BatchClearRequest, engine: AttendanceEngine = Depends(get_engine)):
    return await engine.batch_clear_students(
        payload.student_ids,
        payload.service_id,
        payload.level,
        payload.reason_id,
        payload.admin_id,
        payload.note,
    )


@router.post('/revert')
async def revert_clearance(payload: RevertClearanceRequest, engine: AttendanceEngine = Depends(get_engine)):
    return await engine.revert_clearance(payload.student_id, payload.service_id, payload.level, payload.admin_id)


@router.get('/services/{service_id}')
async def list_clearances(
    service_id: str,
    include_reverted: bool = Query(default=False),
    engine: AttendanceEngine = Depends(get_engine),
):
    return {'clearances': await engine.list_clearances(service_id, include_reverted=include_reverted)}
