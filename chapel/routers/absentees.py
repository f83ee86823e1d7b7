from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from chapel.domain.engine import AttendanceEngine
from chapel.request_context import EndpointNameRoute
from chapel.routers import get_engine


router = APIRouter(prefix='/api/absentees', tags=['Absentees'], route_class=EndpointNameRoute)


@router.get('/services')
async def services_with_counts(
    date: str = Query(..., description='Service date, YYYY-MM-DD'),
    engine: AttendanceEngine = Depends(get_engine),
):
    return {'services': await engine.get_services_with_absentee_counts(date)}


@router.get('/services/{service_id}')
async def service_absentees(
    service_id: str,
    page: int = Query(default=1),
    page_size: int | None = Query(default=None, alias='pageSize'),
    engine: AttendanceEngine = Depends(get_engine),
):
    return await engine.get_absentees(service_id, page, page_size)


@router.get('/services/{service_id}/counts')
async def service_level_counts(service_id: str, engine: AttendanceEngine = Depends(get_engine)):
    return await engine.get_level_counts(service_id)
