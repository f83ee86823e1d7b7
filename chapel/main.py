import asyncio
from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from chapel.config import settings
from chapel.db import Base, SessionLocal, engine as db_engine
from chapel.domain.engine import AttendanceEngine
from chapel.errors import EngineError, StorageLocked
from chapel.metrics import flush_metrics
from chapel.request_context import EndpointNameRoute
from chapel.routers import absentees, attendance, clearance
from chapel.scheduler import start_scheduler, stop_scheduler
from chapel.services.bootstrap_service import run_bootstrap

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s %(levelname)s %(name)s %(message)s',
)

_STATUS_BY_KIND = {
    'validation': 400,
    'not_found': 404,
    'state': 409,
    'consistency': 500,
}


def status_for(exc: EngineError) -> int:
    if isinstance(exc, StorageLocked):
        return 503
    return _STATUS_BY_KIND.get(exc.kind, 500)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=db_engine)
    db = SessionLocal()
    try:
        run_bootstrap(db)
    finally:
        db.close()
    if getattr(app.state, 'engine', None) is None:
        app.state.engine = AttendanceEngine(SessionLocal)
    start_scheduler(app.state.engine, asyncio.get_running_loop())
    yield
    stop_scheduler()
    flush_metrics()
    await app.state.engine.close()


app = FastAPI(title=settings.app_name, version='0.1.0', lifespan=lifespan)
app.router.route_class = EndpointNameRoute
app.state.engine = None


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    status_code = status_for(exc)
    log = logging.getLogger('chapel.request')
    if status_code >= 500:
        log.error('engine_error path=%s code=%s message=%s', request.url.path, exc.code, exc.message)
    else:
        log.info('engine_error path=%s code=%s', request.url.path, exc.code)
    return JSONResponse(status_code=status_code, content={'error': exc.to_dict()})


@app.middleware('http')
async def slow_request_logger(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - started) * 1000.0
    if duration_ms >= settings.metrics_slow_ms:
        logging.getLogger('chapel.request').info(
            'request_slow path=%s method=%s status_code=%s duration_ms=%.2f',
            request.url.path,
            request.method,
            response.status_code,
            duration_ms,
        )
    return response


app.include_router(attendance.router)
app.include_router(absentees.router)
app.include_router(clearance.router)


@app.get('/')
def health():
    return {'app': settings.app_name, 'status': 'ok'}


@app.get('/health')
def healthcheck():
    return {'status': 'ok'}
