import asyncio
import logging

from apscheduler.schedulers.background import BackgroundScheduler

from chapel.config import settings
from chapel.metrics import flush_metrics, run_timed_job


scheduler = BackgroundScheduler(timezone=settings.app_timezone)
logger = logging.getLogger(__name__)

RECONCILE_TIMEOUT_SECONDS = 300


def document_sync_reconcile_job(engine, loop: asyncio.AbstractEventLoop):
    # The store's clients belong to the app loop, so the coroutine runs there.
    def _job():
        future = asyncio.run_coroutine_threadsafe(engine.reconcile_documents(), loop)
        summary = future.result(timeout=RECONCILE_TIMEOUT_SECONDS)
        if summary.get('failed'):
            logger.warning('document_sync_reconcile_incomplete', extra={'failed': summary['failed']})
        return summary

    return run_timed_job('document_sync_reconcile', _job)


def metrics_flush_job():
    run_timed_job('engine_metrics_flush', flush_metrics)


def start_scheduler(engine, loop: asyncio.AbstractEventLoop):
    scheduler.add_job(metrics_flush_job, 'interval', minutes=1, id='engine_metrics_flush', replace_existing=True)
    if settings.enable_reconcile_job:
        scheduler.add_job(
            document_sync_reconcile_job,
            'interval',
            minutes=max(1, settings.reconcile_interval_minutes),
            id='document_sync_reconcile',
            args=[engine, loop],
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    if not scheduler.running:
        scheduler.start()


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
