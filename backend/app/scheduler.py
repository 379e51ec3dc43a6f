"""APScheduler integration for periodic deal flow syncs."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from app.config import settings
from app.database import SessionLocal
from app.schemas.sync import SyncOptions
from app.services.engine_factory import sync_engine_session
from app.services.flow_repository import FlowMetricsRepository

log = logging.getLogger(__name__)

# Global scheduler instance
scheduler = AsyncIOScheduler(timezone="UTC")

FULL_SYNC_JOB_ID = "full_sync_job"
INCREMENTAL_SYNC_JOB_ID = "incremental_sync_job"

FULL_SYNC_OPTIONS = SyncOptions(mode="full", days_back=365, batch_size=40, max_retries=2)
INCREMENTAL_SYNC_OPTIONS = SyncOptions(mode="incremental", batch_size=20, max_retries=1)


def _sync_in_progress() -> bool:
    db = SessionLocal()
    try:
        return FlowMetricsRepository(db).is_sync_running()
    finally:
        db.close()


async def run_scheduled_sync(options: SyncOptions) -> None:
    """Execute a scheduled sync unless another run is still in progress."""
    try:
        if _sync_in_progress():
            log.warning(f"Scheduled {options.mode} sync skipped: previous run still active")
            return

        log.info(f"Starting scheduled {options.mode} sync")
        async with sync_engine_session() as engine:
            result = await engine.sync_deal_flow(options)
        log.info(
            f"Scheduled {options.mode} sync completed: {result.successful_deals}/{result.total_deals} deals "
            f"({result.success_rate}), {len(result.failed_deals)} failed"
        )
    except Exception as e:
        log.error(f"Scheduled {options.mode} sync failed: {e}", exc_info=True)


async def full_sync_job():
    await run_scheduled_sync(FULL_SYNC_OPTIONS)


async def incremental_sync_job():
    await run_scheduled_sync(INCREMENTAL_SYNC_OPTIONS)


def schedule_sync_jobs(full_cron: str, incremental_cron: str) -> None:
    """(Re)register both sync jobs from crontab expressions."""
    for job_id, func, cron in (
        (FULL_SYNC_JOB_ID, full_sync_job, full_cron),
        (INCREMENTAL_SYNC_JOB_ID, incremental_sync_job, incremental_cron),
    ):
        try:
            trigger = CronTrigger.from_crontab(cron, timezone="UTC")
        except ValueError as e:
            log.error(f"Failed to schedule {job_id} with cron '{cron}': {e}")
            raise
        scheduler.add_job(func, trigger=trigger, id=job_id, replace_existing=True, max_instances=1, coalesce=True)
        log.info(f"Scheduled {job_id}: cron='{cron}'")


def start_scheduler():
    """Register the sync jobs and start the APScheduler."""
    schedule_sync_jobs(settings.full_sync_cron, settings.incremental_sync_cron)
    if not scheduler.running:
        scheduler.start()
        log.info("APScheduler started successfully")


def shutdown_scheduler():
    """Shutdown the APScheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        log.info("APScheduler shut down successfully")
