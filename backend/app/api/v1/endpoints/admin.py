import logging
import math
from datetime import datetime, timezone
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

from croniter import croniter
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status

from app.config import settings
from app.models.sync_run import SyncRun, SYNC_STATUS_COMPLETED, SYNC_STATUS_FAILED, SYNC_STATUS_RUNNING
from app.schemas.sync import (
    SyncOptions,
    SyncResponse,
    SyncResultSummary,
    SyncRunResponse,
    TriggerSyncAccepted,
    TriggerSyncRequest,
    format_success_rate,
)
from app.services.engine_factory import get_flow_repository, get_sync_engine_opener, sync_engine_session
from app.services.flow_repository import FlowMetricsRepository, as_utc
from app.services.progress_tracker import format_duration
from app.services.sync_service import DealFlowSyncEngine, SyncError

log = logging.getLogger(__name__)
router = APIRouter()

ADMIN_MAX_RETRIES = 2


async def run_background_sync(options: SyncOptions) -> None:
    """Runs a sync after the response was sent; failures are only logged."""
    try:
        async with sync_engine_session() as engine:
            result = await engine.sync_deal_flow(options)
        log.info(f"Background {options.mode} sync finished: {result.successful_deals}/{result.total_deals} deals synced")
    except Exception as e:
        log.error(f"Background {options.mode} sync failed: {e}", exc_info=True)


def _hours_since(moment: Optional[datetime]) -> Optional[int]:
    if moment is None:
        return None
    return int((datetime.now(timezone.utc) - as_utc(moment)).total_seconds() // 3600)


def calculate_data_span(oldest: datetime, newest: datetime) -> str:
    days = (newest - oldest).days
    if days > 365:
        years = days // 365
        return f"{years} year{'s' if years > 1 else ''}"
    if days > 30:
        months = days // 30
        return f"{months} month{'s' if months > 1 else ''}"
    return f"{days} day{'s' if days > 1 else ''}"


def calculate_average_duration(runs: List[SyncRun]) -> str:
    durations = [run.duration for run in runs if run.status == SYNC_STATUS_COMPLETED and run.duration]
    if not durations:
        return "N/A"
    return format_duration(sum(durations) / len(durations))


def next_scheduled_sync(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return croniter(settings.full_sync_cron, now).get_next(datetime).isoformat()


def _run_response(run: SyncRun) -> SyncRunResponse:
    return SyncRunResponse(
        id=run.id,
        type=run.sync_type,
        status=run.status,
        started_at=as_utc(run.started_at),
        completed_at=as_utc(run.completed_at),
        duration=format_duration(run.duration) if run.duration else None,
        total_deals=run.total_deals,
        successful_deals=run.successful_deals,
        failed_deals=len(run.failed_deals or []),
        success_rate=format_success_rate(run.successful_deals or 0, run.total_deals or 0),
    )


@router.post("/trigger-sync")
async def trigger_sync(
    request: TriggerSyncRequest,
    background_tasks: BackgroundTasks,
    repository: FlowMetricsRepository = Depends(get_flow_repository),
    open_engine: Callable[[], AsyncContextManager[DealFlowSyncEngine]] = Depends(get_sync_engine_opener),
):
    """Trigger a deal flow sync manually, in the background by default."""
    if repository.is_sync_running():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A sync operation is already running. Please wait for it to complete.",
        )

    options = SyncOptions(
        mode=request.mode,
        days_back=request.days_back,
        batch_size=request.batch_size,
        max_retries=ADMIN_MAX_RETRIES,
    )
    log.info(f"Manual {request.mode} sync triggered (days_back={request.days_back}, batch_size={request.batch_size}, async={request.run_async})")

    if request.run_async:
        background_tasks.add_task(run_background_sync, options)
        return TriggerSyncAccepted(
            message=f"{request.mode} sync started in background",
            parameters={"mode": request.mode, "days_back": request.days_back, "batch_size": request.batch_size},
        )

    try:
        async with open_engine() as engine:
            result = await engine.sync_deal_flow(options)
    except SyncError as e:
        log.error(f"Manual sync failed: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    return SyncResponse(
        success=True,
        message=f"{request.mode} sync completed successfully",
        result=SyncResultSummary.from_result(result),
    )


@router.get("/trigger-sync")
async def get_sync_options(repository: FlowMetricsRepository = Depends(get_flow_repository)) -> Dict[str, Any]:
    """Available sync options and a recommendation based on the last completed sync."""
    latest = repository.get_recent_sync_history(1)
    latest_run = latest[0] if latest else None
    last_sync = repository.get_last_sync_timestamp()
    hours = _hours_since(last_sync)
    stats = repository.get_flow_data_stats()

    recommended_days_back = min(max(math.ceil(hours / 24), 1), 30) if hours is not None else 7

    return {
        "success": True,
        "data": {
            "current_status": {
                "is_running": bool(latest_run and latest_run.status == SYNC_STATUS_RUNNING),
                "last_sync": last_sync,
                "hours_since_last_sync": hours,
            },
            "options": {
                "modes": [
                    {"value": "incremental", "label": "Incremental Sync", "description": "Sync deals updated since last sync", "recommended": True},
                    {"value": "full", "label": "Full Sync", "description": "Sync all deals in specified time range", "recommended": False},
                ],
                "days_back_options": [
                    {"value": 1, "label": "1 day"},
                    {"value": 7, "label": "1 week", "recommended": hours is not None and hours < 168},
                    {"value": 30, "label": "1 month", "recommended": hours is not None and hours >= 168},
                    {"value": 90, "label": "3 months"},
                    {"value": 365, "label": "1 year"},
                ],
                "batch_size_options": [
                    {"value": 10, "label": "Small (10)", "description": "Slower but more reliable"},
                    {"value": 20, "label": "Medium (20)", "description": "Balanced speed and reliability", "recommended": True},
                    {"value": 40, "label": "Large (40)", "description": "Faster but may hit rate limits"},
                ],
            },
            "recommendations": {
                "mode": "incremental",
                "days_back": recommended_days_back,
                "batch_size": 20,
                "reasoning": f"Based on {hours} hours since last sync" if hours is not None else "Default recommendation for first sync",
            },
            "data_stats": {
                "total_records": stats["total_records"],
                "oldest_record": stats["oldest_entered_at"],
                "newest_record": stats["newest_entered_at"],
            },
        },
    }


@router.get("/sync-status")
async def get_sync_status(repository: FlowMetricsRepository = Depends(get_flow_repository)) -> Dict[str, Any]:
    """Overview of recent sync runs and stored data health."""
    runs = repository.get_recent_sync_history(10)
    stats = repository.get_flow_data_stats()

    last_completed = next((run for run in runs if run.status == SYNC_STATUS_COMPLETED), None)
    last_sync_time = as_utc(last_completed.completed_at) if last_completed else None
    data_age = _hours_since(last_sync_time)
    successful = sum(1 for run in runs if run.status == SYNC_STATUS_COMPLETED)
    failed = sum(1 for run in runs if run.status == SYNC_STATUS_FAILED)

    oldest, newest = stats["oldest_entered_at"], stats["newest_entered_at"]

    return {
        "success": True,
        "data": {
            "current_status": {
                "is_running": any(run.status == SYNC_STATUS_RUNNING for run in runs),
                "last_sync_time": last_sync_time,
                "data_age": f"{data_age} hours ago" if data_age is not None else "Never",
                "next_scheduled_sync": next_scheduled_sync(),
            },
            "recent_syncs": [_run_response(run) for run in runs],
            "data_stats": {
                "total_records": stats["total_records"],
                "total_deals": stats["total_deals"],
                "oldest_record": oldest,
                "newest_record": newest,
                "data_span": calculate_data_span(oldest, newest) if oldest and newest else None,
            },
            "performance": {
                "success_rate": format_success_rate(successful, len(runs)),
                "failed_syncs": failed,
                "successful_syncs": successful,
                "total_syncs": len(runs),
                "average_duration": calculate_average_duration(runs),
            },
        },
    }
