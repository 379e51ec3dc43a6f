import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from app.schemas.sync import (
    ManualFullSyncRequest,
    ManualIncrementalSyncRequest,
    SyncOptions,
    SyncResponse,
    SyncResult,
    SyncResultSummary,
)
from app.services.engine_factory import get_sync_engine
from app.services.sync_service import DealFlowSyncEngine, SyncError
from app.utils.cron_auth import verify_cron_auth

log = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(verify_cron_auth)])

SCHEDULED_FULL_SYNC = SyncOptions(mode="full", days_back=365, batch_size=40, max_retries=2)
SCHEDULED_INCREMENTAL_SYNC = SyncOptions(mode="incremental", batch_size=20, max_retries=1)
MANUAL_MAX_DAYS_BACK = 365
MANUAL_FULL_MAX_BATCH_SIZE = 40
MANUAL_INCREMENTAL_MAX_BATCH_SIZE = 20


async def _run_sync(engine: DealFlowSyncEngine, options: SyncOptions, label: str) -> SyncResult:
    started = time.monotonic()
    log.info(f"{label} started")
    try:
        result = await engine.sync_deal_flow(options)
    except SyncError as e:
        duration_ms = int((time.monotonic() - started) * 1000)
        log.error(f"{label} failed after {duration_ms}ms: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    log.info(
        f"{label} completed: {result.successful_deals}/{result.total_deals} deals synced "
        f"({result.success_rate}), {len(result.failed_deals)} failed"
    )
    return result


@router.get("/sync-deal-flow", response_model=SyncResponse)
async def scheduled_full_sync(engine: DealFlowSyncEngine = Depends(get_sync_engine)):
    """Daily full sync of every deal updated in the last year."""
    result = await _run_sync(engine, SCHEDULED_FULL_SYNC, "Full sync cron job")
    return SyncResponse(
        success=True,
        message="Full sync completed successfully",
        result=SyncResultSummary.from_result(result),
    )


@router.post("/sync-deal-flow")
async def manual_full_sync(
    request: Optional[ManualFullSyncRequest] = None,
    engine: DealFlowSyncEngine = Depends(get_sync_engine),
):
    """Full sync with a custom window, capped at one year and one rate limit window per batch."""
    request = request or ManualFullSyncRequest()
    options = SyncOptions(
        mode="full",
        days_back=min(request.days_back, MANUAL_MAX_DAYS_BACK),
        batch_size=min(request.batch_size, MANUAL_FULL_MAX_BATCH_SIZE),
        max_retries=1,
    )
    result = await _run_sync(engine, options, "Manual full sync")
    return {"success": True, "message": "Manual full sync completed", "result": result}


@router.get("/sync-deal-flow-incremental", response_model=SyncResponse)
async def scheduled_incremental_sync(engine: DealFlowSyncEngine = Depends(get_sync_engine)):
    """Sync of the deals updated since the last completed sync."""
    result = await _run_sync(engine, SCHEDULED_INCREMENTAL_SYNC, "Incremental sync cron job")
    return SyncResponse(
        success=True,
        message="Incremental sync completed successfully",
        result=SyncResultSummary.from_result(result),
    )


@router.post("/sync-deal-flow-incremental")
async def manual_incremental_sync(
    request: Optional[ManualIncrementalSyncRequest] = None,
    engine: DealFlowSyncEngine = Depends(get_sync_engine),
):
    request = request or ManualIncrementalSyncRequest()
    options = SyncOptions(
        mode="incremental",
        batch_size=min(request.batch_size, MANUAL_INCREMENTAL_MAX_BATCH_SIZE),
        max_retries=1,
    )
    result = await _run_sync(engine, options, "Manual incremental sync")
    return {"success": True, "message": "Manual incremental sync completed", "result": result}
