import asyncio
import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.connectors.base import BaseCrmConnector
from app.schemas.sync import SyncOptions, SyncResult
from app.services.flow_repository import FlowMetricsRepository
from app.services.progress_tracker import ProgressTracker
from app.services.rate_limiter import RateLimiter
from app.services.stage_durations import derive_stage_durations
from app.services.status_sink import NullStatusSink, SyncStatusSink

log = logging.getLogger(__name__)

DEFAULT_FULL_DAYS_BACK = 365
BOOTSTRAP_DAYS_BACK = 7
DEFAULT_BATCH_SIZE = 40
DEFAULT_MAX_RETRIES = 1
CHECKPOINT_EVERY_BATCHES = 10


class SyncError(Exception):
    """A sync run aborted as a whole, as opposed to individual deals failing."""


class DealFlowSyncEngine:
    """
    Synchronizes Pipedrive deal stage history into the local flow table.

    Deals are processed in batches: each batch waits for one rate limiter slot, then
    processes its deals concurrently. A failing deal is recorded in the result and never
    aborts its batch or the run; only failing to list deals (or an unexpected error in
    the orchestration itself) fails the run.
    """

    def __init__(
        self,
        connector: BaseCrmConnector,
        repository: FlowMetricsRepository,
        status_sink: Optional[SyncStatusSink] = None,
        rate_limiter: Optional[RateLimiter] = None,
        progress_tracker: Optional[ProgressTracker] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.connector = connector
        self.repository = repository
        self.status_sink = status_sink or NullStatusSink()
        self.rate_limiter = rate_limiter or RateLimiter(
            settings.pipedrive_rate_limit_requests,
            settings.pipedrive_rate_limit_window_ms,
        )
        self.progress_tracker = progress_tracker or ProgressTracker()
        self._sleep = sleep

    async def sync_deal_flow(self, options: SyncOptions) -> SyncResult:
        started = time.monotonic()
        batch_size = options.batch_size or DEFAULT_BATCH_SIZE
        max_retries = options.max_retries or DEFAULT_MAX_RETRIES
        log.info(f"Starting {options.mode} deal flow sync (days_back={options.days_back}, batch_size={batch_size}, max_retries={max_retries})")

        run_id = self.status_sink.record_start(options.mode)
        self.progress_tracker.start()

        try:
            deals = await self._fetch_deals_for_sync(options)
            self.status_sink.update(run_id, total_deals=len(deals))
            log.info(f"Found {len(deals)} deals to sync")

            result = await self._process_deals_batched(deals, batch_size, max_retries, run_id=run_id)

            if options.mode == "full":
                self._cleanup_old_data(options.days_back or DEFAULT_FULL_DAYS_BACK)

            result.duration_ms = self._elapsed_ms(started)
            self.status_sink.complete(run_id, result)
            self.progress_tracker.log_completion(
                result.total_deals, result.successful_deals, len(result.failed_deals), result.duration_ms
            )
            return result
        except Exception as e:
            duration_ms = self._elapsed_ms(started)
            self.progress_tracker.log_error(str(e), {"mode": options.mode, "run_id": run_id})
            self.status_sink.fail(run_id, str(e), duration_ms)
            raise SyncError(f"Sync failed: {e}") from e

    async def retry_deals(
        self,
        deal_ids: Sequence[int],
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> SyncResult:
        """Re-processes an explicit list of deals without recording a sync run."""
        started = time.monotonic()
        self.progress_tracker.start()
        deals = [{"id": int(deal_id)} for deal_id in dict.fromkeys(deal_ids)]
        log.info(f"Retrying {len(deals)} deals (batch_size={batch_size}, max_retries={max_retries})")

        result = await self._process_deals_batched(deals, batch_size, max_retries)
        result.duration_ms = self._elapsed_ms(started)
        self.progress_tracker.log_completion(
            result.total_deals, result.successful_deals, len(result.failed_deals), result.duration_ms
        )
        return result

    async def _fetch_deals_for_sync(self, options: SyncOptions) -> List[Dict[str, Any]]:
        if options.mode == "full":
            days_back = options.days_back or DEFAULT_FULL_DAYS_BACK
        else:
            last_sync = self._last_sync_time()
            if last_sync is None:
                days_back = BOOTSTRAP_DAYS_BACK
                log.info(f"No previous completed sync found, syncing the last {days_back} days")
            else:
                hours_since = (datetime.now(timezone.utc) - last_sync).total_seconds() / 3600
                days_back = max(1, math.ceil(hours_since / 24))
                log.info(f"Last completed sync at {last_sync.isoformat()}, syncing the last {days_back} days")

        return await self.connector.fetch_all_deals_updated_since(days_back)

    def _last_sync_time(self) -> Optional[datetime]:
        try:
            return self.repository.get_last_sync_timestamp()
        except SQLAlchemyError as e:
            log.warning(f"Could not read last sync time, treating as first sync: {e}")
            return None

    async def _process_deals_batched(
        self,
        deals: List[Dict[str, Any]],
        batch_size: int,
        max_retries: int,
        run_id: Optional[int] = None,
    ) -> SyncResult:
        result = SyncResult(total_deals=len(deals))
        batches = self._chunk(deals, batch_size)

        for batch_number, batch in enumerate(batches, start=1):
            await self.rate_limiter.wait_for_slot()
            outcomes = await self._run_batch(batch, max_retries)

            for deal, error in outcomes:
                result.processed_deals += 1
                if error is None:
                    result.successful_deals += 1
                else:
                    deal_id = deal.get("id")
                    result.failed_deals.append(deal_id)
                    result.errors.append(f"Deal {deal_id}: {error}")

            self.progress_tracker.log_progress(batch_number, len(batches), result.processed_deals, result.total_deals)

            if batch_number % CHECKPOINT_EVERY_BATCHES == 0:
                self.status_sink.update(
                    run_id,
                    processed_deals=result.processed_deals,
                    successful_deals=result.successful_deals,
                )

        return result

    async def _run_batch(self, batch: List[Dict[str, Any]], max_retries: int) -> List[Tuple[Dict[str, Any], Optional[Exception]]]:
        """Processes a batch concurrently; returns (deal, error or None) in batch order."""
        outcomes: List[Tuple[Dict[str, Any], Optional[Exception]]] = [(deal, None) for deal in batch]

        async def run_one(index: int, deal: Dict[str, Any]) -> None:
            try:
                await self.process_single_deal(deal, max_retries)
            except Exception as e:
                log.warning(f"Deal {deal.get('id')} failed: {e}")
                outcomes[index] = (deal, e)

        async with asyncio.TaskGroup() as group:
            for index, deal in enumerate(batch):
                group.create_task(run_one(index, deal))
        return outcomes

    async def process_single_deal(self, deal: Dict[str, Any], max_retries: int = DEFAULT_MAX_RETRIES) -> int:
        """
        Fetches, transforms and stores the stage history of one deal.

        Attempts the whole operation up to `max_retries` times, sleeping 2^attempt
        seconds between attempts, and re-raises the last error. Returns the number of
        stored stage records.
        """
        deal_id = int(deal["id"])
        attempts = max(1, max_retries)

        for attempt in range(1, attempts + 1):
            try:
                events = await self.connector.fetch_deal_flow(deal_id)
                records = derive_stage_durations(events, deal_id, deal.get("pipeline_id"))
                if not records:
                    log.debug(f"Deal {deal_id} has no stage changes")
                    return 0
                return self.repository.upsert_deal_flow_data(records)
            except Exception as e:
                if attempt >= attempts:
                    raise
                delay = 2 ** attempt
                log.warning(f"Deal {deal_id} attempt {attempt}/{attempts} failed: {e}, retrying in {delay}s")
                await self._sleep(delay)

    def _cleanup_old_data(self, days_back: int) -> None:
        try:
            deleted = self.repository.cleanup_old_flow_data(days_back)
            log.info(f"Cleaned up {deleted} flow records older than {days_back} days")
        except Exception as e:
            log.warning(f"Flow data cleanup failed, continuing: {e}")

    @staticmethod
    def _chunk(items: List[Dict[str, Any]], size: int) -> List[List[Dict[str, Any]]]:
        size = max(1, size)
        return [items[i:i + size] for i in range(0, len(items), size)]

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
