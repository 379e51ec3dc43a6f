"""Best-effort recording of sync run progress."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from app.models.sync_run import SYNC_STATUS_COMPLETED, SYNC_STATUS_FAILED
from app.schemas.sync import SyncMode, SyncResult

log = logging.getLogger(__name__)


class SyncStatusSink(ABC):
    """
    Where the sync engine reports run progress. Implementations must never raise:
    losing a checkpoint is acceptable, aborting a sync because of one is not.
    """

    @abstractmethod
    def record_start(self, mode: SyncMode) -> Optional[int]:
        """Records a new running run and returns its id, or None if it could not be recorded."""

    @abstractmethod
    def update(self, run_id: Optional[int], **fields) -> None:
        pass

    def complete(self, run_id: Optional[int], result: SyncResult) -> None:
        self.update(
            run_id,
            status=SYNC_STATUS_COMPLETED,
            completed_at=datetime.now(timezone.utc),
            processed_deals=result.processed_deals,
            successful_deals=result.successful_deals,
            failed_deals=list(result.failed_deals),
            errors=list(result.errors),
            duration=result.duration_ms,
        )

    def fail(self, run_id: Optional[int], error: str, duration_ms: int) -> None:
        self.update(
            run_id,
            status=SYNC_STATUS_FAILED,
            completed_at=datetime.now(timezone.utc),
            errors=[error],
            duration=duration_ms,
        )


class NullStatusSink(SyncStatusSink):
    """Discards all status updates."""

    def record_start(self, mode: SyncMode) -> Optional[int]:
        return None

    def update(self, run_id: Optional[int], **fields) -> None:
        pass


class RepositoryStatusSink(SyncStatusSink):
    """Writes status checkpoints to the deal_flow_sync_status table."""

    def __init__(self, repository):
        self.repository = repository

    def record_start(self, mode: SyncMode) -> Optional[int]:
        try:
            run = self.repository.record_sync_status(sync_type=mode, started_at=datetime.now(timezone.utc))
            return run.id
        except Exception as e:
            log.warning(f"Failed to record {mode} sync start, continuing without status tracking: {e}", exc_info=True)
            return None

    def update(self, run_id: Optional[int], **fields) -> None:
        if run_id is None:
            return
        try:
            self.repository.update_sync_status(run_id, **fields)
        except Exception as e:
            log.warning(f"Failed to update sync run {run_id} status: {e}", exc_info=True)
