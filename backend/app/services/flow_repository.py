"""Persistence of deal flow records and sync run bookkeeping."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.deal_flow import DealFlowRecord
from app.models.sync_run import SyncRun, SYNC_STATUS_COMPLETED, SYNC_STATUS_RUNNING
from app.schemas.deal_flow import StageDurationRecord

log = logging.getLogger(__name__)

UPSERT_MUTABLE_COLUMNS = ("stage_name", "left_at", "duration_seconds")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class FlowMetricsRepository:
    """
    Database access for the deal flow sync.

    Every write commits on success and rolls back before re-raising on failure, so one
    failed statement never leaves the session unusable for the rest of a run.
    """

    def __init__(self, db: Session):
        self.db = db

    def _commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

    # Sync runs

    def record_sync_status(self, **fields) -> SyncRun:
        fields.setdefault("status", SYNC_STATUS_RUNNING)
        fields.setdefault("started_at", datetime.now(timezone.utc))
        run = SyncRun(**fields)
        self.db.add(run)
        self._commit()
        self.db.refresh(run)
        log.debug(f"Recorded sync run {run.id} ({run.sync_type}, {run.status})")
        return run

    def update_sync_status(self, run_id: int, **fields) -> Optional[SyncRun]:
        run = self.db.get(SyncRun, run_id)
        if run is None:
            log.warning(f"Sync run {run_id} not found, status update skipped")
            return None
        if "status" in fields and not run.is_running and fields["status"] != run.status:
            raise ValueError(f"Sync run {run_id} is already {run.status}")

        for key, value in fields.items():
            setattr(run, key, value)
        self._commit()
        return run

    def get_last_sync_timestamp(self) -> Optional[datetime]:
        """Completion time of the most recent successful run."""
        run = (
            self.db.query(SyncRun)
            .filter(SyncRun.status == SYNC_STATUS_COMPLETED, SyncRun.completed_at.isnot(None))
            .order_by(SyncRun.completed_at.desc())
            .first()
        )
        return as_utc(run.completed_at) if run else None

    def get_recent_sync_history(self, limit: int = 10) -> List[SyncRun]:
        return self.db.query(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(limit).all()

    def is_sync_running(self) -> bool:
        latest = self.db.query(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).first()
        return bool(latest and latest.is_running)

    # Deal flow records

    def _insert_statement(self):
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(DealFlowRecord)
        if dialect == "sqlite":
            return sqlite.insert(DealFlowRecord)
        raise NotImplementedError(f"Upsert is not supported for database dialect '{dialect}'")

    def upsert_deal_flow_data(self, records: Iterable[Union[StageDurationRecord, Dict[str, Any]]]) -> int:
        """
        Inserts stage records, updating the mutable columns when the Pipedrive event
        id is already stored. Returns the number of rows written.
        """
        rows: Dict[int, Dict[str, Any]] = {}
        for record in records:
            row = record.model_dump() if isinstance(record, StageDurationRecord) else dict(record)
            rows[row["pipedrive_event_id"]] = row  # Last one wins
        if not rows:
            return 0

        stmt = self._insert_statement().values(list(rows.values()))
        update_set = {column: getattr(stmt.excluded, column) for column in UPSERT_MUTABLE_COLUMNS}
        update_set["updated_at"] = func.now()
        stmt = stmt.on_conflict_do_update(index_elements=["pipedrive_event_id"], set_=update_set)

        try:
            self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            log.error(f"Failed to upsert {len(rows)} deal flow records: {e}")
            raise

        log.debug(f"Upserted {len(rows)} deal flow records")
        return len(rows)

    def cleanup_old_flow_data(self, days_back: int) -> int:
        """Deletes flow records that entered their stage more than `days_back` days ago."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days_back)
        try:
            deleted = (
                self.db.query(DealFlowRecord)
                .filter(DealFlowRecord.entered_at < cutoff)
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        log.info(f"Flow data cleanup: deleted {deleted} records older than {days_back} days (cutoff: {cutoff.isoformat()})")
        return deleted

    def get_flow_data_stats(self) -> Dict[str, Any]:
        total_records, oldest, newest = self.db.query(
            func.count(DealFlowRecord.id),
            func.min(DealFlowRecord.entered_at),
            func.max(DealFlowRecord.entered_at),
        ).one()
        total_deals = self.db.query(func.count(func.distinct(DealFlowRecord.deal_id))).scalar()

        return {
            "total_records": total_records or 0,
            "total_deals": total_deals or 0,
            "oldest_entered_at": as_utc(oldest),
            "newest_entered_at": as_utc(newest),
            "last_sync": self.get_last_sync_timestamp(),
        }

    def get_deal_flow_data(self, deal_id: Optional[int] = None, limit: int = 1000) -> List[DealFlowRecord]:
        query = self.db.query(DealFlowRecord)
        if deal_id is not None:
            query = query.filter(DealFlowRecord.deal_id == deal_id)
        return query.order_by(DealFlowRecord.deal_id, DealFlowRecord.entered_at, DealFlowRecord.id).limit(limit).all()
