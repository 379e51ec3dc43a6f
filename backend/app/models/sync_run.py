"""Sync run model for tracking deal flow synchronization executions."""

from sqlalchemy import Column, Integer, BigInteger, String, DateTime, JSON, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from app.database import Base

JsonList = JSON().with_variant(JSONB(), "postgresql")

SYNC_STATUS_RUNNING = "running"
SYNC_STATUS_COMPLETED = "completed"
SYNC_STATUS_FAILED = "failed"


class SyncRun(Base):
    """Deal flow sync execution history and status tracking."""

    __tablename__ = "deal_flow_sync_status"

    id = Column(Integer, primary_key=True, index=True)

    # Execution details
    sync_type = Column(String(20), nullable=False)  # 'full' or 'incremental'
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(String(20), nullable=False, default=SYNC_STATUS_RUNNING)  # 'running', 'completed', 'failed'

    # Statistics
    total_deals = Column(Integer, default=0, nullable=False)
    processed_deals = Column(Integer, default=0, nullable=False)
    successful_deals = Column(Integer, default=0, nullable=False)
    failed_deals = Column(JsonList, nullable=True)  # Ordered list of deal ids
    errors = Column(JsonList, nullable=True)  # Ordered list of "Deal <id>: <reason>" strings
    duration = Column(BigInteger, nullable=True)  # Milliseconds

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('idx_deal_flow_sync_status_started_at', 'started_at'),
        Index('idx_deal_flow_sync_status_status_completed', 'status', 'completed_at'),
    )

    @property
    def is_running(self) -> bool:
        return self.status == SYNC_STATUS_RUNNING

    def __repr__(self):
        return f"<SyncRun(id={self.id}, type='{self.sync_type}', status='{self.status}', processed={self.processed_deals}/{self.total_deals})>"
