"""Deal flow record model for stage durations derived from Pipedrive events."""

from sqlalchemy import Column, Integer, BigInteger, String, DateTime, Index
from sqlalchemy.sql import func
from app.database import Base


class DealFlowRecord(Base):
    """Time a deal spent in one pipeline stage."""

    __tablename__ = "pipedrive_deal_flow_data"

    id = Column(Integer, primary_key=True, index=True)

    # Source information
    pipedrive_event_id = Column(BigInteger, nullable=False, unique=True)  # Idempotency key
    deal_id = Column(BigInteger, nullable=False)
    pipeline_id = Column(BigInteger, nullable=False)

    # Stage information
    stage_id = Column(BigInteger, nullable=False)
    stage_name = Column(String(255), nullable=False)

    # Temporal information
    entered_at = Column(DateTime(timezone=True), nullable=False)
    left_at = Column(DateTime(timezone=True), nullable=True)  # NULL while the deal is still in the stage
    duration_seconds = Column(BigInteger, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        Index('idx_pipedrive_deal_flow_data_deal_id', 'deal_id'),
        Index('idx_pipedrive_deal_flow_data_entered_at', 'entered_at'),
    )

    def __repr__(self):
        return f"<DealFlowRecord(id={self.id}, deal={self.deal_id}, stage={self.stage_id}, duration={self.duration_seconds})>"
