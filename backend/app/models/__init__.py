"""Database models."""

from app.models.sync_run import SyncRun
from app.models.deal_flow import DealFlowRecord

__all__ = [
    "SyncRun",
    "DealFlowRecord",
]
