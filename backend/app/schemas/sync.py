from datetime import datetime
from typing import Literal, Optional, List
from pydantic import BaseModel, ConfigDict, Field

SyncMode = Literal['full', 'incremental']


def format_success_rate(successful: int, total: int) -> str:
    """Success rate as a percentage string with one decimal, '0%' when nothing was synced."""
    if total <= 0:
        return '0%'
    return f"{successful / total * 100:.1f}%"


class SyncOptions(BaseModel):
    mode: SyncMode
    days_back: Optional[int] = None    # full: defaults to 365, ignored by incremental
    batch_size: Optional[int] = None   # defaults to 40 (one rate limit window)
    max_retries: Optional[int] = None  # total attempts per deal, defaults to 1


class SyncResult(BaseModel):
    total_deals: int = 0
    processed_deals: int = 0
    successful_deals: int = 0
    failed_deals: List[int] = Field(default_factory=list)
    duration_ms: int = 0
    errors: List[str] = Field(default_factory=list)

    @property
    def success_rate(self) -> str:
        return format_success_rate(self.successful_deals, self.total_deals)


class SyncResultSummary(BaseModel):
    total_deals: int
    processed_deals: int
    successful_deals: int
    failed_deals: int
    duration_ms: int
    success_rate: str

    @classmethod
    def from_result(cls, result: SyncResult) -> "SyncResultSummary":
        return cls(
            total_deals=result.total_deals,
            processed_deals=result.processed_deals,
            successful_deals=result.successful_deals,
            failed_deals=len(result.failed_deals),
            duration_ms=result.duration_ms,
            success_rate=result.success_rate,
        )


class SyncResponse(BaseModel):
    success: bool
    message: str
    result: SyncResultSummary


class TriggerSyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mode: SyncMode = 'incremental'
    days_back: int = Field(7, ge=1, le=365)
    batch_size: int = Field(20, ge=1, le=40)
    run_async: bool = Field(True, alias='async')


class TriggerSyncAccepted(BaseModel):
    success: bool = True
    message: str
    parameters: dict


class ManualFullSyncRequest(BaseModel):
    days_back: int = Field(30, ge=1)
    batch_size: int = Field(20, ge=1)


class ManualIncrementalSyncRequest(BaseModel):
    batch_size: int = Field(10, ge=1)


class SyncRunResponse(BaseModel):
    id: int
    type: str
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration: Optional[str] = None
    total_deals: Optional[int] = None
    successful_deals: Optional[int] = None
    failed_deals: int = 0
    success_rate: str = '0%'
