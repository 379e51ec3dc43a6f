from datetime import datetime, timezone
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class StageDurationRecord(BaseModel):
    """One stage visit of a deal, derived from consecutive stage-change events."""
    pipedrive_event_id: int = Field(..., description="Pipedrive change log id (idempotency key)")
    deal_id: int
    pipeline_id: int
    stage_id: int
    stage_name: str
    entered_at: datetime
    left_at: Optional[datetime] = Field(None, description="Entry time of the next stage, None while still in this stage")
    duration_seconds: Optional[int] = None


class DealFlowRecordResponse(StageDurationRecord):
    model_config = ConfigDict(from_attributes=True)

    id: int

    @field_validator('entered_at', 'left_at', mode='after')
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        # SQLite drops the offset of stored timestamps
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class DealFlowWebhookPayload(BaseModel):
    deal_id: int

    @field_validator('deal_id', mode='before')
    @classmethod
    def validate_deal_id(cls, v):
        if isinstance(v, str):
            v = v.strip()
            if not v.isdigit():
                raise ValueError('deal_id must be a valid positive number')
            v = int(v)
        if isinstance(v, bool) or not isinstance(v, int) or v <= 0:
            raise ValueError('deal_id must be a valid positive number')
        return v
