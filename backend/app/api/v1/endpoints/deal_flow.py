import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from app.schemas.deal_flow import DealFlowRecordResponse
from app.services.engine_factory import get_flow_repository
from app.services.flow_repository import FlowMetricsRepository

log = logging.getLogger(__name__)
router = APIRouter()


@router.get("/deal-flow-data", response_model=List[DealFlowRecordResponse])
async def get_deal_flow_data(
    deal_id: Optional[int] = Query(None, gt=0),
    limit: int = Query(1000, ge=1, le=5000),
    repository: FlowMetricsRepository = Depends(get_flow_repository),
):
    """Stored stage records, optionally for a single deal."""
    records = repository.get_deal_flow_data(deal_id=deal_id, limit=limit)
    log.debug(f"Returning {len(records)} deal flow records (deal_id={deal_id})")
    return records
