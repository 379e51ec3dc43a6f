import logging
import uuid
from hmac import compare_digest
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from app.config import settings
from app.schemas.deal_flow import DealFlowWebhookPayload
from app.services.engine_factory import get_sync_engine
from app.services.sync_service import DealFlowSyncEngine

log = logging.getLogger(__name__)
router = APIRouter()


def verify_webhook_secret(x_zapier_secret: Optional[str] = Header(None, alias="X-Zapier-Secret")) -> None:
    expected = settings.pipedrive_webhook_secret
    if not expected:
        log.error("Pipedrive webhook secret not configured, rejecting webhook")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Webhook not configured")
    if not compare_digest((x_zapier_secret or "").encode(), expected.encode()):
        log.error("Invalid webhook secret")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


@router.post("/pipedrive-webhook", dependencies=[Depends(verify_webhook_secret)])
async def pipedrive_webhook(
    payload: DealFlowWebhookPayload,
    engine: DealFlowSyncEngine = Depends(get_sync_engine),
):
    """
    Receive a deal change notification and refresh that deal's stage history.

    The notification itself is always acknowledged; if fetching or storing the flow
    fails, the response reports a partial success with the error.
    """
    correlation_id = str(uuid.uuid4())
    deal_id = payload.deal_id
    log.info(f"Webhook received for deal {deal_id} (correlation id {correlation_id})")

    try:
        stored = await engine.process_single_deal({"id": deal_id})
    except Exception as e:
        log.error(f"Webhook processing failed for deal {deal_id}: {e}", exc_info=True)
        return {
            "status": "partial_success",
            "message": f"Deal {deal_id} received but flow processing failed",
            "correlation_id": correlation_id,
            "error": str(e),
        }

    if stored == 0:
        log.warning(f"No stage changes found for deal {deal_id}")
        return {
            "status": "partial_success",
            "message": f"Deal {deal_id} received but no flow data found",
            "correlation_id": correlation_id,
            "error": "No flow data found for this deal",
        }

    log.info(f"Deal {deal_id} flow data stored ({stored} stage records)")
    return {
        "status": "ok",
        "message": f"Deal {deal_id} processed successfully - flow data fetched and stored",
        "correlation_id": correlation_id,
        "flow_events_count": stored,
    }
