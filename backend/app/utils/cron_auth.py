"""Shared-secret authorization for cron-triggered endpoints."""

import logging
from hmac import compare_digest
from typing import Optional

from fastapi import Header, HTTPException, status

from app.config import settings

log = logging.getLogger(__name__)


def is_authorized_cron_request(authorization: Optional[str]) -> bool:
    # An unset secret leaves cron endpoints open
    if not settings.cron_secret:
        log.warning("CRON_SECRET not configured - cron endpoints are unprotected")
        return True
    return compare_digest((authorization or "").encode(), f"Bearer {settings.cron_secret}".encode())


async def verify_cron_auth(authorization: Optional[str] = Header(None)) -> None:
    if not is_authorized_cron_request(authorization):
        log.error("Unauthorized cron request")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
