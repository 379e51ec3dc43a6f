from fastapi import APIRouter

from app.api.v1.endpoints import admin, cron, deal_flow, webhook

api_router = APIRouter()
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
api_router.include_router(cron.router, prefix="/cron", tags=["cron"])
api_router.include_router(deal_flow.router, prefix="/pipedrive", tags=["deal-flow"])
api_router.include_router(webhook.router, tags=["webhook"])
