"""Construction of fully wired sync engines for requests, jobs and scripts."""

import logging
from contextlib import asynccontextmanager
from functools import partial
from typing import AsyncContextManager, AsyncIterator, Callable, Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from app.config import settings
from app.connectors.base import BaseCrmConnector
from app.connectors.pipedrive_connector import PipedriveConnector
from app.database import SessionLocal, get_db
from app.services.flow_repository import FlowMetricsRepository
from app.services.status_sink import RepositoryStatusSink
from app.services.sync_service import DealFlowSyncEngine

log = logging.getLogger(__name__)


def build_sync_engine(db: Session, connector: Optional[BaseCrmConnector] = None) -> DealFlowSyncEngine:
    """A fresh engine (and so a fresh rate limiter) bound to the given session."""
    repository = FlowMetricsRepository(db)
    return DealFlowSyncEngine(
        connector=connector or PipedriveConnector(settings.pipedrive_config),
        repository=repository,
        status_sink=RepositoryStatusSink(repository),
    )


@asynccontextmanager
async def sync_engine_session() -> AsyncIterator[DealFlowSyncEngine]:
    """Engine owning its own database session and Pipedrive client, for work outside a request."""
    db = SessionLocal()
    connector = PipedriveConnector(settings.pipedrive_config)
    try:
        yield build_sync_engine(db, connector)
    finally:
        await connector.close()
        db.close()


@asynccontextmanager
async def request_sync_engine(db: Session) -> AsyncIterator[DealFlowSyncEngine]:
    """Engine bound to an existing session; only its Pipedrive client is closed on exit."""
    connector = PipedriveConnector(settings.pipedrive_config)
    try:
        yield build_sync_engine(db, connector)
    finally:
        await connector.close()


async def get_sync_engine(db: Session = Depends(get_db)) -> AsyncIterator[DealFlowSyncEngine]:
    """FastAPI dependency yielding an engine bound to the request's session."""
    async with request_sync_engine(db) as engine:
        yield engine


def get_sync_engine_opener(db: Session = Depends(get_db)) -> Callable[[], AsyncContextManager[DealFlowSyncEngine]]:
    """FastAPI dependency for routes that only sometimes need an engine; nothing is opened until called."""
    return partial(request_sync_engine, db)


def get_flow_repository(db: Session = Depends(get_db)) -> FlowMetricsRepository:
    return FlowMetricsRepository(db)
