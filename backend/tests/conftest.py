import os

# Tests run against an in-memory SQLite database shared through a StaticPool
os.environ["DATABASE_URL"] = "sqlite://"

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from app import models  # noqa: F401
from app.connectors.base import BaseCrmConnector, PipedriveError
from app.database import Base, SessionLocal, engine, get_db
from app.main import app
from app.services.engine_factory import get_sync_engine, get_sync_engine_opener
from app.services.flow_repository import FlowMetricsRepository
from app.services.status_sink import RepositoryStatusSink
from app.services.sync_service import DealFlowSyncEngine


class FakePipedriveConnector(BaseCrmConnector):
    """In-memory stand-in for Pipedrive recording what the engine asked for."""

    def __init__(self, deals: Optional[List[Dict[str, Any]]] = None, flows: Optional[Dict[int, list]] = None):
        super().__init__({})
        self.deals = deals or []
        self.flows = flows or {}
        self.failing = set()
        self.fetch_error: Optional[Exception] = None
        self.days_requested: List[int] = []
        self.flow_calls: List[int] = []

    async def fetch_all_deals_updated_since(self, days_back: int) -> List[Dict[str, Any]]:
        self.days_requested.append(days_back)
        if self.fetch_error:
            raise self.fetch_error
        return list(self.deals)

    async def fetch_deal_flow(self, deal_id: int) -> List[Dict[str, Any]]:
        self.flow_calls.append(deal_id)
        if deal_id in self.failing:
            raise PipedriveError(f"Pipedrive resource not found: /deals/{deal_id}/flow", 404)
        return list(self.flows.get(deal_id, []))

    async def validate_connection(self) -> bool:
        return True


def stage_event(event_id: int, deal_id: int, stage_id: int, timestamp: str, stage_name: Optional[str] = None) -> Dict[str, Any]:
    """A Pipedrive flow item for a stage change, shaped like /deals/{id}/flow returns it."""
    additional_data = {"new_value_formatted": stage_name} if stage_name else {}
    return {
        "object": "dealChange",
        "timestamp": timestamp,
        "data": {
            "id": event_id,
            "item_id": deal_id,
            "field_key": "stage_id",
            "old_value": str(stage_id - 1),
            "new_value": str(stage_id),
            "additional_data": additional_data,
        },
    }


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db() -> Session:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def repository(db: Session) -> FlowMetricsRepository:
    return FlowMetricsRepository(db)


@pytest.fixture
def fake_connector() -> FakePipedriveConnector:
    return FakePipedriveConnector()


@pytest.fixture
def make_stage_event():
    return stage_event


# Override dependency for test database session (rollback after each request)
def override_get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


@pytest.fixture
def client(fake_connector: FakePipedriveConnector) -> TestClient:
    def fake_engine(db: Session) -> DealFlowSyncEngine:
        repo = FlowMetricsRepository(db)
        return DealFlowSyncEngine(
            connector=fake_connector,
            repository=repo,
            status_sink=RepositoryStatusSink(repo),
            sleep=AsyncMock(),
        )

    async def override_get_sync_engine(db: Session = Depends(get_db)):
        yield fake_engine(db)

    def override_get_sync_engine_opener(db: Session = Depends(get_db)):
        @asynccontextmanager
        async def open_engine():
            yield fake_engine(db)

        return open_engine

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sync_engine] = override_get_sync_engine
    app.dependency_overrides[get_sync_engine_opener] = override_get_sync_engine_opener
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
