from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio

from app.connectors.base import PipedriveError, parse_pipedrive_timestamp
from app.connectors.pipedrive_connector import PipedriveConnector


def pipedrive_response(data, more=False, next_start=None, status_code=200, success=True):
    body = {"success": success, "data": data}
    if more or next_start is not None:
        body["additional_data"] = {"pagination": {"more_items_in_collection": more, "next_start": next_start}}
    return httpx.Response(status_code, json=body, request=httpx.Request("GET", "https://api.pipedrive.com/v1/x"))


def stamp(days_ago: float) -> str:
    return (datetime.now(timezone.utc) - timedelta(days=days_ago)).strftime("%Y-%m-%d %H:%M:%S")


@pytest_asyncio.fixture
async def connector():
    connector = PipedriveConnector({"base_url": "https://api.pipedrive.com/v1/", "api_token": "secret-token", "page_limit": 2})
    yield connector
    await connector.close()


def test_parse_pipedrive_timestamp():
    assert parse_pipedrive_timestamp("2024-01-01 10:00:00") == datetime(2024, 1, 1, 10, tzinfo=timezone.utc)
    assert parse_pipedrive_timestamp("2024-01-01T12:00:00+02:00") == datetime(2024, 1, 1, 10, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_fetch_deal_flow_follows_pagination(connector):
    pages = [
        pipedrive_response([{"id": 1}, {"id": 2}], more=True, next_start=2),
        pipedrive_response([{"id": 3}], more=False),
    ]
    with patch.object(connector.client, "request", AsyncMock(side_effect=pages)) as mock_request:
        events = await connector.fetch_deal_flow(42)

    assert [e["id"] for e in events] == [1, 2, 3]
    assert mock_request.await_count == 2
    first, second = mock_request.await_args_list
    assert first.args == ("GET", "/deals/42/flow")
    assert first.kwargs["params"] == {"start": 0, "limit": 2, "api_token": "secret-token"}
    assert second.kwargs["params"]["start"] == 2


@pytest.mark.asyncio
async def test_fetch_deals_stops_at_cutoff(connector):
    pages = [
        pipedrive_response([{"id": 1, "update_time": stamp(1)}, {"id": 2, "update_time": stamp(3)}], more=True, next_start=2),
        pipedrive_response([{"id": 3, "update_time": stamp(4)}, {"id": 4, "update_time": stamp(10)}], more=True, next_start=4),
        pipedrive_response([{"id": 5, "update_time": stamp(20)}], more=False),
    ]
    with patch.object(connector.client, "request", AsyncMock(side_effect=pages)) as mock_request:
        deals = await connector.fetch_all_deals_updated_since(7)

    assert [d["id"] for d in deals] == [1, 2, 3]
    assert mock_request.await_count == 2
    params = mock_request.await_args_list[0].kwargs["params"]
    assert params["status"] == "all_not_deleted"
    assert params["sort"] == "update_time DESC"


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code,message", [
    (401, "authentication failed"),
    (404, "not found"),
    (429, "rate limit exceeded"),
    (500, "Pipedrive API error: 500"),
])
async def test_http_errors_are_mapped(connector, status_code, message):
    response = pipedrive_response(None, status_code=status_code)
    with patch.object(connector.client, "request", AsyncMock(return_value=response)):
        with pytest.raises(PipedriveError, match=message) as exc_info:
            await connector.fetch_deal_flow(42)
    assert exc_info.value.status_code == status_code


@pytest.mark.asyncio
async def test_unsuccessful_payload_raises(connector):
    response = pipedrive_response(None, success=False)
    with patch.object(connector.client, "request", AsyncMock(return_value=response)):
        with pytest.raises(PipedriveError):
            await connector.fetch_deal_flow(42)


@pytest.mark.asyncio
async def test_network_error_raises_pipedrive_error(connector):
    error = httpx.ConnectError("connection refused")
    with patch.object(connector.client, "request", AsyncMock(side_effect=error)):
        with pytest.raises(PipedriveError, match="Failed to call Pipedrive API"):
            await connector.fetch_deal_flow(42)


@pytest.mark.asyncio
async def test_validate_connection(connector):
    ok = pipedrive_response({"email": "sales@example.com"})
    with patch.object(connector.client, "request", AsyncMock(return_value=ok)):
        assert await connector.validate_connection() is True

    denied = pipedrive_response(None, status_code=401)
    with patch.object(connector.client, "request", AsyncMock(return_value=denied)):
        assert await connector.validate_connection() is False
