import httpx
import logging
from typing import Dict, Any, List, Optional
from datetime import datetime, timedelta, timezone

from app.connectors.base import BaseCrmConnector, PipedriveError, parse_pipedrive_timestamp

log = logging.getLogger(__name__)


class PipedriveConnector(BaseCrmConnector):
    """
    Connector for the Pipedrive CRM.
    Handles paging through deals and per-deal flow (change log) events.
    """

    DEFAULT_PAGE_LIMIT = 500

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.base_url = self.config["base_url"].rstrip("/")
        self.api_token = self.config["api_token"]
        self.page_limit = int(self.config.get("page_limit") or self.DEFAULT_PAGE_LIMIT)
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=30)
        self.headers = {"Accept": "application/json"}
        log.info(f"Pipedrive connector initialized with base URL: {self.base_url}")

    async def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> Dict[str, Any]:
        """Helper to make authenticated requests to the Pipedrive API."""
        log.debug(f"Pipedrive API {method} {path} with params: {params or 'none'}")
        query = dict(params or {})
        query["api_token"] = self.api_token
        try:
            response = await self.client.request(method, path, params=query, headers=self.headers, **kwargs)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            log.error(f"Pipedrive HTTP error for {path}: {status} - {e.response.text[:200]}")
            if status == 401:
                raise PipedriveError("Pipedrive API authentication failed. Check your API token.", status) from e
            if status == 404:
                raise PipedriveError(f"Pipedrive resource not found: {path}", status) from e
            if status == 429:
                raise PipedriveError("Pipedrive API rate limit exceeded", status) from e
            raise PipedriveError(f"Pipedrive API error: {status}", status) from e
        except httpx.RequestError as e:
            log.error(f"Pipedrive request error for {path}: {e}")
            raise PipedriveError(f"Failed to call Pipedrive API: {e}") from e

        if not payload.get("success", True):
            raise PipedriveError(payload.get("error") or f"Pipedrive API call to {path} was not successful")
        return payload

    async def _iter_pages(self, path: str, params: Optional[Dict[str, Any]] = None):
        """Yields the `data` list of each page until the collection is exhausted."""
        start = 0
        while True:
            page_params = dict(params or {})
            page_params.update({"start": start, "limit": self.page_limit})
            payload = await self._request("GET", path, params=page_params)
            yield payload.get("data") or []

            pagination = (payload.get("additional_data") or {}).get("pagination") or {}
            if not pagination.get("more_items_in_collection"):
                break
            start = pagination.get("next_start")
            if start is None:
                break

    async def fetch_all_deals_updated_since(self, days_back: int) -> List[Dict[str, Any]]:
        """
        Fetches non-deleted deals whose update_time falls within the last `days_back` days.
        Deals are requested newest first, so paging stops at the first page reaching older deals.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=days_back)
        log.info(f"Fetching Pipedrive deals updated since {cutoff.isoformat()} ({days_back} days back)")

        deals: List[Dict[str, Any]] = []
        params = {"status": "all_not_deleted", "sort": "update_time DESC"}
        async for page in self._iter_pages("/deals", params):
            reached_cutoff = False
            for deal in page:
                update_time = deal.get("update_time")
                if update_time and parse_pipedrive_timestamp(update_time) < cutoff:
                    reached_cutoff = True
                    continue
                deals.append(deal)
            if reached_cutoff:
                break

        log.info(f"Found {len(deals)} deals updated in the last {days_back} days")
        return deals

    async def fetch_deal_flow(self, deal_id: int) -> List[Dict[str, Any]]:
        """Fetches all flow events (field changes, activities, notes...) of a deal."""
        events: List[Dict[str, Any]] = []
        async for page in self._iter_pages(f"/deals/{deal_id}/flow"):
            events.extend(page)
        log.debug(f"Deal {deal_id} has {len(events)} flow events")
        return events

    async def validate_connection(self) -> bool:
        try:
            payload = await self._request("GET", "/users/me")
            user = payload.get("data") or {}
            log.info(f"Pipedrive connection validated for user {user.get('email', 'unknown')}")
            return True
        except PipedriveError as e:
            log.warning(f"Pipedrive connection validation failed: {e}")
            return False

    async def close(self) -> None:
        await self.client.aclose()
