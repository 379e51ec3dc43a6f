from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional


class PipedriveError(Exception):
    """Raised when the CRM API call fails or reports an unsuccessful payload."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def parse_pipedrive_timestamp(value: str) -> datetime:
    """
    Parse a Pipedrive timestamp into an aware UTC datetime.
    Pipedrive returns 'YYYY-MM-DD HH:MM:SS' in UTC; ISO-8601 with offset or 'Z' is accepted too.
    """
    dt = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class BaseCrmConnector(ABC):
    """Abstract Base Class for CRM connectors feeding the deal flow sync."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config

    @abstractmethod
    async def fetch_all_deals_updated_since(self, days_back: int) -> List[Dict[str, Any]]:
        """Fetches all deals updated within the last `days_back` days."""
        pass

    @abstractmethod
    async def fetch_deal_flow(self, deal_id: int) -> List[Dict[str, Any]]:
        """Fetches the raw flow (change log) events of a single deal."""
        pass

    @abstractmethod
    async def validate_connection(self) -> bool:
        """Validates the connection to the external system."""
        pass

    async def close(self) -> None:
        """Releases network resources held by the connector."""
        pass
