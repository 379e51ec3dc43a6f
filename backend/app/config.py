"""Application configuration management."""

from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if self.debug and self.log_level.upper() != "TRACE":
            self.log_level = "DEBUG"

    # Database
    database_url: str

    # CORS
    cors_origins: str = "http://localhost:3000"

    # Application
    debug: bool = False
    log_level: str = "INFO"
    api_v1_str: str = "/api/v1"

    # Pipedrive
    pipedrive_api_token: str = ""
    pipedrive_base_url: str = "https://api.pipedrive.com/v1"
    pipedrive_page_limit: int = 500
    pipedrive_rate_limit_requests: int = 40  # Pipedrive allows 40 requests per 2 seconds
    pipedrive_rate_limit_window_ms: int = 2000

    # Shared secrets (cron triggers fail open when unset, the webhook does not)
    cron_secret: Optional[str] = None
    pipedrive_webhook_secret: Optional[str] = None

    # Scheduler (cron expressions are evaluated in UTC)
    scheduler_enabled: bool = False
    full_sync_cron: str = "0 2 * * *"
    incremental_sync_cron: str = "0 */6 * * *"

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def pipedrive_config(self) -> dict:
        """Connector config built from settings."""
        return {
            "base_url": self.pipedrive_base_url,
            "api_token": self.pipedrive_api_token,
            "page_limit": self.pipedrive_page_limit,
        }


# Global settings instance
settings = Settings()
