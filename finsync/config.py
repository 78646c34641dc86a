"""Application configuration using pydantic-settings."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Supabase
    supabase_url: str
    supabase_secret_key: str  # Service key; the sync engine writes on behalf of all users

    # Plaid
    plaid_client_id: str
    plaid_secret: str
    plaid_env: str = "sandbox"  # sandbox, development, production
    plaid_page_size: int = 500  # transactions/get page size (Plaid max is 500)

    # App
    app_name: str = "FinSync"
    app_env: str = "development"
    debug: bool = True

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # API
    api_v1_prefix: str = "/app/v1"

    # Sync engine
    sync_interval_seconds: float = 15 * 60  # Staleness window and scanner tick
    sync_max_concurrent_jobs: int = 3
    sync_window_hours: int = 72  # Incremental lookback when a connection never synced
    full_sync_days: int = 30
    stale_batch_size: int = 10  # Connections enqueued per scanner tick
    background_max_retries: int = 2
    default_max_retries: int = 3
    retry_base_delay_seconds: float = 1.0  # Backoff is base * 2 ** retry_count
    shutdown_timeout_seconds: float = 30.0
    job_retention_hours: float = 24.0
    conflict_strategy: Literal["plaid_wins", "database_wins", "merge", "manual"] = (
        "plaid_wins"
    )
    enable_background_sync: bool = True

    # Cron Jobs
    enable_cron_jobs: bool = True  # Enable/disable the job-retention cleanup task
    job_cleanup_interval_seconds: int = 60 * 60

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
