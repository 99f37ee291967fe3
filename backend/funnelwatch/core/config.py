"""
Core configuration for FunnelWatch.
Uses Pydantic Settings for environment variable management.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from pydantic import model_validator


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )

    @model_validator(mode="before")
    @classmethod
    def _drop_empty_env_values(cls, data):
        if not isinstance(data, dict):
            return data
        # Hosting platforms sometimes inject empty-string env vars.
        # Treat them as "unset" so typed fields (bool/int/float) don't crash on startup.
        return {key: value for key, value in data.items() if value != ""}

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "info"

    # Database
    DATABASE_URL: str = "postgresql://localhost:5432/funnelwatch"

    # Event source (form/quiz platform)
    EVENT_SOURCE_API_URL: str = "https://api.embeddables.com"
    EVENT_SOURCE_API_KEY: str = ""
    EVENT_SOURCE_PROJECT_ID: str = ""
    # Optional: keep only entries produced by this embeddable (one project can host several).
    EVENT_SOURCE_EMBEDDABLE_ID: str = ""
    EVENT_SOURCE_TIMEOUT_SECONDS: float = 20.0

    # Data sync
    SYNC_PAGE_SIZE: int = 1000
    # Hard cap on records pulled per run, independent of the deadline.
    SYNC_MAX_RECORDS: int = 50000
    # Fetch stage budget. Must leave room inside the host's execution ceiling
    # (a few minutes) for normalize/aggregate/write.
    SYNC_FETCH_DEADLINE_SECONDS: float = 90.0
    # Run-lock lease; an abandoned lease is taken over after this long.
    SYNC_LEASE_SECONDS: int = 300
    SYNC_INTERVAL_MINUTES: int = 30
    DEFAULT_FUNNEL_NAME: str = "Get Thin MD Quiz"
    # Comma-separated step keys that also count as purchase-complete, on top of the catalog.
    PURCHASE_COMPLETE_EXTRA_KEYS: str = "async_confirmation_to_redirect"

    # Auth
    # Bearer token for external schedulers. Same-origin dashboard calls are accepted without it.
    CRON_SECRET: str = ""
    DASHBOARD_URL: str = "http://localhost:3000"
    WEBHOOK_SECRET: str = ""

    # Alert thresholds (percent)
    ALERT_DROP_OFF_VS_PREV_DAY_PCT: float = 15.0
    ALERT_DROP_OFF_VS_7DAY_PCT: float = 10.0
    ALERT_CONVERSION_DROP_VS_PREV_DAY_PCT: float = 20.0
    ALERT_VOLUME_DROP_VS_PREV_DAY_PCT: float = 30.0
    ALERT_CRITICAL_DROP_OFF_PCT: float = 50.0
    ALERT_WARNING_DROP_OFF_PCT: float = 30.0
    ALERT_DEDUP_WINDOW_HOURS: int = 24

    # Notifications
    SLACK_WEBHOOK_URL: str = ""
    SLACK_NOTIFY_TIMEOUT_SECONDS: float = 10.0


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
