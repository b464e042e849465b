"""Settings management.

WHAT:
    Typed application settings loaded from the environment or a local .env.

WHY:
    Single place for every tunable of the sync engine (rate-limit threshold,
    chunk sizes, batch sizes, platform endpoints) so workers and tests build
    the engine from the same source.
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379/0"

    # Facebook Graph API
    FACEBOOK_GRAPH_URL: str = "https://graph.facebook.com/v19.0"
    FACEBOOK_PAGE_LIMIT: int = 1000
    FACEBOOK_REQUEST_TIMEOUT: float = 60.0

    # Rate limiting (utilization percent reported by the platform)
    RATE_LIMIT_THRESHOLD: float = 70.0
    RATE_LIMIT_PAUSE_SECONDS: float = 30.0

    # Sync tuning
    INSIGHTS_AD_CHUNK_SIZE: int = 50
    CREATIVE_CHUNK_SIZE: int = 50
    ACCOUNT_BATCH_SIZE: int = 3
    INCREMENTAL_SKEW_SECONDS: int = 3600  # 1 hour of negative skew on incremental syncs
    DEFAULT_TIMEZONE: str = "Asia/Ho_Chi_Minh"

    # Observability
    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]
