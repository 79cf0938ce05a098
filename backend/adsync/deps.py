"""Dependency providers and settings management."""

import secrets
from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict

from .database import get_db  # noqa: F401  (re-exported for routers)


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    # Redis (arq job queue)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Meta Marketing API
    META_APP_ID: Optional[str] = None
    META_APP_SECRET: Optional[str] = None
    META_GRAPH_API_VERSION: str = "v21.0"

    # Google Ads API
    GOOGLE_DEVELOPER_TOKEN: Optional[str] = None
    GOOGLE_CLIENT_ID: Optional[str] = None
    GOOGLE_CLIENT_SECRET: Optional[str] = None
    GOOGLE_LOGIN_CUSTOMER_ID: Optional[str] = None

    # Shared secret for the external cron trigger
    CRON_SECRET: Optional[str] = None

    # Scheduling
    SYNC_MIN_INTERVAL_MINUTES: int = 50  # < 60 to tolerate scheduler jitter
    SYNC_MAX_PARALLEL: int = 5
    SYNC_STALE_LOCK_MINUTES: int = 30

    # Token lifecycle
    TOKEN_REFRESH_THRESHOLD_DAYS: int = 7

    # Insight windows
    INCREMENTAL_SYNC_DAYS: int = 2
    FULL_SYNC_DAYS: int = 30

    # Provider call policy
    PROVIDER_MAX_ATTEMPTS: int = 4
    PROVIDER_BACKOFF_SECONDS: float = 1.0
    PROVIDER_MAX_BACKOFF_SECONDS: float = 60.0
    PROVIDER_REQUEST_TIMEOUT_SECONDS: float = 30.0

    # Retention
    CHANGE_HISTORY_RETENTION_DAYS: int = 365

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def verify_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
    """Guard for the externally triggered cron endpoint.

    Expects `Authorization: Bearer <CRON_SECRET>`. When no secret is
    configured the endpoint is closed.
    """
    expected = get_settings().CRON_SECRET
    if not expected:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Cron trigger not configured")

    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing cron credentials")

    provided = authorization[len("Bearer "):]
    if not secrets.compare_digest(provided, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron credentials")
