"""Application configuration management."""

import secrets
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


# Fallback session secret (generated once per process)
_ephemeral_session_secret: Optional[str] = None


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_path: str = "/data/aisle-calendar.db"

    # Server
    public_url: str = "http://localhost:3000"
    log_level: str = "info"

    # Session
    session_secret_key: Optional[str] = None
    session_expire_days: int = 7

    # Google OAuth client
    google_client_id: str = ""
    google_client_secret: str = ""

    # Token refresh
    token_refresh_max_retries: int = 3
    token_refresh_minutes: int = 30

    # Google Calendar API
    calendar_time_zone: str = "UTC"
    provider_max_retries: int = 3
    provider_request_timeout_seconds: float = 30.0
    dedicated_calendar_suffix: str = "'s Wedding"
    dedicated_calendar_default_name: str = "Wedding Planning"

    # Sync settings
    sync_interval_minutes: int = 15
    sync_timeout_seconds: float = 300.0
    sync_window_past_days: int = 730
    sync_window_future_days: int = 730
    sync_max_results: int = 2500

    # Retention
    sync_log_retention_days: int = 90

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def get_session_secret() -> str:
    """Get session secret key, generating a per-process one if not configured."""
    settings = get_settings()
    if settings.session_secret_key:
        return settings.session_secret_key

    # Sessions will not survive a restart without SESSION_SECRET_KEY
    global _ephemeral_session_secret
    if _ephemeral_session_secret is None:
        _ephemeral_session_secret = secrets.token_urlsafe(32)
    return _ephemeral_session_secret
