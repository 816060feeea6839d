"""
Runtime configuration for the chat synchronisation service.

Loads DATABASE_URL, backend credentials and sync tuning knobs from the
environment, falling back to the .env file in the project root.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root
BASE_DIR = Path(__file__).resolve().parents[1]

# Absolute path to .env
ENV_PATH = BASE_DIR / ".env"

# Load .env defaults without overriding environment variables provided by the platform
load_dotenv(dotenv_path=ENV_PATH, override=False)


class Settings(BaseSettings):
    app_name: str = Field(default="Chat Sync", alias="APP_NAME")
    api_version: str = Field(default="0.1.0", alias="API_VERSION")
    database_url: str = Field(default="sqlite+pysqlite:///./chatsync.db", alias="DATABASE_URL")
    cors_origins: str | None = Field(default=None, alias="CORS_ORIGINS")

    # Which backing service the coordinator talks to
    chat_backend: Literal["local", "supabase"] = Field(default="local", alias="CHAT_BACKEND")
    supabase_url: str | None = Field(default=None, alias="SUPABASE_URL")
    supabase_anon_key: str | None = Field(default=None, alias="SUPABASE_ANON_KEY")
    supabase_timeout: float = Field(default=10.0, alias="SUPABASE_TIMEOUT")
    realtime_heartbeat_seconds: float = Field(default=25.0, alias="REALTIME_HEARTBEAT_SECONDS")

    # Synchronisation tuning
    retry_max_attempts: int = Field(default=3, ge=1, alias="RETRY_MAX_ATTEMPTS")
    retry_base_delay: float = Field(default=1.0, gt=0, alias="RETRY_BASE_DELAY")
    subscription_setup_timeout: float = Field(default=10.0, gt=0, alias="SUBSCRIPTION_SETUP_TIMEOUT")
    history_page_size: int | None = Field(default=None, ge=1, alias="HISTORY_PAGE_SIZE")

    # Identity
    jwt_secret_key: str | None = Field(default=None, alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    jwt_expires_minutes: int = Field(default=1440, alias="JWT_EXPIRES_MINUTES")

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings"]
