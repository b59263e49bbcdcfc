"""
Configuration settings for the triple-helix engine.

Uses Pydantic Settings for environment variable management with .env file support.
Every variable is prefixed with ``TRIPLE_HELIX_``.
"""
from __future__ import annotations

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .domain import MAX_COMPLETION_HISTORY


class SyncPolicy(str, Enum):
    """When tube state is pushed to the remote repository."""

    LOCAL_ONLY = "local_only"
    EVERY_COMPLETION = "every_completion"
    SESSION_END = "session_end"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="TRIPLE_HELIX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ─── Content network tier ───────────────────────────────────────────────
    content_api_url: Optional[str] = Field(
        default=None,
        description="Base URL of the content server; unset keeps the resolver offline",
    )
    content_api_key: Optional[str] = Field(default=None, description="Bearer token for the content server")
    request_timeout_seconds: float = Field(default=10.0, gt=0)
    retry_attempts: int = Field(default=3, ge=1)

    # ─── Content buffer ─────────────────────────────────────────────────────
    prefetch_window: int = Field(default=5, ge=0, description="Stitches kept warm ahead of the learner")
    offline_only: bool = Field(
        default=False,
        description="Restrict the session to bundled and cached content (free tier)",
    )

    # ─── Persistence ────────────────────────────────────────────────────────
    sync_policy: SyncPolicy = Field(
        default=SyncPolicy.LOCAL_ONLY,
        description="local_only, every_completion or session_end",
    )
    database_path: Path = Field(default=Path("triple_helix.db"))
    remote_state_dir: Optional[Path] = Field(
        default=None,
        description="Directory standing in for server-side state storage",
    )
    completion_history_limit: int = Field(
        default=MAX_COMPLETION_HISTORY,
        ge=1,
        description="Completion records kept in persisted state",
    )

    # ─── Logging ────────────────────────────────────────────────────────────
    log_level: Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


__all__ = ["Settings", "SyncPolicy", "get_settings"]
