"""
Configuration settings for the triple-helix scheduler.

Uses Pydantic Settings for environment variable management with .env file support.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Persistence
    # ========================================
    state_backend: Literal["json", "sql"] = Field(
        default="json",
        description="Where learner state is stored: JSON files or SQL database",
    )
    state_dir: Path = Field(
        default=Path.home() / ".helix" / "state",
        description="Directory for JSON state files",
    )
    database_url: str = Field(
        default="sqlite:///helix.db",
        description="SQLAlchemy connection string for the SQL backend",
    )

    # ========================================
    # Content Provider
    # ========================================
    content_api_url: str | None = Field(
        default=None,
        description="Base URL of the content service (built-in sequence pool when unset)",
    )
    content_api_key: str | None = Field(
        default=None,
        description="API key sent as X-API-Key to the content service",
    )
    content_api_timeout: float = Field(
        default=10.0,
        description="Content service request timeout in seconds",
    )
    stitches_per_tube: int = Field(
        default=50,
        ge=1,
        description="Size of each tube's built-in stitch pool",
    )

    # ========================================
    # Scheduler Behaviour
    # ========================================
    allow_promotion_fallback: bool = Field(
        default=True,
        description="Promote the lowest waiting stitch when no new content is available",
    )
    completion_history_limit: int = Field(
        default=500,
        ge=0,
        description="Completion records kept per learner",
    )
    default_user_id: str = Field(
        default="anonymous",
        description="Learner used by the CLI when --user is not given",
    )

    # ========================================
    # Logging
    # ========================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional log file path (rotated at 10 MB)",
    )

    def has_content_api(self) -> bool:
        """Check if a remote content service is configured."""
        return bool(self.content_api_url)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
