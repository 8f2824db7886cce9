"""Configuration management using Pydantic Settings."""

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="SCE_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    database_path: Path = Field(Path("data") / "screening.db")
    sqlite_busy_timeout: float = Field(30.0, gt=0, description="Seconds to wait on a locked database")

    # Logging
    log_level: str = Field("INFO")
    log_format: str = Field("json", pattern="^(json|text)$")

    # Screening defaults
    default_reviewers_required: int = Field(2, ge=1, le=10)
    default_queue_limit: int = Field(20, ge=1, le=500)
    balanced_confidence_split: float = Field(
        0.7,
        ge=0.0,
        le=1.0,
        description="AI confidence at or above which a study counts as high-confidence",
    )

    # Priority scoring
    priority_base_score: int = Field(50, ge=0, le=100)

    # Retry configuration for lock contention
    lock_retry_attempts: int = Field(5, ge=1, le=20)
    lock_retry_wait: float = Field(0.05, gt=0)
    lock_retry_max_wait: float = Field(2.0, gt=0)

    # Background work
    sweep_interval_minutes: int = Field(15, ge=1)
    ingestion_source: str = Field("screening")
    ingestion_spool_path: Optional[Path] = Field(
        None, description="JSON-lines file receiving ingestion jobs; jobs stay in memory when unset"
    )

    @field_validator("database_path")
    @classmethod
    def _create_parent(cls, v: Path) -> Path:
        v.parent.mkdir(parents=True, exist_ok=True)
        return v


# Instantiate global settings
settings = Settings()
