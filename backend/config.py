"""
Recon Core - Configuration Management

Centralized configuration for the matching engine, the task queue runtime
and the worker process. All values come from environment variables (or a
local .env file) and are validated by pydantic-settings.
"""

from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production"
    )
    SERVICE_NAME: str = Field(
        default="recon-core",
        description="Service name attached to every log line"
    )

    # ==================== DATABASE ====================
    DATABASE_URL: str = Field(
        default="",
        description="Async SQLAlchemy URL, e.g. postgresql+asyncpg://... (required)"
    )
    DATABASE_POOL_SIZE: int = Field(default=5)
    DATABASE_MAX_OVERFLOW: int = Field(default=10)

    # ==================== OBSERVABILITY ====================
    SENTRY_DSN: str = Field(
        default="",
        description="Sentry DSN for error tracking"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )
    LOG_JSON: bool = Field(
        default=True,
        description="Emit JSON log lines (disable for local development)"
    )

    # ==================== MATCHING ====================
    AUTO_MATCH_THRESHOLD: float = Field(
        default=0.9,
        description="Minimum confidence for committing a match without review"
    )
    SUGGEST_MATCH_THRESHOLD: float = Field(
        default=0.5,
        description="Minimum confidence for creating a suggestion"
    )
    AUTO_MATCH_MARGIN: float = Field(
        default=0.05,
        description="Runner-up within this margin of the top score blocks auto-matching"
    )
    MATCH_DATE_WINDOW_DAYS: int = Field(
        default=45,
        description="Candidates further than this from the anchor date are ignored"
    )
    MAX_SUGGESTIONS: int = Field(
        default=3,
        description="Suggestions persisted per anchor"
    )
    SMALL_BATCH_THRESHOLD: int = Field(
        default=10,
        description="Explicit document lists up to this size go into a single job"
    )
    BATCH_CHUNK_SIZE: int = Field(
        default=10,
        description="Shard size for larger document lists"
    )
    SWEEP_PAGE_SIZE: int = Field(
        default=50,
        description="Pending documents picked up per sweep"
    )

    # ==================== QUEUE ====================
    MATCHING_QUEUE_NAME: str = Field(default="transaction-matching")
    MATCHING_QUEUE_CONCURRENCY: int = Field(
        default=20,
        description="Jobs executed at once on the matching queue"
    )
    JOB_ATTEMPTS: int = Field(default=3)
    JOB_BACKOFF_SECONDS: float = Field(
        default=2.0,
        description="First retry delay; doubles on every further attempt"
    )
    JOB_MAX_DURATION_SECONDS: float = Field(default=180.0)
    KEEP_COMPLETED_COUNT: int = Field(default=50)
    KEEP_COMPLETED_SECONDS: int = Field(default=24 * 3600)
    KEEP_FAILED_COUNT: int = Field(default=50)
    KEEP_FAILED_SECONDS: int = Field(default=7 * 24 * 3600)

    # ==================== WORKER ====================
    WORKER_POLL_INTERVAL_SECONDS: float = Field(default=1.0)
    SWEEP_INTERVAL_SECONDS: int = Field(
        default=600,
        description="Seconds between periodic sweeps of pending documents (0 disables)"
    )

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if not self.DATABASE_URL:
            errors.append("DATABASE_URL is required")

        if not 0.0 < self.SUGGEST_MATCH_THRESHOLD <= self.AUTO_MATCH_THRESHOLD <= 1.0:
            errors.append("Thresholds must satisfy 0 < SUGGEST_MATCH_THRESHOLD <= AUTO_MATCH_THRESHOLD <= 1")

        if self.AUTO_MATCH_THRESHOLD < 0.9:
            errors.append("AUTO_MATCH_THRESHOLD below 0.9 would auto-commit medium confidence matches")

        if self.MATCHING_QUEUE_CONCURRENCY < 1:
            errors.append("MATCHING_QUEUE_CONCURRENCY must be at least 1")

        if self.is_production:
            if "sqlite" in self.DATABASE_URL.lower():
                errors.append("DATABASE_URL cannot point to SQLite in production")

        return errors


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the process lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")

    errors = settings.validate_production_config()
    if errors and settings.is_production:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings
