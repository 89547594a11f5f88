"""Application settings loaded from environment variables."""

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DetectionSettings(BaseModel):
    """Configuration for risk aggregation and threat classification."""

    analyzer_deadline_seconds: float = 2.0
    """Bounded wait for all analyzers of one event."""

    # Score combination
    diminishing_decay: float = 0.5
    """Weight multiplier applied to each successive (lower) factor score."""

    critical_floor: int = 75
    """Minimum overall score when any CRITICAL factor is present."""

    # Threat level bands (inclusive upper bounds, CRITICAL runs to 100)
    low_max: int = 24
    medium_max: int = 49
    high_max: int = 74


class ResponseSettings(BaseModel):
    """Configuration for response case execution."""

    executor_max_attempts: int = 3
    """Executor calls per step before the step is marked FAILED."""

    executor_backoff_base_seconds: float = 0.5
    executor_backoff_max_seconds: float = 5.0

    default_approval_timeout_seconds: float = 900.0
    """Approval window used when a step does not define its own."""

    retained_terminal_cases: int = 1000
    """Finished cases kept in memory; older ones are rebuilt from the audit log on lookup."""

    # Outbound webhooks (log-only executor and in-memory approvals when unset)
    executor_webhook_url: str | None = None
    approval_webhook_url: str | None = None
    webhook_timeout_seconds: float = 10.0


class AuditSettings(BaseModel):
    """Configuration for audit write retries."""

    retry_base_seconds: float = 0.2
    retry_max_seconds: float = 30.0

    alert_after_failures: int = 5
    """Consecutive write failures before the writer escalates to the operator."""


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Application Configuration
    ENVIRONMENT: Literal["development", "test", "staging", "production"] = "development"
    DEBUG: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # Persistence
    DATABASE_URL: str = "sqlite+aiosqlite:///./warden.db"
    """SQLAlchemy async URL, or ``memory://`` for a non-durable in-memory audit store."""
    DATABASE_POOL_SIZE: int = 5
    PLAYBOOK_PATH: str | None = None

    # API
    API_SECRET_KEY: SecretStr | None = None

    # Lifecycle
    SHUTDOWN_DRAIN_SECONDS: float = 10.0

    # Component configuration
    detection: DetectionSettings = DetectionSettings()
    response: ResponseSettings = ResponseSettings()
    audit: AuditSettings = AuditSettings()


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
