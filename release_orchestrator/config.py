"""Configuration settings for release_orchestrator.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_artifacts_dir() -> Path:
    """Return the default artifact storage directory."""
    return Path.home() / ".local" / "share" / "release-orchestrator" / "artifacts"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "release-orchestrator" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the RELEASE_ORCH_
    prefix. CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="RELEASE_ORCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    artifacts_dir: Path = Field(
        default_factory=_default_artifacts_dir,
        description="Root directory for the filesystem artifact store",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # External build provider
    provider_base_url: str = Field(
        default="https://api.expo.dev/v2",
        description="Base URL of the external build provider API",
    )
    provider_token: str = Field(
        default="",
        description="Bearer token for the build provider",
    )
    provider_timeout: float = Field(
        default=120.0,
        gt=0,
        description="Per-call timeout for provider requests (seconds)",
    )
    storage_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Per-call timeout for artifact storage operations (seconds)",
    )
    signed_url_ttl: int = Field(
        default=3600,
        ge=60,
        description="Default lifetime of signed artifact URLs (seconds)",
    )

    # Webhooks
    webhook_secret: str = Field(
        default="",
        description="Shared secret used to verify provider webhook signatures",
    )
    storage_signing_key: str = Field(
        default="",
        description="Key for signing artifact download URLs (random per process if empty)",
    )

    # Validation
    skip_validation: bool = Field(
        default=False,
        description="Bypass pre-build validation (emergency builds only)",
    )
    validation_timeout: int = Field(
        default=300,
        ge=10,
        description="Timeout for each validation stage (seconds)",
    )
    validation_output_limit: int = Field(
        default=500,
        ge=50,
        description="Characters of raw output kept for unparseable failures",
    )

    # Job queue and worker pool
    worker_concurrency: int = Field(
        default=3,
        ge=1,
        le=32,
        description="Number of worker threads processing build jobs",
    )
    worker_rate_limit_per_minute: int = Field(
        default=10,
        ge=1,
        description="Global ceiling of jobs started per minute",
    )
    worker_poll_interval: float = Field(
        default=1.0,
        gt=0,
        description="Idle wait between queue checks (seconds)",
    )
    job_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts before a job is failed terminally",
    )
    job_backoff_base: float = Field(
        default=5.0,
        ge=0,
        description="Base delay for job retry backoff (seconds)",
    )
    job_timeout: int = Field(
        default=600,
        ge=10,
        description="Age after which an active job is considered stale (seconds)",
    )
    completed_job_retention_hours: int = Field(
        default=24,
        ge=1,
        description="How long completed jobs are kept",
    )
    failed_job_retention_days: int = Field(
        default=7,
        ge=1,
        description="How long failed jobs are kept",
    )
    sweep_interval: int = Field(
        default=600,
        ge=1,
        description="Interval of the job retention sweep (seconds)",
    )
    shutdown_grace_period: float = Field(
        default=30.0,
        ge=0,
        description="Time allowed for in-flight jobs at shutdown (seconds)",
    )
    embedded_workers: bool = Field(
        default=True,
        description="Run the worker pool inside the API process",
    )

    # Status poller
    poll_interval: float = Field(
        default=30.0,
        gt=0,
        description="Interval between provider status polls (seconds)",
    )
    poll_max_attempts: int = Field(
        default=120,
        ge=1,
        description="Maximum polls per build before giving up",
    )
    poll_timeout: int = Field(
        default=3600,
        ge=60,
        description="Maximum polling duration per build (seconds)",
    )

    # Resilience
    breaker_failure_threshold: int = Field(
        default=5,
        ge=1,
        description="Consecutive failures before a circuit opens",
    )
    breaker_reset_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Time an open circuit waits before a trial call (seconds)",
    )
    breaker_success_threshold: int = Field(
        default=2,
        ge=1,
        description="Consecutive half-open successes that close a circuit",
    )
    retry_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per outbound call",
    )
    retry_initial_delay: float = Field(
        default=1.0,
        ge=0,
        description="First retry delay (seconds)",
    )
    retry_max_delay: float = Field(
        default=30.0,
        ge=0,
        description="Upper bound on retry delay (seconds)",
    )
    retry_multiplier: float = Field(
        default=2.0,
        ge=1,
        description="Exponential backoff multiplier",
    )
    retry_jitter: float = Field(
        default=0.1,
        ge=0,
        le=1,
        description="Symmetric jitter fraction applied to retry delays",
    )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    The provider token, webhook secret and signing key are masked.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    masked = {
        "provider_token": "***" if settings.provider_token else "",
        "webhook_secret": "***" if settings.webhook_secret else "",
        "storage_signing_key": "***" if settings.storage_signing_key else "",
    }
    return settings.model_copy(update=masked).model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
