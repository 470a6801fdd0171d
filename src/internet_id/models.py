"""Pydantic models for configuration and validation."""

from typing import Optional

from pydantic import BaseModel, Field, model_validator


class RetryPolicy(BaseModel):
    """Retry and exponential backoff schedule for failed job executions."""

    max_attempts: int = Field(
        default=3, ge=1, description="Unit-of-work executions allowed before a job fails"
    )
    base_delay_s: float = Field(
        default=5.0, ge=0.0, description="Delay before the first retry in seconds"
    )
    multiplier: float = Field(default=2.0, ge=1.0, description="Growth factor per attempt")
    max_delay_s: float = Field(
        default=300.0, ge=0.0, description="Upper bound for any single retry delay"
    )

    @model_validator(mode="after")
    def cap_covers_base(self) -> "RetryPolicy":
        if self.max_delay_s < self.base_delay_s:
            raise ValueError(
                f"max_delay_s ({self.max_delay_s}) must be >= base_delay_s ({self.base_delay_s})"
            )
        return self

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given (1-based) failed attempt."""
        if attempt < 1:
            return 0.0
        return min(self.base_delay_s * (self.multiplier ** (attempt - 1)), self.max_delay_s)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts


class QueueConfig(BaseModel):
    """Queue backend and worker pool settings."""

    url: Optional[str] = Field(
        default=None,
        description="Queue backend location (redis://, rediss://, sqlite:///). Unset = sync mode",
    )
    workers: int = Field(default=3, ge=1, description="Number of concurrent worker threads")
    poll_timeout_s: float = Field(
        default=1.0, gt=0.0, description="How long a worker blocks waiting for a job"
    )
    health_ttl_s: float = Field(
        default=5.0, ge=0.0, description="How long a backend health check result is reused"
    )
    max_idle_backoff_s: float = Field(
        default=15.0, gt=0.0, description="Cap on worker sleep while the backend is down"
    )
    stalled_job_timeout_s: Optional[float] = Field(
        default=None,
        gt=0.0,
        description="Requeue processing jobs with no update for this long (None = disabled)",
    )
    watchdog_interval_s: float = Field(
        default=60.0, gt=0.0, description="How often the stalled-job watchdog runs"
    )
    retry: RetryPolicy = Field(default_factory=RetryPolicy)


class DatabaseConfig(BaseModel):
    """Job record store settings."""

    url: str = Field(
        default="sqlite:///./internet_id.db", description="SQLAlchemy database URL"
    )


class VerificationConfig(BaseModel):
    """Settings for the verify/proof unit of work."""

    ipfs_gateway: str = Field(
        default="https://ipfs.io", description="Gateway used to resolve ipfs:// manifests"
    )
    http_timeout_s: float = Field(default=15.0, gt=0.0, description="Manifest fetch timeout")
    default_registry_address: Optional[str] = Field(
        default=None, description="Registry used when a request does not name one"
    )


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", description="Root log level for the internet_id logger")


class AppConfig(BaseModel):
    """Complete application configuration with validation."""

    queue: QueueConfig = Field(default_factory=QueueConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "AppConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)
