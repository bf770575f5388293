"""Settlement engine configuration."""
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Worker settings, read from the environment or a .env file."""

    # App
    app_env: str = "development"
    app_debug: bool = False
    log_level: str = "INFO"
    json_logs: bool = False

    # Database - required
    database_url: str = Field(
        ...,
        description="Database connection URL (required)",
    )
    db_pool_size: int = Field(
        default=10,
        description="DB connection pool size",
    )
    db_max_overflow: int = Field(
        default=5,
        description="Max overflow connections",
    )
    db_pool_recycle: int = Field(
        default=1800,
        description="Connection recycle time in seconds",
    )

    # Redis - optional; enables balance cache, multi-instance locks and Celery
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis connection URL (optional)",
    )
    redis_socket_timeout: float = 5.0
    balance_cache_ttl_seconds: int = Field(
        default=300,
        description="Wallet balance cache TTL in seconds",
    )

    # Verification service
    verification_service_url: str = Field(
        ...,
        description="Base URL of the match verification service (required)",
    )
    verification_timeout_seconds: float = Field(
        default=30.0,
        description="Total request timeout for verification calls",
    )
    verification_connect_timeout_seconds: float = Field(
        default=5.0,
        description="Connect timeout for verification calls",
    )
    verification_max_retries: int = Field(
        default=3,
        description="Attempts per verification call on timeout/network errors",
    )

    # Scheduling
    scheduler_interval_seconds: float = Field(
        default=60.0,
        description="Seconds between scheduler ticks",
    )
    finalization_window_minutes: int = Field(
        default=5,
        description="Prize pools are frozen this many minutes before match start",
    )
    settlement_lock_ttl_seconds: int = Field(
        default=300,
        description="TTL of the Redis lock held while settling one tournament",
    )

    # Sentry
    sentry_dsn: str | None = Field(
        default=None,
        description="Sentry DSN for error tracking",
    )
    sentry_traces_sample_rate: float = 0.0

    @field_validator("verification_service_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize the base URL so paths can be appended."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("verification_service_url must be an http(s) URL")
        return v.rstrip("/")

    @field_validator("scheduler_interval_seconds")
    @classmethod
    def validate_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("scheduler_interval_seconds must be positive")
        return v

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Validate settings for production environment."""
        if self.app_env == "production":
            if self.app_debug:
                raise ValueError(
                    "app_debug must be False in production environment"
                )

            if self.log_level == "DEBUG":
                import warnings
                warnings.warn(
                    "DEBUG log level in production may expose wallet details"
                )

        return self

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
