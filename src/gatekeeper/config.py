"""Configuration module using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="GATEKEEPER_",
        case_sensitive=False,
    )

    # Durable tier
    database_url: str = "sqlite:///data/gatekeeper.db"
    durable_store_enabled: bool = True

    # Cache tier
    cache_backend: Literal["memory", "redis"] = "memory"
    redis_url: str | None = None  # e.g. redis://localhost:6379/0
    redis_ttl_seconds: int = Field(default=86400 * 35, ge=0)  # Outlives a monthly quota period
    redis_prefix: str = "gatekeeper:"

    # Behaviour when the state store cannot be reached
    store_failure_mode: Literal["closed", "open"] = "closed"
    cas_max_retries: int = Field(default=50, ge=1)

    # Rate limiting
    rate_limit_config_path: str = "rate_limit_config.json"
    default_rate_limit: int = Field(default=100, ge=0)
    default_rate_window_seconds: int = Field(default=3600, gt=0)
    default_rate_algorithm: Literal["token_bucket", "sliding_window", "fixed_window"] = "token_bucket"

    # Quotas (thresholds are percentages of the limit)
    quota_config_path: str = "quota_config.json"
    default_warn_threshold: float = Field(default=80.0, ge=0, le=100)
    default_alert_threshold: float = Field(default=90.0, ge=0, le=100)
    quota_timezone: str = "UTC"

    # Logging
    log_level: str = "INFO"

    @model_validator(mode="after")
    def check_thresholds(self) -> "Settings":
        if self.default_alert_threshold < self.default_warn_threshold:
            raise ValueError("default_alert_threshold must not be below default_warn_threshold")
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
