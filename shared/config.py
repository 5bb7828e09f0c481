"""
Shared configuration management for the cached requestor.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="REQUESTOR_",
        case_sensitive=False,
        extra="allow"
    )

    # Logging
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    key_prefix: str = Field(default="requestor")

    # Shared store health
    store_failure_threshold: int = Field(default=5)
    store_recovery_timeout: float = Field(default=30.0)


class RequestorConfig(BaseConfig):
    """Requestor-specific configuration."""

    # Caching
    disable_cache: bool = Field(default=False)
    cache_unauthorized: bool = Field(default=False)

    # Locking (milliseconds)
    max_lock_time_ms: int = Field(default=10000)
    max_lock_attempts: int = Field(default=3)

    # Transport
    http_timeout: float = Field(default=30.0)
    follow_redirects: bool = Field(default=True)

    # Host policies (throttle + cache maps)
    policy_file: Optional[str] = Field(default=None)

    # Prometheus exposition port; disabled when unset
    metrics_port: Optional[int] = Field(default=None)


def get_config(**overrides) -> RequestorConfig:
    """Get requestor configuration, environment first, then explicit overrides."""
    return RequestorConfig(**overrides)
