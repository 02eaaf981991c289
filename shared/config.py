"""
Shared configuration management for the client sync layer.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncSettings(BaseSettings):
    """Settings for the data synchronization layer."""

    model_config = SettingsConfigDict(
        env_prefix="SYNC_",
        env_file=".env",
        case_sensitive=False,
        extra="allow",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Collaborators
    api_base_url: str = Field(default="http://localhost:3000")
    realtime_url: str = Field(default="ws://localhost:8014/ws/stream")
    redis_url: str = Field(default="redis://localhost:6379/0")
    persistent_cache_enabled: bool = Field(default=False)
    persistent_key_prefix: str = Field(default="sync")
    persistent_read_timeout_seconds: float = Field(default=1.0)

    # Cache TTLs (seconds)
    default_ttl_seconds: float = Field(default=300.0)
    error_ttl_seconds: float = Field(default=30.0)
    persistent_ttl_seconds: int = Field(default=300)
    permissions_ttl_seconds: float = Field(default=3600.0)
    can_edit_ttl_seconds: float = Field(default=300.0)

    # Network class: "auto", "desktop" or "low_bandwidth"
    network_class: str = Field(default="auto")
    user_agent: Optional[str] = Field(default=None)

    # Fetch timeouts (seconds)
    fetch_timeout_desktop: float = Field(default=10.0)
    fetch_timeout_low_bandwidth: float = Field(default=20.0)
    permissions_timeout_desktop: float = Field(default=5.0)
    permissions_timeout_low_bandwidth: float = Field(default=10.0)
    approval_timeout_desktop: float = Field(default=3.0)
    approval_timeout_low_bandwidth: float = Field(default=5.0)

    # HTTP transport retries for connection failures
    http_connect_attempts: int = Field(default=2)
    http_retry_base_delay: float = Field(default=0.5)

    # Realtime reconciler
    realtime_max_attempts_desktop: int = Field(default=2)
    realtime_max_attempts_low_bandwidth: int = Field(default=1)
    realtime_setup_delay_desktop: float = Field(default=0.5)
    realtime_setup_delay_low_bandwidth: float = Field(default=2.0)
    realtime_retry_setup_delay: float = Field(default=2.0)
    realtime_retry_delay_desktop: float = Field(default=3.0)
    realtime_retry_delay_low_bandwidth: float = Field(default=5.0)
    realtime_max_delay: float = Field(default=30.0)
    realtime_backoff_jitter: bool = Field(default=True)


@lru_cache()
def get_settings() -> SyncSettings:
    """Get the process-wide settings instance."""
    return SyncSettings()
