"""Configuration for the webhook delivery engine.

All values can be overridden with ``WEBHOOK_``-prefixed environment variables
or a local ``.env`` file.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings with development-friendly defaults."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="WEBHOOK_",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = Field(
        default="development",
        description="Environment: development, staging, production",
    )
    service_name: str = "webhook-engine"
    log_level: str = "info"
    log_format: str = Field(default="console", description="json or console")

    # Storage
    storage_backend: str = Field(default="memory", description="memory or redis")
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "webhooks:"
    lock_timeout_seconds: float = 30.0
    lock_blocking_timeout_seconds: float = 10.0

    # Sweeper
    sweep_interval_seconds: float = 5.0
    queue_processing_stale_seconds: int = 300
    health_stale_seconds: int = 3600

    # Delivery
    max_concurrent_deliveries: int = 100
    user_agent: str = "InsightSerenity-Webhook/1.0"
    delivery_history_limit: int = 100
    auto_suspend_threshold: int = 10
    auto_suspend_seconds: int = 3600  # 1 hour
    default_max_queue_size: int = 1000
    oauth2_token_refresh_margin_seconds: int = 30

    @field_validator("storage_backend")
    @classmethod
    def validate_storage_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in ("memory", "redis"):
            raise ValueError("storage_backend must be 'memory' or 'redis'")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return v

    @field_validator(
        "sweep_interval_seconds",
        "lock_timeout_seconds",
        "max_concurrent_deliveries",
        "delivery_history_limit",
        "auto_suspend_threshold",
        "default_max_queue_size",
    )
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in ("production", "prod", "staging")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
