# pyjobflow/config.py
"""Configuration using Pydantic Settings.

Each concern reads its own environment prefix:

- ``PYJOBFLOW_REDIS_*``: connection to the backing store
- ``PYJOBFLOW_QUEUE_*``: worker loop, retries and history limits
- ``PYJOBFLOW_RATE_LIMIT_*``: rate limit policies (``POLICIES`` is JSON)

Components never read settings on their own; build a ``Settings`` with
``load_settings()`` at process start and pass the pieces in.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimitPolicy(BaseModel):
    """A ``max`` requests per ``window`` seconds budget."""

    model_config = ConfigDict(frozen=True)

    window: int = Field(..., ge=1, description="Window length in seconds")
    max: int = Field(..., ge=1, description="Maximum requests per window")

    @property
    def window_millis(self) -> int:
        return self.window * 1000


DEFAULT_RATE_LIMITS: dict[str, RateLimitPolicy] = {
    "API_REQUESTS": RateLimitPolicy(window=60, max=100),
    "LOGIN_ATTEMPTS": RateLimitPolicy(window=300, max=5),
    "REGISTRATION": RateLimitPolicy(window=3600, max=3),
    "PASSWORD_RESET": RateLimitPolicy(window=3600, max=3),
}

QUEUE_NAMES = {
    "EMAIL_NOTIFICATIONS": "email:notifications",
    "DATA_PROCESSING": "data:processing",
    "SYSTEM_MAINTENANCE": "system:maintenance",
    "SEARCH_INDEXING": "search:indexing",
    "IMAGE_PROCESSING": "image:processing",
    "AUDIT_LOGGING": "audit:logging",
}


class RedisSettings(BaseSettings):
    url: str = Field(
        "redis://localhost:6379/0",
        description="Redis connection URL",
    )
    key_prefix: str = Field(
        "pyjobflow",
        description="Namespace prepended to every key",
    )
    socket_timeout: float = Field(5.0, gt=0, description="Command timeout in seconds")
    socket_connect_timeout: float = Field(10.0, gt=0, description="Connect timeout in seconds")

    model_config = SettingsConfigDict(env_prefix="PYJOBFLOW_REDIS_", case_sensitive=False)


class QueueSettings(BaseSettings):
    concurrency: int = Field(5, ge=1, description="Jobs run at once per queue")
    job_timeout: float = Field(30.0, gt=0, description="Per-attempt handler timeout in seconds")
    backoff_type: Literal["linear", "fixed", "exponential"] = Field(
        "linear",
        description="How the retry delay grows with the attempt number",
    )
    backoff_delay_unit: int = Field(5000, ge=0, description="Base retry delay in milliseconds")
    max_backoff_delay: int = Field(
        3_600_000,
        ge=0,
        description="Upper bound on a single retry delay in milliseconds",
    )
    default_max_attempts: int = Field(3, ge=1)
    poll_interval: float = Field(1.0, gt=0, description="Seconds between worker ticks")
    error_cooldown: float = Field(
        5.0,
        ge=0,
        description="Seconds the worker waits after an unexpected loop error",
    )
    job_ttl: int = Field(86400, ge=1, description="Lifetime of a job record in seconds")
    idempotency_ttl: int = Field(
        3600,
        ge=1,
        description="Seconds an identical submission keeps returning the same job id",
    )
    history_limit: int = Field(1000, ge=1, description="Entries kept in completed/failed logs")
    default_queue: str = "default"

    model_config = SettingsConfigDict(env_prefix="PYJOBFLOW_QUEUE_", case_sensitive=False)


class RateLimitSettings(BaseSettings):
    policies: dict[str, RateLimitPolicy] = Field(
        default_factory=lambda: dict(DEFAULT_RATE_LIMITS),
        description="Mapping of limit type to its policy",
    )
    fallback_window: int = Field(
        60,
        ge=1,
        description="Window used to locate counters when resetting an unregistered type",
    )
    include_headers: bool = Field(
        True,
        description="Send X-RateLimit-* headers on every limited response",
    )

    model_config = SettingsConfigDict(env_prefix="PYJOBFLOW_RATE_LIMIT_", case_sensitive=False)


class Settings(BaseSettings):
    redis: RedisSettings = Field(default_factory=RedisSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)

    model_config = SettingsConfigDict(case_sensitive=False)


def load_settings() -> Settings:
    return Settings()
