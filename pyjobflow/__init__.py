from typing import Optional, Tuple

from .client import JobQueue
from .common.events import EventBus, JobEvent
from .common.exceptions import (
    JobValidationError,
    PyJobFlowException,
    QueueUnavailableError,
    StoreUnavailableError,
    UnknownLimitTypeError,
)
from .common.job import Job, JobOptions, QueueStats
from .config import QUEUE_NAMES, RateLimitPolicy, Settings, load_settings
from .ratelimit.limiter import RateLimiter, RateLimitResult
from .storage.base import KeyValueStore
from .storage.redis_storage import RedisStore

__version__ = "0.1.0"


def create_components(
    settings: Optional[Settings] = None, store: Optional[KeyValueStore] = None
) -> Tuple[JobQueue, RateLimiter]:
    """Build a queue and a limiter sharing one store, defaulting to Redis from settings."""
    settings = settings or load_settings()
    store = store or RedisStore.from_settings(settings.redis)
    queue = JobQueue(store, settings.queue, key_prefix=settings.redis.key_prefix)
    limiter = RateLimiter.from_settings(
        store, settings.rate_limit, key_prefix=settings.redis.key_prefix
    )
    return queue, limiter


__all__ = [
    "EventBus",
    "Job",
    "JobEvent",
    "JobOptions",
    "JobQueue",
    "JobValidationError",
    "KeyValueStore",
    "PyJobFlowException",
    "QUEUE_NAMES",
    "QueueStats",
    "QueueUnavailableError",
    "RateLimitPolicy",
    "RateLimitResult",
    "RateLimiter",
    "RedisStore",
    "Settings",
    "StoreUnavailableError",
    "UnknownLimitTypeError",
    "create_components",
    "load_settings",
]
