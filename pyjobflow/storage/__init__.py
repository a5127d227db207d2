from .base import KeyValueStore, StorePipeline
from .memory_storage import MemoryStore
from .redis_storage import RedisStore

__all__ = ["KeyValueStore", "StorePipeline", "MemoryStore", "RedisStore"]
