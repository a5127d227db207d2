# pyjobflow/storage/redis_storage.py
import logging
from typing import Optional, List, Dict, Tuple

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from .base import KeyValueStore, StorePipeline, Number

logger = logging.getLogger(__name__)

# Set-to-set moves run as server-side scripts so a job is never in neither set.
ZPOPMIN_INTO_SCRIPT = """
local popped = redis.call("ZPOPMIN", KEYS[1])
if popped[1] then
    redis.call("ZADD", KEYS[2], ARGV[1], popped[1])
    return popped[1]
end
return false
"""

ZMOVE_SCRIPT = """
if redis.call("ZREM", KEYS[1], ARGV[1]) == 1 then
    redis.call("ZADD", KEYS[2], ARGV[2], ARGV[1])
    return 1
end
return 0
"""


def _to_str(value):
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


class RedisPipeline(StorePipeline):
    def __init__(self, pipe):
        self._pipe = pipe

    def get(self, key: str) -> "RedisPipeline":
        self._pipe.get(key)
        return self

    def set(self, key: str, value: str, ex: Optional[int] = None, nx: bool = False) -> "RedisPipeline":
        self._pipe.set(key, value, ex=ex, nx=nx)
        return self

    def incr(self, key: str) -> "RedisPipeline":
        self._pipe.incr(key)
        return self

    def expire(self, key: str, seconds: int) -> "RedisPipeline":
        self._pipe.expire(key, seconds)
        return self

    def delete(self, *keys: str) -> "RedisPipeline":
        self._pipe.delete(*keys)
        return self

    def zadd(self, key: str, mapping: Dict[str, Number]) -> "RedisPipeline":
        self._pipe.zadd(key, mapping)
        return self

    def zrem(self, key: str, *members: str) -> "RedisPipeline":
        self._pipe.zrem(key, *members)
        return self

    def zcard(self, key: str) -> "RedisPipeline":
        self._pipe.zcard(key)
        return self

    def lpush(self, key: str, *values: str) -> "RedisPipeline":
        self._pipe.lpush(key, *values)
        return self

    def ltrim(self, key: str, start: int, end: int) -> "RedisPipeline":
        self._pipe.ltrim(key, start, end)
        return self

    def llen(self, key: str) -> "RedisPipeline":
        self._pipe.llen(key)
        return self

    async def execute(self) -> list:
        results = await self._pipe.execute()
        return [_to_str(result) for result in results]


class RedisStore(KeyValueStore):
    def __init__(self, redis_client: Optional[redis.Redis] = None, connection_pool=None):
        if redis_client is not None:
            self.redis_client = redis_client
        elif connection_pool is not None:
            self.redis_client = redis.Redis(connection_pool=connection_pool)
        else:
            self.redis_client = redis.Redis(host="localhost", port=6379, db=0, decode_responses=True)
        self._zpopmin_into = self.redis_client.register_script(ZPOPMIN_INTO_SCRIPT)
        self._zmove = self.redis_client.register_script(ZMOVE_SCRIPT)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisStore":
        kwargs.setdefault("decode_responses", True)
        return cls(redis_client=redis.Redis.from_url(url, **kwargs))

    @classmethod
    def from_settings(cls, settings) -> "RedisStore":
        return cls.from_url(
            settings.url,
            socket_timeout=settings.socket_timeout,
            socket_connect_timeout=settings.socket_connect_timeout,
        )

    async def is_connected(self) -> bool:
        try:
            return bool(await self.redis_client.ping())
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def get(self, key: str) -> Optional[str]:
        return _to_str(await self.redis_client.get(key))

    async def set(self, key: str, value: str, ex: Optional[int] = None, nx: bool = False) -> bool:
        return bool(await self.redis_client.set(key, value, ex=ex, nx=nx))

    async def incr(self, key: str) -> int:
        return await self.redis_client.incr(key)

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self.redis_client.expire(key, seconds))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self.redis_client.delete(*keys)

    async def exists(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self.redis_client.exists(*keys)

    async def zadd(self, key: str, mapping: Dict[str, Number]) -> int:
        return await self.redis_client.zadd(key, mapping)

    async def zpopmin(self, key: str, count: int = 1) -> List[Tuple[str, float]]:
        popped = await self.redis_client.zpopmin(key, count)
        return [(_to_str(member), float(score)) for member, score in popped]

    async def zrangebyscore(
        self,
        key: str,
        min: Number,
        max: Number,
        start: Optional[int] = None,
        num: Optional[int] = None,
    ) -> List[str]:
        members = await self.redis_client.zrangebyscore(key, min, max, start=start, num=num)
        return [_to_str(member) for member in members]

    async def zrem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return await self.redis_client.zrem(key, *members)

    async def zcard(self, key: str) -> int:
        return await self.redis_client.zcard(key)

    async def lpush(self, key: str, *values: str) -> int:
        return await self.redis_client.lpush(key, *values)

    async def ltrim(self, key: str, start: int, end: int) -> bool:
        return bool(await self.redis_client.ltrim(key, start, end))

    async def llen(self, key: str) -> int:
        return await self.redis_client.llen(key)

    async def zpopmin_into(self, source: str, destination: str, score: Number) -> Optional[str]:
        return _to_str(await self._zpopmin_into(keys=[source, destination], args=[score]))

    async def zmove(self, source: str, destination: str, member: str, score: Number) -> bool:
        return bool(await self._zmove(keys=[source, destination], args=[member, score]))

    def pipeline(self) -> RedisPipeline:
        return RedisPipeline(self.redis_client.pipeline(transaction=True))

    async def close(self) -> None:
        await self.redis_client.aclose()
