# pyjobflow/storage/memory_storage.py
import time
from typing import Optional, List, Dict, Tuple, Callable, Any

from pyjobflow.common.exceptions import StoreUnavailableError
from pyjobflow.storage.base import KeyValueStore, StorePipeline, Number


class MemoryPipeline(StorePipeline):
    def __init__(self, store: "MemoryStore"):
        self._store = store
        self._commands: List[Tuple[str, tuple, dict]] = []

    def _queue(self, name: str, *args, **kwargs) -> "MemoryPipeline":
        self._commands.append((name, args, kwargs))
        return self

    def get(self, key):
        return self._queue("get", key)

    def set(self, key, value, ex=None, nx=False):
        return self._queue("set", key, value, ex=ex, nx=nx)

    def incr(self, key):
        return self._queue("incr", key)

    def expire(self, key, seconds):
        return self._queue("expire", key, seconds)

    def delete(self, *keys):
        return self._queue("delete", *keys)

    def zadd(self, key, mapping):
        return self._queue("zadd", key, mapping)

    def zrem(self, key, *members):
        return self._queue("zrem", key, *members)

    def zcard(self, key):
        return self._queue("zcard", key)

    def lpush(self, key, *values):
        return self._queue("lpush", key, *values)

    def ltrim(self, key, start, end):
        return self._queue("ltrim", key, start, end)

    def llen(self, key):
        return self._queue("llen", key)

    async def execute(self) -> List[Any]:
        # No await between commands, so the batch is atomic on the event loop.
        commands, self._commands = self._commands, []
        self._store._ensure_available("pipeline")
        return [self._store._execute(name, *args, **kwargs) for name, args, kwargs in commands]


class MemoryStore(KeyValueStore):
    """
    In-process store with the same semantics as the Redis adapter.

    Intended for tests and local development. ``connected`` can be flipped to
    simulate an outage: every command then raises ``StoreUnavailableError``.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._strings: Dict[str, str] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}
        self._lists: Dict[str, List[str]] = {}
        self._expiry: Dict[str, float] = {}
        self.connected = True

    def _ensure_available(self, command: str) -> None:
        if not self.connected:
            raise StoreUnavailableError(f"Memory store is disconnected, cannot run {command}")

    def _execute(self, name: str, *args, **kwargs):
        self._purge_expired()
        return getattr(self, f"_cmd_{name}")(*args, **kwargs)

    def _run(self, name: str, *args, **kwargs):
        self._ensure_available(name)
        return self._execute(name, *args, **kwargs)

    def _purge_expired(self) -> None:
        now = self._clock()
        for key in [k for k, expires_at in self._expiry.items() if expires_at <= now]:
            self._drop(key)

    def _drop(self, key: str) -> bool:
        existed = False
        for space in (self._strings, self._zsets, self._lists):
            if key in space:
                del space[key]
                existed = True
        self._expiry.pop(key, None)
        return existed

    def ttl(self, key: str) -> Optional[float]:
        """Seconds until ``key`` expires, or None when it has no expiry."""
        expires_at = self._expiry.get(key)
        if expires_at is None:
            return None
        return expires_at - self._clock()

    # --- commands ---

    def _cmd_get(self, key):
        return self._strings.get(key)

    def _cmd_set(self, key, value, ex=None, nx=False):
        if nx and self._cmd_exists(key):
            return False
        self._drop(key)
        self._strings[key] = str(value)
        if ex is not None:
            self._expiry[key] = self._clock() + ex
        return True

    def _cmd_incr(self, key):
        value = int(self._strings.get(key, "0")) + 1
        self._strings[key] = str(value)
        return value

    def _cmd_expire(self, key, seconds):
        if not self._cmd_exists(key):
            return False
        self._expiry[key] = self._clock() + seconds
        return True

    def _cmd_delete(self, *keys):
        return sum(1 for key in keys if self._drop(key))

    def _cmd_exists(self, *keys):
        return sum(
            1 for key in keys if key in self._strings or key in self._zsets or key in self._lists
        )

    def _cmd_zadd(self, key, mapping):
        zset = self._zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        for member, score in mapping.items():
            zset[member] = float(score)
        return added

    def _sorted_members(self, key) -> List[Tuple[str, float]]:
        # Equal scores fall back to lexicographic member order, as in Redis.
        zset = self._zsets.get(key, {})
        return sorted(zset.items(), key=lambda item: (item[1], item[0]))

    def _cmd_zpopmin(self, key, count=1):
        popped = self._sorted_members(key)[:count]
        zset = self._zsets.get(key, {})
        for member, _ in popped:
            del zset[member]
        if key in self._zsets and not zset:
            self._drop(key)
        return popped

    def _cmd_zrangebyscore(self, key, min, max, start=None, num=None):
        low, high = float(min), float(max)
        members = [m for m, score in self._sorted_members(key) if low <= score <= high]
        if start is not None and num is not None:
            members = members[start:start + num]
        return members

    def _cmd_zrem(self, key, *members):
        zset = self._zsets.get(key, {})
        removed = 0
        for member in members:
            if member in zset:
                del zset[member]
                removed += 1
        if key in self._zsets and not zset:
            self._drop(key)
        return removed

    def _cmd_zcard(self, key):
        return len(self._zsets.get(key, {}))

    def _cmd_zpopmin_into(self, source, destination, score):
        popped = self._cmd_zpopmin(source, 1)
        if not popped:
            return None
        member = popped[0][0]
        self._cmd_zadd(destination, {member: score})
        return member

    def _cmd_zmove(self, source, destination, member, score):
        if not self._cmd_zrem(source, member):
            return False
        self._cmd_zadd(destination, {member: score})
        return True

    def _cmd_lpush(self, key, *values):
        items = self._lists.setdefault(key, [])
        for value in values:
            items.insert(0, str(value))
        return len(items)

    def _cmd_ltrim(self, key, start, end):
        items = self._lists.get(key)
        if items is None:
            return True
        size = len(items)
        start = start + size if start < 0 else start
        end = end + size if end < 0 else end
        start = max(start, 0)
        if start >= size or start > end:
            self._drop(key)
        else:
            self._lists[key] = items[start:end + 1]
        return True

    def _cmd_llen(self, key):
        return len(self._lists.get(key, []))

    # --- async contract ---

    async def is_connected(self) -> bool:
        return self.connected

    async def get(self, key: str) -> Optional[str]:
        return self._run("get", key)

    async def set(self, key: str, value: str, ex: Optional[int] = None, nx: bool = False) -> bool:
        return self._run("set", key, value, ex=ex, nx=nx)

    async def incr(self, key: str) -> int:
        return self._run("incr", key)

    async def expire(self, key: str, seconds: int) -> bool:
        return self._run("expire", key, seconds)

    async def delete(self, *keys: str) -> int:
        return self._run("delete", *keys)

    async def exists(self, *keys: str) -> int:
        return self._run("exists", *keys)

    async def zadd(self, key: str, mapping: Dict[str, Number]) -> int:
        return self._run("zadd", key, mapping)

    async def zpopmin(self, key: str, count: int = 1) -> List[Tuple[str, float]]:
        return self._run("zpopmin", key, count)

    async def zrangebyscore(self, key, min, max, start=None, num=None) -> List[str]:
        return self._run("zrangebyscore", key, min, max, start=start, num=num)

    async def zrem(self, key: str, *members: str) -> int:
        return self._run("zrem", key, *members)

    async def zcard(self, key: str) -> int:
        return self._run("zcard", key)

    async def zpopmin_into(self, source: str, destination: str, score: Number) -> Optional[str]:
        return self._run("zpopmin_into", source, destination, score)

    async def zmove(self, source: str, destination: str, member: str, score: Number) -> bool:
        return self._run("zmove", source, destination, member, score)

    async def lpush(self, key: str, *values: str) -> int:
        return self._run("lpush", key, *values)

    async def ltrim(self, key: str, start: int, end: int) -> bool:
        return self._run("ltrim", key, start, end)

    async def llen(self, key: str) -> int:
        return self._run("llen", key)

    def pipeline(self) -> MemoryPipeline:
        return MemoryPipeline(self)
