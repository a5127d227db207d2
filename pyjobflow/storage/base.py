# pyjobflow/storage/base.py
from abc import ABC, abstractmethod
from typing import Optional, List, Any, Dict, Tuple, Union

Number = Union[int, float]


class StorePipeline(ABC):
    """
    A batch of commands sent to the store in one atomic round trip.

    Command methods queue the call and return the pipeline so calls can be
    chained; ``execute`` returns the per-command results in order.
    """

    @abstractmethod
    def get(self, key: str) -> "StorePipeline": ...

    @abstractmethod
    def set(self, key: str, value: str, ex: Optional[int] = None, nx: bool = False) -> "StorePipeline": ...

    @abstractmethod
    def incr(self, key: str) -> "StorePipeline": ...

    @abstractmethod
    def expire(self, key: str, seconds: int) -> "StorePipeline": ...

    @abstractmethod
    def delete(self, *keys: str) -> "StorePipeline": ...

    @abstractmethod
    def zadd(self, key: str, mapping: Dict[str, Number]) -> "StorePipeline": ...

    @abstractmethod
    def zrem(self, key: str, *members: str) -> "StorePipeline": ...

    @abstractmethod
    def zcard(self, key: str) -> "StorePipeline": ...

    @abstractmethod
    def lpush(self, key: str, *values: str) -> "StorePipeline": ...

    @abstractmethod
    def ltrim(self, key: str, start: int, end: int) -> "StorePipeline": ...

    @abstractmethod
    def llen(self, key: str) -> "StorePipeline": ...

    @abstractmethod
    async def execute(self) -> List[Any]: ...


class KeyValueStore(ABC):
    """
    The operations the queue and the rate limiter need from a networked
    key-value / sorted-set store.

    Every command may raise when the store is unreachable; callers decide
    whether that is fatal (enqueue) or degraded (limits, stats).
    """

    @abstractmethod
    async def is_connected(self) -> bool: ...

    @abstractmethod
    async def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    async def set(self, key: str, value: str, ex: Optional[int] = None, nx: bool = False) -> bool:
        """Write ``value``; with ``nx`` only when absent. Returns whether it was written."""

    @abstractmethod
    async def incr(self, key: str) -> int: ...

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> bool: ...

    @abstractmethod
    async def delete(self, *keys: str) -> int: ...

    @abstractmethod
    async def exists(self, *keys: str) -> int: ...

    @abstractmethod
    async def zadd(self, key: str, mapping: Dict[str, Number]) -> int: ...

    @abstractmethod
    async def zpopmin(self, key: str, count: int = 1) -> List[Tuple[str, float]]:
        """Atomically remove and return the lowest-scored members."""

    @abstractmethod
    async def zrangebyscore(
        self,
        key: str,
        min: Number,
        max: Number,
        start: Optional[int] = None,
        num: Optional[int] = None,
    ) -> List[str]: ...

    @abstractmethod
    async def zrem(self, key: str, *members: str) -> int: ...

    @abstractmethod
    async def zcard(self, key: str) -> int: ...

    @abstractmethod
    async def zpopmin_into(self, source: str, destination: str, score: Number) -> Optional[str]:
        """
        Pop the lowest-scored member of ``source`` and add it to ``destination``
        with ``score`` in one atomic step. Returns the member, or None when
        ``source`` is empty.
        """

    @abstractmethod
    async def zmove(self, source: str, destination: str, member: str, score: Number) -> bool:
        """
        Remove ``member`` from ``source`` and, only if it was there, add it to
        ``destination`` with ``score``, atomically. Returns whether it moved.
        """

    @abstractmethod
    async def lpush(self, key: str, *values: str) -> int: ...

    @abstractmethod
    async def ltrim(self, key: str, start: int, end: int) -> bool: ...

    @abstractmethod
    async def llen(self, key: str) -> int: ...

    @abstractmethod
    def pipeline(self) -> StorePipeline: ...

    async def close(self) -> None:
        pass
