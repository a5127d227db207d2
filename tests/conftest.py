import asyncio

import pytest

from pyjobflow.client import JobQueue
from pyjobflow.common.exceptions import StoreUnavailableError
from pyjobflow.config import QueueSettings
from pyjobflow.ratelimit.limiter import RateLimiter
from pyjobflow.server.worker import QueueWorker
from pyjobflow.storage.memory_storage import MemoryStore

# Aligned to the hour so 60, 300 and 3600 second windows all start here.
START_TIME = 1_699_999_200.0


class FakeClock:
    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def queue_settings():
    return QueueSettings(concurrency=1, backoff_delay_unit=0, job_timeout=2.0, poll_interval=0.01)


@pytest.fixture
def job_queue(store, queue_settings, clock):
    return JobQueue(store, queue_settings, clock=clock)


@pytest.fixture
def limiter(store, clock):
    return RateLimiter(store, clock=clock)


@pytest.fixture
def make_worker(job_queue):
    def _make(queue_name: str) -> QueueWorker:
        return QueueWorker(
            queue_name,
            job_queue.store,
            job_queue.serializer,
            job_queue._handlers,
            job_queue.settings,
            job_queue.keys,
            events=job_queue.events,
            filters=job_queue.filters,
            clock=job_queue.clock,
        )

    return _make


async def _drain(worker: QueueWorker, max_ticks: int = 50) -> int:
    dispatched = 0
    for _ in range(max_ticks):
        count = await worker.tick()
        await asyncio.gather(*list(worker._in_flight))
        if not count:
            break
        dispatched += count
    return dispatched


@pytest.fixture
def drain():
    """Ticks a worker until nothing is dispatched, awaiting every job in between."""
    return _drain


class FlakyStore(MemoryStore):
    """Memory store whose next command of a given name raises, as if the connection dropped."""

    def __init__(self, clock):
        super().__init__(clock=clock)
        self.failures = []

    def fail_next(self, command: str) -> None:
        self.failures.append(command)

    def _ensure_available(self, command: str) -> None:
        if command in self.failures:
            self.failures.remove(command)
            raise StoreUnavailableError(f"Connection lost during {command}")
        super()._ensure_available(command)


@pytest.fixture
def flaky_store(clock):
    return FlakyStore(clock)
