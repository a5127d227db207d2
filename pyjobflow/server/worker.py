# pyjobflow/server/worker.py
import asyncio
import logging
import time
import uuid
from datetime import datetime, UTC
from typing import Callable, List, Optional, Set

from pyjobflow.common.events import EventBus
from pyjobflow.common.exceptions import SerializationError
from pyjobflow.common.job import to_millis
from pyjobflow.common.keys import KeySpace
from pyjobflow.config import QueueSettings
from pyjobflow.filters.base import JobFilter
from pyjobflow.serialization.base import BaseSerializer
from pyjobflow.storage.base import KeyValueStore
from .processor import HandlerRegistry, JobProcessor

logger = logging.getLogger(__name__)


class QueueWorker:
    """
    Polling loop for one queue.

    Every tick promotes due delayed jobs, then fills free execution slots
    (up to ``concurrency``) with the highest-priority ready jobs. Dispatched
    jobs run as independent tasks; the loop never waits on them.
    """

    def __init__(
        self,
        queue_name: str,
        store: KeyValueStore,
        serializer: BaseSerializer,
        handlers: HandlerRegistry,
        settings: QueueSettings,
        keys: KeySpace,
        events: Optional[EventBus] = None,
        filters: Optional[List[JobFilter]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.queue_name = queue_name
        self.store = store
        self.serializer = serializer
        self.handlers = handlers
        self.settings = settings
        self.keys = keys
        self.events = events or EventBus()
        self.filters = filters
        self.clock = clock
        self.worker_id = f"worker:{uuid.uuid4()}"
        self._shutdown_requested = False
        self._stop_event = asyncio.Event()
        self._in_flight: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def _now_ms(self) -> int:
        return to_millis(datetime.fromtimestamp(self.clock(), UTC))

    def start(self) -> asyncio.Task:
        self._loop_task = asyncio.create_task(self.run(), name=f"pyjobflow:{self.queue_name}")
        return self._loop_task

    async def run(self) -> None:
        logger.info(f"[{self.worker_id}] Starting worker for queue: {self.queue_name}")
        while not self._shutdown_requested:
            try:
                await self.tick()
            except Exception:
                logger.exception(f"[{self.worker_id}] Unhandled exception in worker loop")
                await self._sleep(self.settings.error_cooldown)
                continue
            await self._sleep(self.settings.poll_interval)
        logger.info(f"[{self.worker_id}] Worker has stopped polling {self.queue_name}")

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def tick(self) -> int:
        """One scheduling pass; returns how many jobs were dispatched."""
        await self.promote_delayed_jobs()

        dispatched = 0
        while self.in_flight < self.settings.concurrency and not self._shutdown_requested:
            job_id = await self._pop_next()
            if job_id is None:
                break
            self._dispatch(job_id)
            dispatched += 1
        return dispatched

    async def promote_delayed_jobs(self) -> int:
        delayed_key = self.keys.delayed(self.queue_name)
        due = await self.store.zrangebyscore(delayed_key, "-inf", self._now_ms())
        promoted = 0
        for job_id in due:
            # The record supplies the priority; reading it first means a failed
            # read leaves the job where it was.
            data = await self.store.get(self.keys.job(job_id))
            job = None
            if data is not None:
                try:
                    job = self.serializer.deserialize_job(data)
                except SerializationError:
                    logger.error(f"Delayed job {job_id} has an unreadable record, dropping it")
            if job is None:
                if await self.store.zrem(delayed_key, job_id):
                    logger.warning(f"Delayed job {job_id} has no usable record, dropped it")
                continue

            # Only the poller whose move succeeds owns the job; others skip it.
            # The record keeps its state until the processor marks it active.
            if not await self.store.zmove(
                delayed_key, self.keys.waiting(self.queue_name), job.id, job.ready_score
            ):
                continue
            promoted += 1

        if promoted:
            logger.debug(f"Promoted {promoted} delayed job(s) on {self.queue_name}")
        return promoted

    async def _pop_next(self) -> Optional[str]:
        return await self.store.zpopmin_into(
            self.keys.waiting(self.queue_name), self.keys.active(self.queue_name), self._now_ms()
        )

    def _dispatch(self, job_id: str) -> None:
        task = asyncio.create_task(self._execute(job_id), name=f"pyjobflow:job:{job_id}")
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _execute(self, job_id: str) -> None:
        processor = JobProcessor(
            self.queue_name,
            job_id,
            self.store,
            self.serializer,
            self.handlers,
            self.settings,
            self.keys,
            events=self.events,
            filters=self.filters,
            clock=self.clock,
            worker_id=self.worker_id,
        )
        try:
            await processor.process()
        except Exception:
            logger.exception(f"[{self.worker_id}] Could not record outcome of job {job_id}")

    async def stop(self) -> None:
        """Stops polling and waits for every in-flight job to settle."""
        self._shutdown_requested = True
        self._stop_event.set()
        if self._loop_task is not None:
            await self._loop_task
        if self._in_flight:
            logger.info(f"[{self.worker_id}] Waiting for {self.in_flight} in-flight job(s)")
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)
