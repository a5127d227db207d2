# pyjobflow/client.py
import hashlib
import logging
import math
import time
from datetime import datetime, timedelta, UTC
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .common.events import EventBus, JobEvent, Subscription, JOB_ADDED
from .common.exceptions import (
    JobValidationError,
    QueueUnavailableError,
    SerializationError,
)
from .common.job import Job, JobOptions, QueueStats, to_millis
from .common.keys import KeySpace
from .common.states import PendingState
from .config import QueueSettings
from .filters.base import JobFilter
from .serialization.base import BaseSerializer
from .serialization.json_serializer import JsonSerializer
from .server.processor import HandlerRegistry
from .server.worker import QueueWorker
from .storage.base import KeyValueStore

logger = logging.getLogger(__name__)


class JobQueue:
    """
    Idempotent, priority- and delay-aware job queue over a key-value store.

    Build one per process and hand it to whatever needs to enqueue or
    process jobs:

        queue = JobQueue(RedisStore.from_url(url), settings.queue)
        queue.register_processor("email:notifications", "welcome", send_welcome)
        await queue.start_processing("email:notifications")
        await queue.add_job("email:notifications", "welcome", {"to": "a@b.com"})
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: Optional[QueueSettings] = None,
        serializer: Optional[BaseSerializer] = None,
        key_prefix: str = "pyjobflow",
        events: Optional[EventBus] = None,
        filters: Optional[List[JobFilter]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.settings = settings or QueueSettings()
        self.serializer = serializer or JsonSerializer()
        self.keys = KeySpace(key_prefix)
        self.events = events or EventBus()
        self.filters = filters
        self.clock = clock
        self._handlers: HandlerRegistry = {}
        self._workers: Dict[str, QueueWorker] = {}

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), UTC)

    def subscribe(self, event: str, callback: Callable[[JobEvent], Any]) -> Subscription:
        return self.events.subscribe(event, callback)

    # --- Producers ---

    def _content_hash(self, queue_name: str, job_type: str, payload: Any) -> str:
        try:
            canonical = self.serializer.canonical_payload(
                {"queue": queue_name, "type": job_type, "payload": payload}
            )
        except SerializationError as e:
            raise JobValidationError(str(e)) from e
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    async def add_job(
        self,
        queue_name: str,
        job_type: str,
        payload: Any,
        options: Union[JobOptions, Mapping[str, Any], None] = None,
    ) -> str:
        """
        Enqueue a job and return its id.

        An identical (queue, type, payload) submission made while the first
        one's idempotency marker is alive returns the existing id instead of
        creating a second job. Raises ``QueueUnavailableError`` when the
        store cannot be reached; nothing is enqueued in that case.
        """
        if not queue_name or not job_type:
            raise JobValidationError("queue_name and job_type are required")
        opts = JobOptions.coerce(options)
        content_hash = self._content_hash(queue_name, job_type, payload)

        now = self._now()
        job = Job(
            id=Job.make_id(job_type, content_hash if opts.idempotent else None, now),
            queue=queue_name,
            type=job_type,
            payload=payload,
            max_attempts=opts.max_attempts or self.settings.default_max_attempts,
            priority=opts.priority,
            delay_until=now + timedelta(milliseconds=opts.delay) if opts.delay > 0 else None,
            created_at=now,
            state_data=PendingState(reason="Job created").serialize_data(),
        )

        try:
            if not await self.store.is_connected():
                raise QueueUnavailableError("Queue store not connected")

            if opts.idempotent:
                existing_id = await self._claim_idempotency(content_hash, job.id, opts.delay)
                if existing_id is not None:
                    logger.info(f"Job already exists: {existing_id}")
                    await self.events.emit(
                        JobEvent(JOB_ADDED, queue_name, existing_id, job_type, {"is_new": False})
                    )
                    return existing_id

            try:
                await self._persist(job)
            except Exception:
                if opts.idempotent:
                    await self._release_idempotency(content_hash)
                raise
        except QueueUnavailableError:
            raise
        except Exception as e:
            logger.error(f"Add job error on {queue_name}: {e}")
            raise QueueUnavailableError(f"Could not enqueue {job_type} job on {queue_name}") from e

        logger.debug(f"Enqueued job {job.id} on queue '{queue_name}'")
        await self.events.emit(JobEvent(JOB_ADDED, queue_name, job.id, job_type, {"is_new": True}))
        return job.id

    async def _claim_idempotency(self, content_hash: str, job_id: str, delay: float) -> Optional[str]:
        """Returns None when this call owns the key, else the live job's id."""
        marker_key = self.keys.idempotency(content_hash)
        # Keep the marker alive at least until a delayed job becomes eligible.
        ttl = self.settings.idempotency_ttl + math.ceil(delay / 1000)

        for _ in range(2):
            if await self.store.set(marker_key, job_id, ex=ttl, nx=True):
                return None
            existing_id = await self.store.get(marker_key)
            if existing_id is not None:
                return existing_id
        raise QueueUnavailableError(f"Idempotency marker {marker_key} could not be claimed")

    async def _release_idempotency(self, content_hash: str) -> None:
        try:
            await self.store.delete(self.keys.idempotency(content_hash))
        except Exception:
            logger.warning(f"Could not release idempotency marker for {content_hash}", exc_info=True)

    async def _persist(self, job: Job) -> None:
        pipe = self.store.pipeline()
        pipe.set(self.keys.job(job.id), self.serializer.serialize_job(job), ex=self.settings.job_ttl)
        if job.delay_until is not None:
            pipe.zadd(self.keys.delayed(job.queue), {job.id: to_millis(job.delay_until)})
        else:
            pipe.zadd(self.keys.waiting(job.queue), {job.id: job.ready_score})
        await pipe.execute()

    # --- Processing ---

    def register_processor(self, queue_name: str, job_type: str, handler: Callable) -> None:
        if (queue_name, job_type) in self._handlers:
            logger.info(f"Replacing processor for {queue_name}:{job_type}")
        self._handlers[(queue_name, job_type)] = handler
        logger.info(f"Registered processor for {queue_name}:{job_type}")

    def is_processing(self, queue_name: Optional[str] = None) -> bool:
        if queue_name is not None:
            worker = self._workers.get(queue_name)
            return worker is not None and worker.running
        return any(worker.running for worker in self._workers.values())

    async def start_processing(self, queue_name: str) -> None:
        if self.is_processing(queue_name):
            logger.info(f"Queue {queue_name} is already processing")
            return

        worker = QueueWorker(
            queue_name,
            self.store,
            self.serializer,
            self._handlers,
            self.settings,
            self.keys,
            events=self.events,
            filters=self.filters,
            clock=self.clock,
        )
        self._workers[queue_name] = worker
        worker.start()
        logger.info(f"Starting job processing for queue: {queue_name}")

    async def stop_processing(self, queue_name: Optional[str] = None) -> None:
        """Stops one queue (or all of them) after in-flight jobs settle."""
        names = [queue_name] if queue_name is not None else list(self._workers)
        for name in names:
            worker = self._workers.pop(name, None)
            if worker is None:
                continue
            logger.info(f"Stopping job processing for queue: {name}")
            await worker.stop()

    # --- Inspection ---

    async def get_job_status(self, job_id: str) -> Optional[Job]:
        try:
            data = await self.store.get(self.keys.job(job_id))
            if data is None:
                return None
            return self.serializer.deserialize_job(data)
        except Exception:
            logger.warning(f"Get job status error for {job_id}", exc_info=True)
            return None

    async def get_queue_stats(self, queue_name: Optional[str] = None) -> QueueStats:
        queue_name = queue_name or self.settings.default_queue
        try:
            if not await self.store.is_connected():
                return QueueStats()
            waiting, delayed, active, completed, failed = await (
                self.store.pipeline()
                .zcard(self.keys.waiting(queue_name))
                .zcard(self.keys.delayed(queue_name))
                .zcard(self.keys.active(queue_name))
                .llen(self.keys.completed(queue_name))
                .llen(self.keys.failed(queue_name))
                .execute()
            )
        except Exception:
            logger.warning(f"Get queue stats error for {queue_name}", exc_info=True)
            return QueueStats()
        return QueueStats(
            waiting=int(waiting),
            active=int(active),
            completed=int(completed),
            failed=int(failed),
            delayed=int(delayed),
        )

    async def _clear_log(self, key: str) -> int:
        try:
            count, _ = await self.store.pipeline().llen(key).delete(key).execute()
            return int(count)
        except Exception:
            logger.warning(f"Clearing {key} failed", exc_info=True)
            return 0

    async def clear_completed_jobs(self, queue_name: Optional[str] = None) -> int:
        return await self._clear_log(self.keys.completed(queue_name or self.settings.default_queue))

    async def clear_failed_jobs(self, queue_name: Optional[str] = None) -> int:
        return await self._clear_log(self.keys.failed(queue_name or self.settings.default_queue))

    async def recover_stuck_jobs(
        self, queue_name: Optional[str] = None, max_age_seconds: int = 300, limit: int = 100
    ) -> List[str]:
        """
        Requeue jobs left in the active set longer than ``max_age_seconds``,
        typically because the worker running them died. Returns the ids moved
        back to waiting.
        """
        queue_name = queue_name or self.settings.default_queue
        active_key = self.keys.active(queue_name)
        cutoff = to_millis(self._now()) - max_age_seconds * 1000
        stuck = await self.store.zrangebyscore(active_key, "-inf", cutoff, start=0, num=limit)

        recovered = []
        for job_id in stuck:
            data = await self.store.get(self.keys.job(job_id))
            job = None
            if data is not None:
                try:
                    job = self.serializer.deserialize_job(data)
                except SerializationError:
                    logger.error(f"Stuck job {job_id} has an unreadable record")
            if job is None:
                if await self.store.zrem(active_key, job_id):
                    logger.warning(f"Stuck job {job_id} has no usable record, dropped it")
                continue

            if not await self.store.zmove(
                active_key, self.keys.waiting(queue_name), job.id, job.ready_score
            ):
                continue
            recovered.append(job.id)

            pending_state = PendingState(reason="Recovered from stuck active state")
            job.state_name = pending_state.name
            job.state_data = pending_state.serialize_data()
            try:
                await self.store.set(
                    self.keys.job(job.id), self.serializer.serialize_job(job), ex=self.settings.job_ttl
                )
            except Exception:
                logger.warning(f"Recovered job {job.id} is waiting but kept its old state", exc_info=True)

        if recovered:
            logger.info(f"Recovered {len(recovered)} stuck job(s) on {queue_name}")
        return recovered

    async def health_check(self, queue_name: Optional[str] = None) -> Dict[str, Any]:
        try:
            connected = await self.store.is_connected()
        except Exception:
            connected = False
        stats = await self.get_queue_stats(queue_name)
        return {
            "status": "healthy" if connected else "unhealthy",
            "connected": connected,
            "processing": self.is_processing(),
            "stats": stats.to_dict(),
        }
