# pyjobflow/server/processor.py
import logging
import time
from datetime import datetime, UTC
from typing import Callable, Dict, List, Optional, Tuple

from pyjobflow.common.events import (
    EventBus,
    JobEvent,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_RETRYING,
    JOB_STARTED,
)
from pyjobflow.common.exceptions import ProcessorNotFoundError, SerializationError
from pyjobflow.common.job import Job, to_millis
from pyjobflow.common.keys import KeySpace
from pyjobflow.common.states import ActiveState, CompletedState, FailedState, RetryingState
from pyjobflow.config import QueueSettings
from pyjobflow.execution.performer import perform_job
from pyjobflow.filters.base import JobFilter
from pyjobflow.filters.builtin import RetryFilter
from pyjobflow.serialization.base import BaseSerializer
from pyjobflow.storage.base import KeyValueStore
from .context import ElectStateContext

logger = logging.getLogger(__name__)

HandlerRegistry = Dict[Tuple[str, str], Callable]


class JobProcessor:
    """
    Runs a single attempt of one job that the worker already moved to the
    active set, then records the outcome: completed, retrying or failed.
    """

    def __init__(
        self,
        queue_name: str,
        job_id: str,
        store: KeyValueStore,
        serializer: BaseSerializer,
        handlers: HandlerRegistry,
        settings: QueueSettings,
        keys: KeySpace,
        events: Optional[EventBus] = None,
        filters: Optional[List[JobFilter]] = None,
        clock: Callable[[], float] = time.time,
        worker_id: str = "worker",
    ):
        self.queue_name = queue_name
        self.job_id = job_id
        self.store = store
        self.serializer = serializer
        self.handlers = handlers
        self.settings = settings
        self.keys = keys
        self.events = events or EventBus()
        self.filters = filters if filters is not None else [RetryFilter.from_settings(settings)]
        self.clock = clock
        self.worker_id = worker_id

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), UTC)

    async def _load(self) -> Optional[Job]:
        data = await self.store.get(self.keys.job(self.job_id))
        if data is None:
            return None
        try:
            return self.serializer.deserialize_job(data)
        except SerializationError:
            logger.error(f"Job {self.job_id} has an unreadable record", exc_info=True)
            return None

    async def _emit(self, name: str, job: Job, **data) -> None:
        await self.events.emit(JobEvent(name, self.queue_name, job.id, job.type, data))

    async def process(self) -> Optional[str]:
        """Runs the attempt and returns the resulting state name."""
        job = await self._load()
        if job is None:
            logger.warning(f"Job {self.job_id} not found, skipping")
            await self.store.zrem(self.keys.active(self.queue_name), self.job_id)
            return None

        job.attempts += 1
        job.last_attempt_at = self._now()
        active_state = ActiveState(self.worker_id, job.attempts)
        job.state_name = active_state.name
        job.state_data = active_state.serialize_data()
        try:
            await self.store.set(
                self.keys.job(job.id), self.serializer.serialize_job(job), ex=self.settings.job_ttl
            )
        except Exception:
            await self._requeue(job)
            raise
        await self._emit(JOB_STARTED, job, attempt=job.attempts)

        try:
            handler = self.handlers.get((self.queue_name, job.type))
            if handler is None:
                raise ProcessorNotFoundError(self.queue_name, job.type)
            result = await perform_job(handler, job, timeout=self.settings.job_timeout)
        except Exception as e:
            return await self._fail(job, e)

        return await self._complete(job, result)

    async def _requeue(self, job: Job) -> None:
        """Hands an unstarted job back to the waiting set; the attempt does not count."""
        try:
            moved = await self.store.zmove(
                self.keys.active(self.queue_name), self.keys.waiting(self.queue_name),
                job.id, job.ready_score,
            )
        except Exception:
            logger.error(f"Job {job.id} could not be requeued and stays active until recovered")
            return
        if moved:
            logger.warning(f"Job {job.id} could not be started, returned to waiting")

    async def _complete(self, job: Job, result) -> str:
        # Listeners see exactly what get_job_status will return.
        result = self.serializer.to_primitive(result)
        completed_state = CompletedState(result=result, reason="Job performed successfully")
        job.state_name = completed_state.name
        job.state_data = completed_state.serialize_data()
        job.completed_at = self._now()
        job.error = None

        completed_key = self.keys.completed(self.queue_name)
        await (
            self.store.pipeline()
            .set(self.keys.job(job.id), self.serializer.serialize_job(job), ex=self.settings.job_ttl)
            .lpush(completed_key, job.id)
            .ltrim(completed_key, 0, self.settings.history_limit - 1)
            .zrem(self.keys.active(self.queue_name), job.id)
            .execute()
        )
        logger.info(f"Job {job.id} completed after {job.attempts} attempt(s)")
        await self._emit(JOB_COMPLETED, job, attempts=job.attempts, result=result)
        return completed_state.name

    async def _fail(self, job: Job, error: Exception) -> str:
        logger.error(
            f"Job {job.id} failed on attempt {job.attempts}/{job.max_attempts}.", exc_info=error
        )
        now = self._now()
        failed_state = FailedState(
            exception_type=type(error).__name__,
            exception_message=str(error),
        )
        elect_state_context = ElectStateContext(job=job, candidate_state=failed_state, now=now)
        for f in self.filters:
            f.on_state_election(elect_state_context)
        final_state = elect_state_context.candidate_state

        job.state_name = final_state.name
        job.state_data = final_state.serialize_data()
        job.error = str(error) or type(error).__name__

        pipe = self.store.pipeline()
        if isinstance(final_state, RetryingState):
            job.delay_until = final_state.retry_at
            pipe.set(self.keys.job(job.id), self.serializer.serialize_job(job), ex=self.settings.job_ttl)
            pipe.zadd(self.keys.delayed(self.queue_name), {job.id: to_millis(final_state.retry_at)})
        else:
            job.failed_at = now
            failed_key = self.keys.failed(self.queue_name)
            pipe.set(self.keys.job(job.id), self.serializer.serialize_job(job), ex=self.settings.job_ttl)
            pipe.lpush(failed_key, job.id)
            pipe.ltrim(failed_key, 0, self.settings.history_limit - 1)
        pipe.zrem(self.keys.active(self.queue_name), job.id)
        await pipe.execute()

        if isinstance(final_state, RetryingState):
            logger.info(f"Job {job.id} scheduled for retry at {final_state.retry_at.isoformat()}")
            await self._emit(
                JOB_RETRYING, job, attempts=job.attempts, error=job.error,
                retry_at=final_state.retry_at.isoformat(),
            )
        else:
            logger.warning(f"Job {job.id} moved to failed log after {job.attempts} attempt(s)")
            await self._emit(JOB_FAILED, job, attempts=job.attempts, error=job.error)
        return final_state.name
