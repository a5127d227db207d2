import asyncio
import threading
from datetime import datetime, timedelta, UTC

import pytest

from pyjobflow.client import JobQueue
from pyjobflow.common.events import JOB_COMPLETED, JOB_FAILED, JOB_RETRYING, JOB_STARTED
from pyjobflow.common.exceptions import StoreUnavailableError
from pyjobflow.common.job import Job
from pyjobflow.common.states import CompletedState, FailedState, RetryingState
from pyjobflow.config import QueueSettings
from pyjobflow.filters.builtin import RetryFilter, compute_backoff
from pyjobflow.server.context import ElectStateContext
from pyjobflow.server.processor import JobProcessor
from pyjobflow.server.worker import QueueWorker

EMAIL = "email:notifications"


async def wait_for_status(queue, job_id, status, timeout=2.0):
    for _ in range(int(timeout / 0.01)):
        job = await queue.get_job_status(job_id)
        if job is not None and job.status == status:
            return job
        await asyncio.sleep(0.01)
    raise AssertionError(f"Job {job_id} never reached {status}")


# --- Ordering and scheduling ---

def test_ready_jobs_run_highest_priority_first(job_queue, make_worker, drain):
    seen = []

    async def handler(job):
        seen.append(job.priority)

    job_queue.register_processor(EMAIL, "welcome", handler)

    async def scenario():
        for priority in (1, 5, 3):
            await job_queue.add_job(EMAIL, "welcome", {"p": priority}, {"priority": priority})
        await drain(make_worker(EMAIL))

    asyncio.run(scenario())
    assert seen == [5, 3, 1]


def test_concurrency_limits_dispatch_per_tick(store, clock, make_worker):
    queue = JobQueue(store, QueueSettings(concurrency=2), clock=clock)

    async def scenario():
        for n in range(5):
            await queue.add_job(EMAIL, "welcome", {"n": n})
        worker = make_worker(EMAIL)
        worker.settings = queue.settings
        dispatched = await worker.tick()
        in_flight = worker.in_flight
        await asyncio.gather(*list(worker._in_flight))
        return dispatched, in_flight, await queue.get_queue_stats(EMAIL)

    dispatched, in_flight, stats = asyncio.run(scenario())
    assert dispatched == in_flight == 2
    # No handler registered, so both attempts fail and are rescheduled.
    assert (stats.waiting, stats.delayed, stats.active) == (3, 2, 0)


def test_delayed_job_waits_until_due(job_queue, clock, make_worker, drain):
    done = []
    job_queue.register_processor(EMAIL, "digest", lambda job: done.append(job.id))

    async def scenario():
        job_id = await job_queue.add_job(EMAIL, "digest", {"day": 1}, {"delay": 5000})
        worker = make_worker(EMAIL)
        before = await drain(worker)
        clock.advance(4)
        almost = await drain(worker)
        clock.advance(1)
        due = await drain(worker)
        return job_id, (before, almost, due), await job_queue.get_job_status(job_id)

    job_id, dispatched, job = asyncio.run(scenario())
    assert dispatched == (0, 0, 1)
    assert done == [job_id]
    assert job.status == CompletedState.NAME


def test_only_one_poller_promotes_a_delayed_job(job_queue, clock, make_worker):
    async def scenario():
        await job_queue.add_job(EMAIL, "digest", {"day": 1}, {"delay": 1000})
        clock.advance(1)
        first, second = make_worker(EMAIL), make_worker(EMAIL)
        promoted = await asyncio.gather(first.promote_delayed_jobs(), second.promote_delayed_jobs())
        return promoted, await job_queue.get_queue_stats(EMAIL)

    promoted, stats = asyncio.run(scenario())
    assert sorted(promoted) == [0, 1]
    assert (stats.waiting, stats.delayed) == (1, 0)


def test_delayed_entry_without_record_is_dropped(job_queue, store, clock, make_worker):
    async def scenario():
        await store.zadd(job_queue.keys.delayed(EMAIL), {"digest:gone": clock.now * 1000})
        promoted = await make_worker(EMAIL).promote_delayed_jobs()
        return promoted, await job_queue.get_queue_stats(EMAIL)

    promoted, stats = asyncio.run(scenario())
    assert promoted == 0
    assert stats.total == 0


# --- Retries ---

def test_retries_are_exhausted_after_max_attempts(job_queue, make_worker, drain):
    events = []
    for name in (JOB_STARTED, JOB_RETRYING, JOB_FAILED):
        job_queue.subscribe(name, lambda event: events.append(event.name))

    def always_fails(job):
        raise RuntimeError("smtp down")

    job_queue.register_processor(EMAIL, "welcome", always_fails)

    async def scenario():
        job_id = await job_queue.add_job(EMAIL, "welcome", {"to": "a@b.com"})
        await drain(make_worker(EMAIL))
        return await job_queue.get_job_status(job_id), await job_queue.get_queue_stats(EMAIL)

    job, stats = asyncio.run(scenario())
    assert job.status == FailedState.NAME
    assert job.attempts == 3
    assert job.error == "smtp down"
    assert job.failed_at is not None
    assert (stats.failed, stats.completed, stats.delayed, stats.active) == (1, 0, 0, 0)
    assert events == [
        JOB_STARTED, JOB_RETRYING,
        JOB_STARTED, JOB_RETRYING,
        JOB_STARTED, JOB_FAILED,
    ]


def test_fail_fail_succeed_completes_on_third_attempt(job_queue, make_worker, drain):
    calls = []

    async def flaky(job):
        calls.append(job.attempts)
        if len(calls) < 3:
            raise ConnectionError("transient")
        return {"sent": True}

    job_queue.register_processor(EMAIL, "welcome", flaky)

    async def scenario():
        job_id = await job_queue.add_job(EMAIL, "welcome", {"to": "a@b.com"})
        await drain(make_worker(EMAIL))
        return await job_queue.get_job_status(job_id), await job_queue.get_queue_stats(EMAIL)

    job, stats = asyncio.run(scenario())
    assert calls == [1, 2, 3]
    assert job.status == CompletedState.NAME
    assert job.attempts == 3
    assert job.error is None
    assert job.state_data["result"] == {"sent": True}
    assert (stats.completed, stats.failed) == (1, 0)


def test_max_attempts_option_overrides_default(job_queue, make_worker, drain):
    def always_fails(job):
        raise ValueError("bad address")

    job_queue.register_processor(EMAIL, "welcome", always_fails)

    async def scenario():
        job_id = await job_queue.add_job(EMAIL, "welcome", {"to": "x"}, {"max_attempts": 1})
        await drain(make_worker(EMAIL))
        return await job_queue.get_job_status(job_id)

    job = asyncio.run(scenario())
    assert job.status == FailedState.NAME
    assert job.attempts == 1


def test_retry_waits_for_backoff_delay(store, clock, make_worker, drain):
    queue = JobQueue(store, QueueSettings(backoff_delay_unit=5000), clock=clock)
    attempts = []

    def fails_once(job):
        attempts.append(job.attempts)
        if job.attempts == 1:
            raise RuntimeError("first try fails")

    queue.register_processor(EMAIL, "welcome", fails_once)

    async def scenario():
        job_id = await queue.add_job(EMAIL, "welcome", {"to": "a@b.com"})
        worker = make_worker(EMAIL)
        worker.settings = queue.settings
        worker.handlers = queue._handlers
        await drain(worker)
        retrying = await queue.get_job_status(job_id)
        clock.advance(5)
        await drain(worker)
        return retrying, await queue.get_job_status(job_id)

    retrying, job = asyncio.run(scenario())
    assert retrying.status == RetryingState.NAME
    assert retrying.delay_until == datetime.fromtimestamp(clock.now, UTC)
    assert attempts == [1, 2]
    assert job.status == CompletedState.NAME


def test_handler_timeout_counts_as_failure(store, clock, make_worker, drain):
    queue = JobQueue(store, QueueSettings(job_timeout=0.05), clock=clock)

    async def hangs(job):
        await asyncio.sleep(5)

    queue.register_processor(EMAIL, "slow", hangs)

    async def scenario():
        job_id = await queue.add_job(EMAIL, "slow", {}, {"max_attempts": 1})
        worker = make_worker(EMAIL)
        worker.settings = queue.settings
        worker.handlers = queue._handlers
        await drain(worker)
        return await queue.get_job_status(job_id)

    job = asyncio.run(scenario())
    assert job.status == FailedState.NAME
    assert "timed out" in job.error
    assert job.state_data["exception_type"] == "JobTimeoutError"


def test_missing_processor_fails_the_job(job_queue, make_worker, drain):
    async def scenario():
        job_id = await job_queue.add_job(EMAIL, "unregistered", {}, {"max_attempts": 1})
        await drain(make_worker(EMAIL))
        return await job_queue.get_job_status(job_id)

    job = asyncio.run(scenario())
    assert job.status == FailedState.NAME
    assert job.error == f"No processor found for {EMAIL}:unregistered"


def test_sync_handlers_run_off_the_event_loop(job_queue, make_worker, drain):
    job_queue.register_processor(EMAIL, "welcome", lambda job: threading.get_ident())

    async def scenario():
        job_id = await job_queue.add_job(EMAIL, "welcome", {"to": "a@b.com"})
        await drain(make_worker(EMAIL))
        return await job_queue.get_job_status(job_id)

    job = asyncio.run(scenario())
    assert job.status == CompletedState.NAME
    assert job.state_data["result"] != threading.get_ident()


def test_completed_log_is_bounded(store, clock, make_worker, drain):
    queue = JobQueue(store, QueueSettings(history_limit=2), clock=clock)
    queue.register_processor(EMAIL, "welcome", lambda job: None)

    async def scenario():
        for n in range(3):
            await queue.add_job(EMAIL, "welcome", {"n": n})
        worker = make_worker(EMAIL)
        worker.settings = queue.settings
        worker.handlers = queue._handlers
        await drain(worker)
        return await queue.get_queue_stats(EMAIL)

    assert asyncio.run(scenario()).completed == 2


def test_processor_skips_vanished_job(job_queue, store):
    async def scenario():
        await store.zadd(job_queue.keys.active(EMAIL), {"welcome:gone": 1})
        processor = JobProcessor(
            EMAIL, "welcome:gone", store, job_queue.serializer, {}, job_queue.settings, job_queue.keys
        )
        return await processor.process(), await store.zcard(job_queue.keys.active(EMAIL))

    assert asyncio.run(scenario()) == (None, 0)


# --- Worker lifecycle ---

def test_start_and_stop_processing(job_queue):
    job_queue.register_processor(EMAIL, "welcome", lambda job: "sent")

    async def scenario():
        await job_queue.start_processing(EMAIL)
        job_id = await job_queue.add_job(EMAIL, "welcome", {"to": "a@b.com"})
        job = await wait_for_status(job_queue, job_id, CompletedState.NAME)
        running = job_queue.is_processing(EMAIL)
        await job_queue.stop_processing()
        return job, running

    job, running = asyncio.run(scenario())
    assert job.state_data["result"] == "sent"
    assert running is True
    assert job_queue.is_processing() is False


def test_start_processing_twice_is_a_no_op(job_queue):
    async def scenario():
        await job_queue.start_processing(EMAIL)
        worker = job_queue._workers[EMAIL]
        await job_queue.start_processing(EMAIL)
        same = job_queue._workers[EMAIL] is worker
        await job_queue.stop_processing(EMAIL)
        return same

    assert asyncio.run(scenario()) is True


def test_stop_waits_for_in_flight_jobs(job_queue):
    async def scenario():
        started = asyncio.Event()
        finished = []

        async def slow(job):
            started.set()
            await asyncio.sleep(0.2)
            finished.append(job.id)

        job_queue.register_processor(EMAIL, "slow", slow)
        await job_queue.start_processing(EMAIL)
        job_id = await job_queue.add_job(EMAIL, "slow", {})
        await asyncio.wait_for(started.wait(), timeout=2)
        await job_queue.stop_processing(EMAIL)
        return job_id, finished, await job_queue.get_job_status(job_id)

    job_id, finished, job = asyncio.run(scenario())
    assert finished == [job_id]
    assert job.status == CompletedState.NAME


def test_stop_processing_unknown_queue_is_harmless(job_queue):
    asyncio.run(job_queue.stop_processing("never-started"))
    assert job_queue.is_processing() is False


def test_completion_events_carry_result(job_queue):
    results = []
    job_queue.subscribe(JOB_COMPLETED, lambda event: results.append(event.data["result"]))
    job_queue.register_processor(EMAIL, "welcome", lambda job: job.payload["to"])

    async def scenario():
        await job_queue.start_processing(EMAIL)
        job_id = await job_queue.add_job(EMAIL, "welcome", {"to": "a@b.com"})
        await wait_for_status(job_queue, job_id, CompletedState.NAME)
        await job_queue.stop_processing()

    asyncio.run(scenario())
    assert results == ["a@b.com"]


# --- Backoff ---

@pytest.mark.parametrize(
    "backoff_type, attempts, expected",
    [
        ("linear", 1, 5000),
        ("linear", 3, 15000),
        ("fixed", 3, 5000),
        ("exponential", 1, 5000),
        ("exponential", 3, 20000),
    ],
)
def test_compute_backoff(backoff_type, attempts, expected):
    assert compute_backoff(attempts, backoff_type, 5000, 3_600_000) == expected


def test_backoff_is_capped():
    assert compute_backoff(30, "exponential", 5000, 60_000) == 60_000


def test_retry_filter_rejects_unknown_backoff():
    with pytest.raises(ValueError):
        RetryFilter(backoff_type="random")


def test_retry_filter_elects_retrying_state():
    now = datetime(2024, 1, 1, tzinfo=UTC)
    job = Job(id="welcome:1", queue=EMAIL, type="welcome", payload={}, attempts=2, max_attempts=3)
    context = ElectStateContext(job, FailedState("RuntimeError", "smtp down"), now)

    RetryFilter().on_state_election(context)

    assert isinstance(context.candidate_state, RetryingState)
    assert context.candidate_state.retry_at == now + timedelta(milliseconds=10000)
    assert "Attempt 2 of 3 failed: smtp down" in context.candidate_state.reason


def test_retry_filter_keeps_failure_when_exhausted():
    now = datetime(2024, 1, 1, tzinfo=UTC)
    job = Job(id="welcome:1", queue=EMAIL, type="welcome", payload={}, attempts=3, max_attempts=3)
    failed = FailedState("RuntimeError", "smtp down")
    context = ElectStateContext(job, failed, now)

    RetryFilter().on_state_election(context)

    assert context.candidate_state is failed


# --- Stuck job recovery ---

def test_recover_stuck_jobs_requeues_old_active_jobs(job_queue, store, clock):
    async def scenario():
        stuck_id = await job_queue.add_job(EMAIL, "welcome", {"to": "a@b.com"}, {"priority": 2})
        fresh_id = await job_queue.add_job(EMAIL, "welcome", {"to": "c@d.com"})
        await store.zpopmin(job_queue.keys.waiting(EMAIL), 2)
        await store.zadd(job_queue.keys.active(EMAIL), {stuck_id: clock.now * 1000})
        clock.advance(400)
        await store.zadd(job_queue.keys.active(EMAIL), {fresh_id: clock.now * 1000})

        recovered = await job_queue.recover_stuck_jobs(EMAIL, max_age_seconds=300)
        job = await job_queue.get_job_status(stuck_id)
        return stuck_id, recovered, job, await job_queue.get_queue_stats(EMAIL)

    stuck_id, recovered, job, stats = asyncio.run(scenario())
    assert recovered == [stuck_id]
    assert job.status == "pending"
    assert (stats.waiting, stats.active) == (1, 1)


def test_recover_stuck_jobs_drops_entries_without_record(job_queue, store, clock):
    async def scenario():
        await store.zadd(job_queue.keys.active(EMAIL), {"welcome:gone": clock.now * 1000})
        clock.advance(301)
        recovered = await job_queue.recover_stuck_jobs(EMAIL)
        return recovered, await job_queue.get_queue_stats(EMAIL)

    recovered, stats = asyncio.run(scenario())
    assert recovered == []
    assert stats.total == 0


# --- Store failures mid-move ---

def worker_for(queue):
    return QueueWorker(
        EMAIL, queue.store, queue.serializer, queue._handlers, queue.settings, queue.keys,
        events=queue.events, filters=queue.filters, clock=queue.clock,
    )


async def placement(queue):
    stats = await queue.get_queue_stats(EMAIL)
    return stats.waiting, stats.delayed, stats.active


def test_failed_pop_leaves_job_waiting(flaky_store, queue_settings, clock, drain):
    queue = JobQueue(flaky_store, queue_settings, clock=clock)
    queue.register_processor(EMAIL, "welcome", lambda job: "sent")

    async def scenario():
        job_id = await queue.add_job(EMAIL, "welcome", {"to": "a@b.com"})
        worker = worker_for(queue)
        flaky_store.fail_next("zpopmin_into")
        with pytest.raises(StoreUnavailableError):
            await worker.tick()
        after_failure = await placement(queue)
        await drain(worker)
        return after_failure, await queue.get_job_status(job_id)

    after_failure, job = asyncio.run(scenario())
    assert after_failure == (1, 0, 0)
    assert job.status == CompletedState.NAME
    assert job.attempts == 1


@pytest.mark.parametrize("command", ["get", "zmove"])
def test_failed_promotion_leaves_job_delayed(flaky_store, queue_settings, clock, command):
    queue = JobQueue(flaky_store, queue_settings, clock=clock)

    async def scenario():
        await queue.add_job(EMAIL, "digest", {"day": 1}, {"delay": 1000})
        clock.advance(1)
        worker = worker_for(queue)
        flaky_store.fail_next(command)
        with pytest.raises(StoreUnavailableError):
            await worker.promote_delayed_jobs()
        after_failure = await placement(queue)
        promoted = await worker.promote_delayed_jobs()
        return after_failure, promoted, await placement(queue)

    after_failure, promoted, after_retry = asyncio.run(scenario())
    assert after_failure == (0, 1, 0)
    assert promoted == 1
    assert after_retry == (1, 0, 0)


def test_failed_start_write_returns_job_to_waiting(flaky_store, queue_settings, clock):
    queue = JobQueue(flaky_store, queue_settings, clock=clock)
    calls = []
    queue.register_processor(EMAIL, "welcome", lambda job: calls.append(job.id))

    async def scenario():
        job_id = await queue.add_job(EMAIL, "welcome", {"to": "a@b.com"})
        worker = worker_for(queue)
        assert await worker._pop_next() == job_id
        processor = JobProcessor(
            EMAIL, job_id, flaky_store, queue.serializer, queue._handlers, queue.settings, queue.keys,
            clock=clock,
        )
        flaky_store.fail_next("set")
        with pytest.raises(StoreUnavailableError):
            await processor.process()
        return await placement(queue), await queue.get_job_status(job_id)

    after_failure, job = asyncio.run(scenario())
    assert after_failure == (1, 0, 0)
    assert calls == []
    assert job.status == "pending"
    assert job.attempts == 0


@pytest.mark.parametrize("handler_fails", [False, True], ids=["complete", "retry"])
def test_failed_outcome_write_keeps_job_recoverable(flaky_store, queue_settings, clock, drain, handler_fails):
    queue = JobQueue(flaky_store, queue_settings, clock=clock)

    def handler(job):
        if handler_fails and job.attempts == 1:
            raise ConnectionError("transient")
        return "sent"

    queue.register_processor(EMAIL, "welcome", handler)

    async def scenario():
        job_id = await queue.add_job(EMAIL, "welcome", {"to": "a@b.com"})
        worker = worker_for(queue)
        flaky_store.fail_next("pipeline")
        await drain(worker)
        after_failure = await placement(queue)
        clock.advance(301)
        recovered = await queue.recover_stuck_jobs(EMAIL)
        after_recovery = await placement(queue)
        await drain(worker)
        return job_id, after_failure, recovered, after_recovery, await queue.get_job_status(job_id)

    job_id, after_failure, recovered, after_recovery, job = asyncio.run(scenario())
    assert after_failure == (0, 0, 1)
    assert recovered == [job_id]
    assert after_recovery == (1, 0, 0)
    assert job.status == CompletedState.NAME
    assert job.attempts == 2


def test_failed_recovery_move_leaves_job_active(flaky_store, queue_settings, clock):
    queue = JobQueue(flaky_store, queue_settings, clock=clock)

    async def scenario():
        job_id = await queue.add_job(EMAIL, "welcome", {"to": "a@b.com"})
        await worker_for(queue)._pop_next()
        clock.advance(301)
        flaky_store.fail_next("zmove")
        with pytest.raises(StoreUnavailableError):
            await queue.recover_stuck_jobs(EMAIL)
        after_failure = await placement(queue)
        return job_id, after_failure, await queue.recover_stuck_jobs(EMAIL)

    job_id, after_failure, recovered = asyncio.run(scenario())
    assert after_failure == (0, 0, 1)
    assert recovered == [job_id]


def test_completion_event_result_matches_stored_record(job_queue, make_worker, drain):
    results = []
    sent_at = datetime(2024, 1, 1, tzinfo=UTC)
    job_queue.subscribe(JOB_COMPLETED, lambda event: results.append(event.data["result"]))
    job_queue.register_processor(EMAIL, "welcome", lambda job: {"sent_at": sent_at, "count": 1})

    async def scenario():
        job_id = await job_queue.add_job(EMAIL, "welcome", {"to": "a@b.com"})
        await drain(make_worker(EMAIL))
        return await job_queue.get_job_status(job_id)

    job = asyncio.run(scenario())
    assert results == [job.state_data["result"]]
    assert results[0] == {"sent_at": str(sent_at), "count": 1}
