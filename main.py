# main.py
import asyncio
import logging

from pyjobflow import JobQueue, QUEUE_NAMES, RateLimiter
from pyjobflow.common.events import JOB_COMPLETED, JOB_FAILED
from pyjobflow.config import QueueSettings
from pyjobflow.storage.memory_storage import MemoryStore


async def send_welcome_email(payload):
    print(f"Sending welcome email to {payload['to']}")
    await asyncio.sleep(0.1)
    return {"delivered": True}


def rebuild_index(payload):
    raise RuntimeError(f"Index {payload['index']} is locked")


async def main():
    logging.basicConfig(level=logging.INFO)

    # 1. Build the queue and limiter over one store
    store = MemoryStore()
    queue = JobQueue(store, QueueSettings(poll_interval=0.1, backoff_delay_unit=200))
    limiter = RateLimiter(store)

    queue.subscribe(JOB_COMPLETED, lambda event: print(f"Completed {event.job_id}: {event.data}"))
    queue.subscribe(JOB_FAILED, lambda event: print(f"Failed {event.job_id}: {event.data}"))

    # 2. Register processors and start workers
    email_queue = QUEUE_NAMES["EMAIL_NOTIFICATIONS"]
    search_queue = QUEUE_NAMES["SEARCH_INDEXING"]
    queue.register_processor(email_queue, "welcome", send_welcome_email)
    queue.register_processor(search_queue, "rebuild", rebuild_index)
    await queue.start_processing(email_queue)
    await queue.start_processing(search_queue)

    # 3. Enqueue; the duplicate submission returns the same id
    first = await queue.add_job(email_queue, "welcome", {"to": "ada@example.com"})
    second = await queue.add_job(email_queue, "welcome", {"to": "ada@example.com"})
    print(f"Enqueued {first}, duplicate returned {second}")
    await queue.add_job(search_queue, "rebuild", {"index": "users"}, {"max_attempts": 2})

    # 4. Check a login budget
    for attempt in range(6):
        result = await limiter.check_login_rate_limit("203.0.113.7")
        print(f"Login attempt {attempt + 1}: allowed={result.allowed} remaining={result.remaining}")

    # 5. Wait, inspect, shut down
    await asyncio.sleep(2)
    print(f"\nEmail stats: {(await queue.get_queue_stats(email_queue)).to_dict()}")
    print(f"Search stats: {(await queue.get_queue_stats(search_queue)).to_dict()}")
    await queue.stop_processing()
    print("\nDemonstration finished.")


if __name__ == "__main__":
    asyncio.run(main())
