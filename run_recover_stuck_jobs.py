"""CLI utility to requeue jobs stuck in a queue's active set."""

from __future__ import annotations

import argparse
import asyncio

from pyjobflow import load_settings
from pyjobflow.client import JobQueue
from pyjobflow.storage.redis_storage import RedisStore


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Recover stuck pyjobflow jobs")
    parser.add_argument("queues", nargs="+", help="Queue names to scan.")
    parser.add_argument(
        "--redis-url",
        default=None,
        help="Redis URL (defaults to PYJOBFLOW_REDIS_URL or redis://localhost:6379/0).",
    )
    parser.add_argument(
        "--max-age-seconds",
        type=int,
        default=300,
        help="Requeue jobs active for longer than this many seconds.",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Maximum number of jobs to recover per queue.",
    )
    return parser


async def recover(args: argparse.Namespace) -> int:
    settings = load_settings()
    store = RedisStore.from_url(args.redis_url or settings.redis.url)
    queue = JobQueue(store, settings.queue, key_prefix=settings.redis.key_prefix)
    total = 0
    try:
        for queue_name in args.queues:
            recovered = await queue.recover_stuck_jobs(
                queue_name, max_age_seconds=args.max_age_seconds, limit=args.limit
            )
            for job_id in recovered:
                print(f"{queue_name}: requeued {job_id}")
            total += len(recovered)
    finally:
        await store.close()
    return total


def main() -> None:
    args = build_arg_parser().parse_args()
    if not asyncio.run(recover(args)):
        print("No stuck jobs recovered.")


if __name__ == "__main__":
    main()
