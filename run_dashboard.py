"""Example of how to run the pyjobflow dashboard."""
from __future__ import annotations

import argparse
import os

import uvicorn

from pyjobflow import JobQueue, RateLimiter, create_components, load_settings
from pyjobflow.dashboard.app import create_dashboard_app
from pyjobflow.storage.memory_storage import MemoryStore
from pyjobflow.storage.redis_storage import RedisStore


def create_components_for(storage: str, redis_url: str | None) -> tuple[JobQueue, RateLimiter]:
    storage = storage.strip().lower()
    if storage == "memory":
        return create_components(store=MemoryStore())
    if storage != "redis":
        raise ValueError("storage must be 'redis' or 'memory'")

    settings = load_settings()
    if redis_url:
        return create_components(settings, RedisStore.from_url(redis_url))
    return create_components(settings)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the pyjobflow dashboard")
    parser.add_argument(
        "--storage",
        choices=["redis", "memory"],
        default=os.getenv("PYJOBFLOW_STORAGE", "memory"),
        help="Store backend to use (env: PYJOBFLOW_STORAGE).",
    )
    parser.add_argument(
        "--redis-url",
        default=os.getenv("PYJOBFLOW_REDIS_URL"),
        help="Redis URL for the redis backend (env: PYJOBFLOW_REDIS_URL).",
    )
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    return parser


if __name__ == "__main__":
    args = build_arg_parser().parse_args()
    queue, limiter = create_components_for(args.storage, args.redis_url)
    app = create_dashboard_app(queue, limiter, debug=True)
    uvicorn.run(app, host=args.host, port=args.port)
