"""Litestar integration helpers for pyjobflow."""

from __future__ import annotations

try:
    from litestar import Litestar
    from litestar.datastructures import State
    from litestar.di import Provide
except ImportError as exc:  # pragma: no cover - optional dependency
    raise ImportError(
        "Litestar integration requires 'litestar'. Install with `pip install pyjobflow[litestar]`."
    ) from exc

from pyjobflow.client import JobQueue
from pyjobflow.ratelimit.limiter import RateLimiter


def get_job_queue(state: State) -> JobQueue:
    return state.pyjobflow_queue


def get_rate_limiter(state: State) -> RateLimiter | None:
    return state.pyjobflow_limiter


def pyjobflow_dependencies() -> dict[str, Provide]:
    return {
        "job_queue": Provide(get_job_queue, sync_to_thread=False),
        "rate_limiter": Provide(get_rate_limiter, sync_to_thread=False),
    }


def configure_pyjobflow(
    app: Litestar, queue: JobQueue, limiter: RateLimiter | None = None
) -> JobQueue:
    app.state.pyjobflow_queue = queue
    app.state.pyjobflow_limiter = limiter
    return queue
