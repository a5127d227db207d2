"""Litestar application factory for the pyjobflow dashboard API."""
from typing import Optional

from litestar import Litestar
from litestar.datastructures import State
from litestar.di import Provide

from pyjobflow.client import JobQueue
from pyjobflow.ratelimit.limiter import RateLimiter

from .controllers.core import CoreController
from .controllers.jobs import JobsController, QueuesController


async def get_queue(state: State) -> JobQueue:
    return state.queue


async def get_limiter(state: State) -> Optional[RateLimiter]:
    return state.limiter


def create_dashboard_app(
    queue: JobQueue, limiter: Optional[RateLimiter] = None, debug: bool = False
) -> Litestar:
    """Create the Litestar application for the dashboard.

    Args:
        queue: The job queue to inspect.
        limiter: Optional rate limiter whose policies are listed.
        debug: Passed through to Litestar.

    Returns:
        A Litestar application serving JSON only.
    """
    return Litestar(
        route_handlers=[CoreController, QueuesController, JobsController],
        state=State({"queue": queue, "limiter": limiter}),
        dependencies={
            "queue": Provide(get_queue),
            "limiter": Provide(get_limiter),
        },
        debug=debug,
    )
