# pyjobflow/execution/performer.py
import asyncio
import inspect
from typing import Any, Callable, Optional

from pyjobflow.common.exceptions import JobTimeoutError
from pyjobflow.common.job import Job


async def _invoke(handler: Callable, job: Job) -> Any:
    if inspect.iscoroutinefunction(handler):
        return await handler(job)
    result = await asyncio.to_thread(handler, job)
    # Sync wrappers around coroutine functions hand back an awaitable.
    if inspect.isawaitable(result):
        return await result
    return result


async def perform_job(handler: Callable, job: Job, timeout: Optional[float] = None) -> Any:
    """Runs ``handler(job)``, raising ``JobTimeoutError`` once ``timeout`` elapses."""
    if timeout is None:
        return await _invoke(handler, job)
    try:
        return await asyncio.wait_for(_invoke(handler, job), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise JobTimeoutError(job.id, timeout) from e
