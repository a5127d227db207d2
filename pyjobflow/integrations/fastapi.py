"""FastAPI integration helpers for pyjobflow."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Mapping

try:
    from fastapi import FastAPI, HTTPException, Request, Response, status
except ImportError as exc:  # pragma: no cover - optional dependency
    raise ImportError(
        "FastAPI integration requires 'fastapi'. Install with `pip install pyjobflow[fastapi]`."
    ) from exc

from pyjobflow.client import JobQueue
from pyjobflow.config import RateLimitPolicy
from pyjobflow.ratelimit.limiter import RateLimiter, RateLimitResult

ANONYMOUS_IDENTIFIER = "anonymous"


def get_client_identifier(request: Request) -> str:
    """Authenticated user id, else the client address, else a fixed sentinel."""
    user = getattr(request.state, "user", None)
    user_id = getattr(user, "id", None) if user is not None else None
    if user_id is None:
        user_id = getattr(request.state, "user_id", None)
    if user_id is not None:
        return str(user_id)
    if request.client and request.client.host:
        return request.client.host
    return ANONYMOUS_IDENTIFIER


def rate_limit_dependency(
    limiter: RateLimiter,
    limit_type: str,
    config: RateLimitPolicy | Mapping[str, Any] | None = None,
    *,
    include_headers: bool | None = None,
) -> Callable[[Request, Response], Awaitable[RateLimitResult]]:
    """Build a route dependency that enforces ``limit_type`` per caller.

    Allowed requests get the X-RateLimit-* headers; denied ones are answered
    with 429 and ``Retry-After``. ``include_headers`` defaults to the limiter's
    setting.
    """
    if include_headers is None:
        include_headers = limiter.include_headers

    async def enforce_rate_limit(request: Request, response: Response) -> RateLimitResult:
        result = await limiter.check_rate_limit(get_client_identifier(request), limit_type, config)
        headers = result.headers()

        if result.allowed:
            if include_headers:
                response.headers.update(headers)
            return result

        if not include_headers:
            headers = {k: v for k, v in headers.items() if k == "Retry-After"}
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "Too Many Requests",
                "message": "Rate limit exceeded",
                "retry_after": result.retry_after,
            },
            headers=headers or None,
        )

    return enforce_rate_limit


def get_job_queue(request: Request) -> JobQueue:
    return request.app.state.pyjobflow_queue


class PyJobFlowFastAPIPlugin:
    """Starts queue workers with the application and stops them on shutdown.

        plugin = PyJobFlowFastAPIPlugin(queue, limiter).run_workers_for("email:notifications")
        app = FastAPI(lifespan=plugin.lifespan)
    """

    def __init__(self, queue: JobQueue, limiter: RateLimiter | None = None):
        self.queue = queue
        self.limiter = limiter
        self.queue_names: list[str] = []

    def run_workers_for(self, *queue_names: str) -> "PyJobFlowFastAPIPlugin":
        self.queue_names.extend(queue_names)
        return self

    async def startup(self) -> None:
        for queue_name in self.queue_names:
            await self.queue.start_processing(queue_name)

    async def shutdown(self) -> None:
        await self.queue.stop_processing()

    @asynccontextmanager
    async def lifespan(self, app: FastAPI):
        app.state.pyjobflow_queue = self.queue
        app.state.pyjobflow_limiter = self.limiter
        await self.startup()
        try:
            yield
        finally:
            await self.shutdown()
