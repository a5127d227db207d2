"""Health and rate limit routes."""
from typing import Any, Dict, Optional

from litestar import Controller, get

from pyjobflow.client import JobQueue
from pyjobflow.ratelimit.limiter import RateLimiter


class CoreController(Controller):
    path = "/"

    @get("/health")
    async def health(self, queue: JobQueue, limiter: Optional[RateLimiter]) -> Dict[str, Any]:
        report: Dict[str, Any] = {"queue": await queue.health_check()}
        if limiter is not None:
            report["rate_limiter"] = await limiter.health_check()
        return report

    @get("/rate-limits")
    async def rate_limits(self, limiter: Optional[RateLimiter]) -> Dict[str, Any]:
        if limiter is None:
            return {"types": {}}
        return {
            "types": {
                limit_type: limiter.get_rate_limit_config(limit_type).model_dump()
                for limit_type in limiter.get_rate_limit_types()
            }
        }
