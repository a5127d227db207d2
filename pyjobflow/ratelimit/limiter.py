# pyjobflow/ratelimit/limiter.py
"""Sliding-window rate limiting over the key-value store.

Each (type, identifier) pair keeps one counter per fixed window. A check
blends the previous window's count, weighted by how much of it still
overlaps the sliding window, with the current window's count:

    sliding = floor(previous * (1 - elapsed_fraction) + current)

Counters expire after two windows, so the previous one is still readable
right after a rollover and nothing has to be cleaned up.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from pyjobflow.common.exceptions import UnknownLimitTypeError
from pyjobflow.common.keys import KeySpace
from pyjobflow.config import DEFAULT_RATE_LIMITS, RateLimitPolicy, RateLimitSettings
from pyjobflow.storage.base import KeyValueStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate limit check.

    Attributes:
        allowed: Whether the request may proceed.
        limit: Max requests per window.
        remaining: Requests left before denial (0 when blocked).
        reset_time: Epoch milliseconds when the current window ends.
        retry_after: Seconds to wait, only set when denied.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_time: int
    retry_after: int | None = None

    @property
    def reset_at(self) -> int:
        """Window end in epoch seconds, as sent in ``X-RateLimit-Reset``."""
        return math.ceil(self.reset_time / 1000)

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if not self.allowed and self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


@dataclass(frozen=True)
class RateLimitStatus:
    current: int
    limit: int
    remaining: int
    reset_time: int


def sliding_window_count(previous: int, current: int, elapsed_fraction: float) -> int:
    """Approximate number of requests in the sliding window ending now."""
    elapsed_fraction = min(max(elapsed_fraction, 0.0), 1.0)
    return max(0, math.floor(previous * (1 - elapsed_fraction) + current))


class RateLimiter:
    """Approximate sliding-window limiter keyed by identifier and limit type.

    Store failures never block callers: checks fail open and are logged.
    """

    def __init__(
        self,
        store: KeyValueStore,
        policies: Mapping[str, RateLimitPolicy] | None = None,
        *,
        key_prefix: str = "pyjobflow",
        fallback_window: int = 60,
        include_headers: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self._policies: dict[str, RateLimitPolicy] = dict(
            DEFAULT_RATE_LIMITS if policies is None else policies
        )
        self.keys = KeySpace(key_prefix)
        self._fallback_window = fallback_window
        self.include_headers = include_headers
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        store: KeyValueStore,
        settings: RateLimitSettings,
        *,
        key_prefix: str = "pyjobflow",
        clock: Callable[[], float] = time.time,
    ) -> "RateLimiter":
        return cls(
            store,
            settings.policies,
            key_prefix=key_prefix,
            fallback_window=settings.fallback_window,
            include_headers=settings.include_headers,
            clock=clock,
        )

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _resolve_policy(
        self, limit_type: str, config: RateLimitPolicy | Mapping[str, Any] | None
    ) -> RateLimitPolicy:
        if config is not None:
            if isinstance(config, RateLimitPolicy):
                return config
            return RateLimitPolicy.model_validate(config)
        policy = self._policies.get(limit_type)
        if policy is None:
            raise UnknownLimitTypeError(limit_type)
        return policy

    def _window_keys(self, identifier: str, limit_type: str, window_start: int, window_ms: int):
        current_key = self.keys.rate(limit_type, identifier, window_start)
        previous_key = self.keys.rate(limit_type, identifier, window_start - window_ms)
        return current_key, previous_key

    @staticmethod
    def _fail_open(policy: RateLimitPolicy, now: int) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            limit=policy.max,
            remaining=policy.max,
            reset_time=now + policy.window_millis,
        )

    async def check_rate_limit(
        self,
        identifier: str,
        limit_type: str,
        config: RateLimitPolicy | Mapping[str, Any] | None = None,
    ) -> RateLimitResult:
        """Count this request and decide whether it is allowed.

        The counter is incremented even for denied requests, so a client
        that keeps retrying inside the window extends its own penalty.

        Raises:
            UnknownLimitTypeError: No explicit ``config`` and no registered
                policy for ``limit_type``.
        """
        policy = self._resolve_policy(limit_type, config)
        now = self._now_ms()

        try:
            if not await self.store.is_connected():
                logger.warning("Rate limit store not connected, allowing request")
                return self._fail_open(policy, now)

            window_ms = policy.window_millis
            window_start = now // window_ms * window_ms
            window_end = window_start + window_ms
            current_key, previous_key = self._window_keys(
                identifier, limit_type, window_start, window_ms
            )

            current_count, _, previous_raw = await (
                self.store.pipeline()
                .incr(current_key)
                .expire(current_key, policy.window * 2)
                .get(previous_key)
                .execute()
            )
            previous_count = int(previous_raw) if previous_raw else 0
        except Exception:
            logger.warning("Rate limit check error, allowing request", exc_info=True)
            return self._fail_open(policy, now)

        sliding_count = sliding_window_count(
            previous_count, int(current_count), (now - window_start) / window_ms
        )
        allowed = sliding_count <= policy.max
        retry_after = None if allowed else math.ceil((window_end - now) / 1000)

        if not allowed:
            logger.warning(
                f"Rate limit exceeded for {limit_type}: {sliding_count}/{policy.max}, "
                f"retry after {retry_after}s"
            )

        return RateLimitResult(
            allowed=allowed,
            limit=policy.max,
            remaining=max(0, policy.max - sliding_count),
            reset_time=window_end,
            retry_after=retry_after,
        )

    async def check_api_rate_limit(self, identifier: str) -> RateLimitResult:
        return await self.check_rate_limit(identifier, "API_REQUESTS")

    async def check_login_rate_limit(self, identifier: str) -> RateLimitResult:
        return await self.check_rate_limit(identifier, "LOGIN_ATTEMPTS")

    async def check_registration_rate_limit(self, identifier: str) -> RateLimitResult:
        return await self.check_rate_limit(identifier, "REGISTRATION")

    async def check_password_reset_rate_limit(self, identifier: str) -> RateLimitResult:
        return await self.check_rate_limit(identifier, "PASSWORD_RESET")

    async def reset_rate_limit(self, identifier: str, limit_type: str) -> bool:
        """Drop the current and previous window counters.

        Returns whether the store was reachable, not how many keys existed.
        """
        policy = self._policies.get(limit_type)
        window_ms = (policy.window if policy else self._fallback_window) * 1000
        window_start = self._now_ms() // window_ms * window_ms
        try:
            if not await self.store.is_connected():
                return False
            await self.store.delete(
                *self._window_keys(identifier, limit_type, window_start, window_ms)
            )
        except Exception:
            logger.warning("Reset rate limit error", exc_info=True)
            return False
        return True

    async def get_rate_limit_status(
        self, identifier: str, limit_type: str
    ) -> RateLimitStatus | None:
        """Sliding count without consuming budget; None when unknown or unreachable."""
        policy = self._policies.get(limit_type)
        if policy is None:
            return None

        now = self._now_ms()
        window_ms = policy.window_millis
        window_start = now // window_ms * window_ms
        current_key, previous_key = self._window_keys(
            identifier, limit_type, window_start, window_ms
        )
        try:
            if not await self.store.is_connected():
                return None
            current_raw, previous_raw = await (
                self.store.pipeline().get(current_key).get(previous_key).execute()
            )
        except Exception:
            logger.warning("Get rate limit status error", exc_info=True)
            return None

        sliding_count = sliding_window_count(
            int(previous_raw) if previous_raw else 0,
            int(current_raw) if current_raw else 0,
            (now - window_start) / window_ms,
        )
        return RateLimitStatus(
            current=sliding_count,
            limit=policy.max,
            remaining=max(0, policy.max - sliding_count),
            reset_time=window_start + window_ms,
        )

    def get_rate_limit_types(self) -> list[str]:
        return list(self._policies)

    def get_rate_limit_config(self, limit_type: str) -> RateLimitPolicy | None:
        return self._policies.get(limit_type)

    def update_rate_limit_config(
        self, limit_type: str, config: RateLimitPolicy | Mapping[str, Any]
    ) -> RateLimitPolicy:
        policy = self._resolve_policy(limit_type, config)
        self._policies[limit_type] = policy
        logger.info(f"Rate limit for {limit_type} set to {policy.max}/{policy.window}s")
        return policy

    async def health_check(self) -> dict[str, Any]:
        try:
            connected = await self.store.is_connected()
        except Exception:
            connected = False
        return {
            "status": "healthy" if connected else "unhealthy",
            "connected": connected,
            "types": self.get_rate_limit_types(),
        }
