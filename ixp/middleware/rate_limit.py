"""
IXP Rate Limiting Middleware

Sliding-window request limits keyed per client.
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, Optional

import structlog

from ixp.core.context import RequestContext
from ixp.core.errors import RateLimitError
from ixp.middleware.types import MiddlewareDescriptor, MiddlewarePhase, Next

logger = structlog.get_logger(__name__)

KeyFunc = Callable[[RequestContext], str]


def default_key(context: RequestContext) -> str:
    """Client key from metadata: client_id, then ip, then "unknown"."""
    metadata = context.metadata
    return str(metadata.get("client_id") or metadata.get("ip") or "unknown")


class SlidingWindowRateLimiter:
    """
    Sliding window rate limiter.

    Args:
        limit: Requests allowed per window
        window_seconds: Window length
    """

    def __init__(self, limit: int, window_seconds: float):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self._requests: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self._last_sweep = time.monotonic()

    def _sweep(self, window_start: float) -> None:
        # Clients whose newest request left the window hold no state
        idle = [key for key, timestamps in self._requests.items() if timestamps[-1] <= window_start]
        for key in idle:
            del self._requests[key]
        if idle:
            logger.debug("Rate limit windows expired", clients=len(idle))

    async def check(self, key: str) -> int:
        """
        Admit one request for ``key``.

        Returns:
            Requests remaining in the current window

        Raises:
            RateLimitError: If the window is full
        """
        now = time.monotonic()
        window_start = now - self.window_seconds

        async with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(window_start)
                self._last_sweep = now

            timestamps = self._requests[key]
            while timestamps and timestamps[0] <= window_start:
                timestamps.popleft()

            if len(timestamps) >= self.limit:
                retry_after = timestamps[0] + self.window_seconds - now
                raise RateLimitError(self.limit, self.window_seconds, max(retry_after, 0.0))

            timestamps.append(now)
            return self.limit - len(timestamps)

    async def reset(self, key: Optional[str] = None) -> None:
        async with self._lock:
            if key is None:
                self._requests.clear()
            else:
                self._requests.pop(key, None)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "tracked_clients": len(self._requests),
            "limit": self.limit,
            "window_seconds": self.window_seconds,
        }


def create_rate_limit_middleware(
    limit: int = 100,
    window_seconds: float = 900.0,
    key_func: Optional[KeyFunc] = None,
    limiter: Optional[SlidingWindowRateLimiter] = None,
    name: str = "rate-limit",
    order: int = 10,
    phase: MiddlewarePhase = MiddlewarePhase.GLOBAL,
) -> MiddlewareDescriptor:
    """Middleware raising RateLimitError once a client exceeds its window."""
    limiter = limiter or SlidingWindowRateLimiter(limit, window_seconds)
    key_of = key_func or default_key

    async def rate_limit(context: RequestContext, next: Next) -> None:
        key = key_of(context)
        try:
            remaining = await limiter.check(key)
        except RateLimitError:
            logger.warning(
                "Rate limit exceeded",
                client=key,
                request_id=context.request_id,
                intent=context.intent_name,
            )
            raise
        context.state["rate_limit_remaining"] = remaining
        await next()

    return MiddlewareDescriptor(name=name, handler=rate_limit, phase=phase, order=order)
