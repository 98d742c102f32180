"""
IXP Middleware

Onion-model request processing: ordered middleware around the intent
handler, an error phase, and a timeout race.

Usage:
    from ixp.middleware import MiddlewarePipeline, MiddlewarePhase

    pipeline = MiddlewarePipeline(default_timeout=5.0)

    async def timing(context, next):
        start = time.perf_counter()
        await next()
        context.state["elapsed"] = time.perf_counter() - start

    pipeline.use("timing", timing, phase=MiddlewarePhase.GLOBAL, order=1)
    outcome = await pipeline.execute(context, handler)
"""

from ixp.middleware.auth import (
    AuthToken,
    Principal,
    TokenStore,
    create_auth_middleware,
    extract_token,
)
from ixp.middleware.logging import create_logging_middleware, create_request_id_middleware
from ixp.middleware.pipeline import MiddlewarePipeline
from ixp.middleware.rate_limit import SlidingWindowRateLimiter, create_rate_limit_middleware
from ixp.middleware.types import (
    MiddlewareDescriptor,
    MiddlewareHandler,
    MiddlewarePhase,
    Next,
    PipelineOutcome,
)

__all__ = [
    # Core
    "MiddlewareDescriptor",
    "MiddlewareHandler",
    "MiddlewarePhase",
    "MiddlewarePipeline",
    "Next",
    "PipelineOutcome",
    # Auth
    "AuthToken",
    "Principal",
    "TokenStore",
    "create_auth_middleware",
    "extract_token",
    # Rate limiting
    "SlidingWindowRateLimiter",
    "create_rate_limit_middleware",
    # Logging
    "create_logging_middleware",
    "create_request_id_middleware",
]
