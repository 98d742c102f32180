"""
IXP Request Logging Middleware

Request ID propagation and structured request/response logging.
"""

from __future__ import annotations

import time
import uuid
from typing import Callable, Optional

import structlog

from ixp.core.context import RequestContext
from ixp.middleware.types import MiddlewareDescriptor, MiddlewarePhase, Next

logger = structlog.get_logger(__name__)


def create_request_id_middleware(
    metadata_key: str = "request_id",
    generator: Optional[Callable[[], str]] = None,
    name: str = "request-id",
    order: int = 0,
) -> MiddlewareDescriptor:
    """Adopt the caller's request ID from metadata, or generate one."""
    generate = generator or (lambda: uuid.uuid4().hex)

    async def request_id(context: RequestContext, next: Next) -> None:
        supplied = context.metadata.get(metadata_key)
        context.request_id = str(supplied) if supplied else generate()
        context.state["request_id"] = context.request_id
        await next()

    return MiddlewareDescriptor(
        name=name, handler=request_id, phase=MiddlewarePhase.GLOBAL, order=order,
    )


def create_logging_middleware(
    include_parameters: bool = False,
    slow_request_ms: Optional[float] = None,
    name: str = "request-logging",
    order: int = 5,
) -> MiddlewareDescriptor:
    """
    Log every request on entry and on completion.

    Failures are logged and re-raised for the error phase.
    """

    async def log_request(context: RequestContext, next: Next) -> None:
        start = time.perf_counter()
        log = logger.bind(request_id=context.request_id, intent=context.intent_name)

        if include_parameters:
            log.info("Request received", parameters=context.raw_parameters)
        else:
            log.info("Request received")

        try:
            await next()
        except Exception as e:
            log.warning(
                "Request raised",
                error_type=type(e).__name__,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            raise

        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        if slow_request_ms is not None and duration_ms > slow_request_ms:
            log.warning("Slow request completed", duration_ms=duration_ms)
        else:
            log.info("Request completed", duration_ms=duration_ms)

    return MiddlewareDescriptor(
        name=name, handler=log_request, phase=MiddlewarePhase.GLOBAL, order=order,
    )
