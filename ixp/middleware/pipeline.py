"""
IXP Middleware Pipeline

Onion-model execution engine:
- global + request middleware merged in ascending order around the handler
- response-phase middleware run around the produced response
- error-phase middleware for thrown exceptions, with a default mapping
- a guarded next() continuation per stage
- cooperative cancellation checked at each stage start
- a timeout race that never kills the running chain
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

import structlog

from ixp.core.context import RequestContext
from ixp.core.errors import (
    IXPError,
    MultipleNextInvocationError,
    RequestCancelledError,
    RequestTimeoutError,
)
from ixp.middleware.types import (
    MiddlewareDescriptor,
    MiddlewareHandler,
    MiddlewarePhase,
    Next,
    PipelineOutcome,
    StageHandler,
)

logger = structlog.get_logger(__name__)


@dataclass
class _CompiledChain:
    forward: Tuple[MiddlewareDescriptor, ...]
    response: Tuple[MiddlewareDescriptor, ...]
    error: Tuple[MiddlewareDescriptor, ...]


class _RunState:
    """Per-execution bookkeeping shared by every stage of one request."""

    __slots__ = ("fatal", "timeout")

    def __init__(self, timeout: float):
        self.fatal: Optional[MultipleNextInvocationError] = None
        # Effective limit for this execution, per-call override included
        self.timeout = timeout


async def _settle(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


async def _noop() -> None:
    return None


class MiddlewarePipeline:
    """
    Ordered middleware chain executed once per request.

    Args:
        default_timeout: Seconds to race each execution against; 0 disables
        debug: Include tracebacks in mapped internal errors
    """

    def __init__(self, default_timeout: float = 30.0, debug: bool = False):
        self.default_timeout = default_timeout
        self.debug = debug

        self._middleware: Dict[str, MiddlewareDescriptor] = {}
        self._seq = itertools.count()
        self._compiled: Optional[_CompiledChain] = None
        self._orphans: Set[asyncio.Task] = set()

        self._stats = {
            "executed": 0,
            "succeeded": 0,
            "failed": 0,
            "recovered": 0,
            "timed_out": 0,
        }

    # === Registration ===

    def add(self, descriptor: MiddlewareDescriptor) -> MiddlewareDescriptor:
        """
        Register a middleware.

        Raises:
            ValueError: If a middleware with the same name exists
        """
        if descriptor.name in self._middleware:
            raise ValueError(f"Middleware '{descriptor.name}' is already registered")

        descriptor.seq = next(self._seq)
        self._middleware[descriptor.name] = descriptor
        self._compiled = None

        logger.debug(
            "Middleware registered",
            middleware=descriptor.name,
            phase=descriptor.phase.value,
            order=descriptor.order,
        )
        return descriptor

    def use(
        self,
        name: str,
        handler: MiddlewareHandler,
        phase: MiddlewarePhase = MiddlewarePhase.REQUEST,
        order: int = 0,
    ) -> MiddlewareDescriptor:
        return self.add(MiddlewareDescriptor(name=name, handler=handler, phase=phase, order=order))

    def remove(self, name: str) -> bool:
        if self._middleware.pop(name, None) is None:
            return False
        self._compiled = None
        logger.debug("Middleware removed", middleware=name)
        return True

    def clear(self) -> None:
        self._middleware.clear()
        self._compiled = None

    def list(self, phase: Optional[MiddlewarePhase] = None) -> List[MiddlewareDescriptor]:
        descriptors = sorted(self._middleware.values(), key=lambda d: d.sort_key)
        if phase is None:
            return descriptors
        return [d for d in descriptors if d.phase == MiddlewarePhase(phase)]

    def __contains__(self, name: object) -> bool:
        return name in self._middleware

    def __len__(self) -> int:
        return len(self._middleware)

    def _chain(self) -> _CompiledChain:
        if self._compiled is None:
            ordered = sorted(self._middleware.values(), key=lambda d: d.sort_key)
            self._compiled = _CompiledChain(
                forward=tuple(
                    d for d in ordered
                    if d.phase in (MiddlewarePhase.GLOBAL, MiddlewarePhase.REQUEST)
                ),
                response=tuple(d for d in ordered if d.phase == MiddlewarePhase.RESPONSE),
                error=tuple(d for d in ordered if d.phase == MiddlewarePhase.ERROR),
            )
        return self._compiled

    # === Execution ===

    async def execute(
        self,
        context: RequestContext,
        handler: StageHandler,
        timeout: Optional[float] = None,
    ) -> PipelineOutcome:
        """
        Run the chain for one request.

        Args:
            context: The request's context
            handler: Innermost stage; its return value becomes the response
            timeout: Seconds to race against (None = pipeline default, 0 = none)

        Returns:
            PipelineOutcome with the response or the mapped error
        """
        limit = self.default_timeout if timeout is None else timeout
        started = time.perf_counter()
        self._stats["executed"] += 1

        if not limit or limit <= 0:
            outcome = await self._run(context, handler, _RunState(self.default_timeout))
        else:
            task = asyncio.ensure_future(self._run(context, handler, _RunState(limit)))
            try:
                done, _ = await asyncio.wait({task}, timeout=limit)
            except asyncio.CancelledError:
                task.cancel()
                raise

            if task in done:
                outcome = task.result()
            else:
                # Race lost: the chain keeps running but its result is discarded
                context.cancel("timeout")
                self._orphans.add(task)
                task.add_done_callback(self._reap)
                self._stats["timed_out"] += 1
                logger.warning(
                    "Request timed out",
                    request_id=context.request_id,
                    intent=context.intent_name,
                    timeout_seconds=limit,
                )
                outcome = PipelineOutcome(
                    error=RequestTimeoutError(limit, context.intent_name),
                    timed_out=True,
                )

        outcome.duration_ms = (time.perf_counter() - started) * 1000
        if outcome.success:
            self._stats["succeeded"] += 1
            if outcome.recovered_from is not None:
                self._stats["recovered"] += 1
        else:
            self._stats["failed"] += 1
        return outcome

    async def _run(
        self,
        context: RequestContext,
        handler: StageHandler,
        state: _RunState,
    ) -> PipelineOutcome:
        chain = self._chain()

        async def innermost() -> None:
            self._check_cancelled(context, state)
            context.response = await _settle(handler(context))
            await self._stage(context, chain.response, 0, _noop, state)

        try:
            await self._stage(context, chain.forward, 0, innermost, state)
        except Exception as e:
            if state.fatal is not None:
                return self._fatal(context, state.fatal)
            if context.cancelled:
                return PipelineOutcome(error=self._cancel_error(context, state, e))
            return await self._handle_error(context, e, chain.error, state)

        if state.fatal is not None:
            # A middleware swallowed the guard error; it is still fatal
            return self._fatal(context, state.fatal)

        return PipelineOutcome(response=context.response)

    async def _stage(
        self,
        context: RequestContext,
        stages: Tuple[MiddlewareDescriptor, ...],
        index: int,
        terminal: Next,
        state: _RunState,
    ) -> None:
        self._check_cancelled(context, state)

        if index >= len(stages):
            await terminal()
            return

        descriptor = stages[index]
        called = False

        async def next_() -> None:
            nonlocal called
            if called:
                state.fatal = MultipleNextInvocationError(descriptor.name)
                raise state.fatal
            called = True
            await self._stage(context, stages, index + 1, terminal, state)

        await _settle(descriptor.handler(context, next_))

    def _check_cancelled(self, context: RequestContext, state: _RunState) -> None:
        if context.cancelled:
            raise self._cancel_error(context, state)

    def _cancel_error(
        self,
        context: RequestContext,
        state: _RunState,
        cause: Optional[BaseException] = None,
    ) -> IXPError:
        if isinstance(cause, (RequestTimeoutError, RequestCancelledError)):
            return cause
        if context.cancel_reason == "timeout":
            return RequestTimeoutError(state.timeout, context.intent_name)
        return RequestCancelledError(
            f"Request was cancelled: {context.cancel_reason}"
            if context.cancel_reason and context.cancel_reason != "cancelled"
            else "Request was cancelled"
        )

    # === Error phase ===

    async def _handle_error(
        self,
        context: RequestContext,
        error: Exception,
        handlers: Tuple[MiddlewareDescriptor, ...],
        state: _RunState,
    ) -> PipelineOutcome:
        context.error = error
        context.clear_response()

        for descriptor in handlers:
            called = False

            async def next_() -> None:
                nonlocal called
                if called:
                    state.fatal = MultipleNextInvocationError(descriptor.name)
                    raise state.fatal
                called = True

            try:
                await _settle(descriptor.handler(context, next_))
            except Exception as handler_error:
                if state.fatal is not None:
                    return self._fatal(context, state.fatal)
                logger.error(
                    "Error middleware failed",
                    middleware=descriptor.name,
                    request_id=context.request_id,
                    error=str(handler_error),
                )
                continue

            if state.fatal is not None:
                return self._fatal(context, state.fatal)

            if context.has_response:
                produced = context.response
                if isinstance(produced, BaseException):
                    return PipelineOutcome(error=self.map_error(produced))
                logger.debug(
                    "Error handled by middleware",
                    middleware=descriptor.name,
                    error_type=type(error).__name__,
                )
                return PipelineOutcome(response=produced, recovered_from=error)

        mapped = self.map_error(error)
        log = logger.error if mapped.status_code >= 500 else logger.info
        log(
            "Request failed",
            request_id=context.request_id,
            intent=context.intent_name,
            error_kind=mapped.error_kind,
            error=mapped.message,
        )
        return PipelineOutcome(error=mapped)

    def map_error(self, error: BaseException) -> IXPError:
        """Default mapping: IXP errors pass through, anything else is internal."""
        return IXPError.from_exception(error, debug=self.debug)

    def _fatal(self, context: RequestContext, error: MultipleNextInvocationError) -> PipelineOutcome:
        logger.error(
            "Middleware called next() more than once",
            middleware=error.middleware_name,
            request_id=context.request_id,
        )
        return PipelineOutcome(error=error)

    # === Orphaned executions ===

    def _reap(self, task: asyncio.Task) -> None:
        self._orphans.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("Timed-out request raised after its deadline", error=str(error))

    @property
    def pending_orphans(self) -> int:
        return len(self._orphans)

    async def aclose(self) -> None:
        """Cancel executions that outlived their timeout."""
        orphans = list(self._orphans)
        for task in orphans:
            task.cancel()
        if orphans:
            await asyncio.gather(*orphans, return_exceptions=True)
            logger.info("Cancelled orphaned requests", count=len(orphans))
        self._orphans.clear()

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self._stats)
        stats["middleware"] = len(self._middleware)
        stats["pending_orphans"] = len(self._orphans)
        return stats
