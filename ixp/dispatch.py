"""
IXP Request Dispatcher

Top-level orchestrator for a single request:

    dispatch -> pipeline (global/request middleware)
             -> intent resolution + parameter validation
             -> handler
             -> pipeline (response middleware)
             -> DispatchResult

Resolution and validation run inside the innermost pipeline stage, so a
NotFoundError or ValidationError travels through the error phase like any
other failure.
"""

from __future__ import annotations

import inspect
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Union, runtime_checkable

import structlog

from ixp.core.context import RequestContext
from ixp.core.errors import (
    ComponentNotFoundError,
    InternalError,
    IXPError,
    ParameterValidationError,
)
from ixp.events.bus import EventBus
from ixp.intents.components import ComponentRegistry
from ixp.intents.matcher import IntentMatcher
from ixp.intents.registry import IntentRegistry
from ixp.intents.types import IntentDefinition
from ixp.intents.validator import ParameterValidator, ValidationIssue
from ixp.middleware.pipeline import MiddlewarePipeline
from ixp.middleware.types import PipelineOutcome
from ixp.services.registry import ServiceRegistry

logger = structlog.get_logger(__name__)

REQUEST_COMPLETED = "request:completed"

IntentHandler = Callable[[Dict[str, Any], RequestContext], Any]


@runtime_checkable
class IntentDataProvider(Protocol):
    """
    Supplies extra data merged over the validated parameters before the
    handler runs. May be sync or async; failures are logged and ignored.
    """

    def resolve_intent_data(
        self,
        intent: IntentDefinition,
        parameters: Dict[str, Any],
        context: RequestContext,
    ) -> Any:
        ...


@dataclass
class DispatchRequest:
    """
    A request as handed over by the transport layer.

    Raises:
        ParameterValidationError: On construction, if the intent name is
            missing or the parameters/metadata are not objects
    """

    intent_name: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    request_id: Optional[str] = None

    def __post_init__(self):
        if self.parameters is None:
            self.parameters = {}
        if self.metadata is None:
            self.metadata = {}

        issues: List[ValidationIssue] = []
        if not isinstance(self.intent_name, str) or not self.intent_name:
            issues.append(ValidationIssue("intentName", "is required", "required"))
        if not isinstance(self.parameters, dict):
            issues.append(ValidationIssue("parameters", "must be an object", "type"))
        if not isinstance(self.metadata, dict):
            issues.append(ValidationIssue("metadata", "must be an object", "type"))

        if issues:
            raise ParameterValidationError(
                issues, self.intent_name if isinstance(self.intent_name, str) else None
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DispatchRequest":
        """Build from a wire-style dict (``intentName`` or ``intent_name``)."""
        return cls(
            intent_name=data.get("intentName", data.get("intent_name", data.get("intent"))),
            parameters=data.get("parameters"),
            metadata=data.get("metadata"),
            request_id=data.get("requestId", data.get("request_id")),
        )


@dataclass
class DispatchResult:
    """Outcome of one dispatch; ``to_dict()`` is the outward shape."""

    success: bool
    request_id: str
    intent: str
    component: Optional[str] = None
    data: Any = None
    error: Optional[IXPError] = None
    duration_ms: float = 0.0
    recovered: bool = False
    expose_details: bool = False

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.error_kind if self.error is not None else None

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, "component": self.component, "data": self.data}

        result: Dict[str, Any] = {
            "success": False,
            "errorKind": self.error.error_kind,
            "message": self.error.message,
        }
        if self.expose_details and self.error.details:
            result["details"] = self.error.details
        return result


class RequestDispatcher:
    """
    Resolves, validates and executes intents through the middleware pipeline.

    Args:
        intents: Intent registry consulted for exact-name resolution
        pipeline: Middleware pipeline wrapped around every request
        validator: Parameter validator (default: strip unknown, no coercion)
        services: Service registry exposed on each RequestContext
        events: Event bus; ``request:completed`` is published after each dispatch
        matcher: Optional strategy consulted before exact lookup
        components: When given, an intent's component must be registered here
        data_provider: Optional source of extra handler data
        debug: Expose error details for internal errors too
    """

    def __init__(
        self,
        intents: IntentRegistry,
        pipeline: MiddlewarePipeline,
        validator: Optional[ParameterValidator] = None,
        services: Optional[ServiceRegistry] = None,
        events: Optional[EventBus] = None,
        matcher: Optional[IntentMatcher] = None,
        components: Optional[ComponentRegistry] = None,
        data_provider: Optional[IntentDataProvider] = None,
        debug: bool = False,
    ):
        self.intents = intents
        self.pipeline = pipeline
        self.validator = validator or ParameterValidator()
        self.services = services
        self.events = events
        self.matcher = matcher
        self.components = components
        self.data_provider = data_provider
        self.debug = debug

        self._handlers: Dict[str, IntentHandler] = {}
        self._stats = {"dispatched": 0, "succeeded": 0, "failed": 0, "recovered": 0}
        self._errors_by_kind: Counter = Counter()

    # === Handler table ===

    def register_handler(self, ref: str, handler: IntentHandler, override: bool = False) -> None:
        """
        Bind a handler reference used by intent definitions.

        Raises:
            ValueError: If ``ref`` is already bound and ``override`` is False
        """
        if not callable(handler):
            raise TypeError(f"Handler for '{ref}' is not callable")
        if ref in self._handlers and not override:
            raise ValueError(f"Handler '{ref}' is already registered")
        self._handlers[ref] = handler
        logger.debug("Handler registered", handler_ref=ref)

    def unregister_handler(self, ref: str) -> bool:
        return self._handlers.pop(ref, None) is not None

    def handler_refs(self) -> List[str]:
        return list(self._handlers)

    def _handler_for(self, intent: IntentDefinition) -> Optional[IntentHandler]:
        ref = intent.handler_ref
        if ref is None:
            return None
        if callable(ref):
            return ref

        handler = self._handlers.get(ref)
        if handler is None:
            raise InternalError(
                f"No handler registered for '{ref}'",
                {"intent": intent.name, "handler_ref": ref},
            )
        return handler

    # === Dispatch ===

    def _resolve(self, context: RequestContext) -> IntentDefinition:
        name = context.intent_name
        if self.matcher is not None:
            matched = self.matcher.match(name, context.raw_parameters, self.intents)
            if matched:
                name = matched
        return self.intents.resolve(name)

    async def _invoke(self, context: RequestContext) -> Any:
        """Innermost pipeline stage."""
        intent = self._resolve(context)
        context.intent = intent

        outcome = self.validator.validate(intent.parameters, context.raw_parameters)
        if not outcome.valid:
            raise ParameterValidationError(outcome.errors, intent.name)
        context.parameters = outcome.value

        if self.components is not None:
            component = self.components.get(intent.component)
            if component is None:
                raise ComponentNotFoundError(intent.component, intent.name)
            if component.deprecated:
                logger.warning(
                    "Resolved deprecated component",
                    component=component.name,
                    intent=intent.name,
                )

        if self.data_provider is not None:
            context.parameters = await self._with_provided_data(intent, context)

        handler = self._handler_for(intent)
        if handler is None:
            return dict(context.parameters)

        result = handler(context.parameters, context)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _with_provided_data(
        self,
        intent: IntentDefinition,
        context: RequestContext,
    ) -> Dict[str, Any]:
        try:
            extra = self.data_provider.resolve_intent_data(intent, dict(context.parameters), context)
            if inspect.isawaitable(extra):
                extra = await extra
        except Exception as e:
            logger.warning(
                "Intent data provider failed",
                intent=intent.name,
                request_id=context.request_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return context.parameters

        if not extra:
            return context.parameters
        if not isinstance(extra, Mapping):
            logger.warning(
                "Intent data provider returned a non-mapping",
                intent=intent.name,
                result_type=type(extra).__name__,
            )
            return context.parameters
        return {**context.parameters, **extra}

    async def dispatch(
        self,
        request: Union[DispatchRequest, Dict[str, Any]],
        timeout: Optional[float] = None,
    ) -> DispatchResult:
        """
        Dispatch one request. Never raises for request-level failures.

        Args:
            request: DispatchRequest or its wire dict form
            timeout: Overrides the pipeline's default timeout

        Returns:
            DispatchResult
        """
        start = time.perf_counter()

        if isinstance(request, dict):
            try:
                request = DispatchRequest.from_dict(request)
            except ParameterValidationError as e:
                name = request.get("intentName") or request.get("intent_name") or ""
                result = DispatchResult(
                    success=False,
                    request_id="",
                    intent=str(name),
                    error=e,
                    duration_ms=(time.perf_counter() - start) * 1000,
                    expose_details=True,
                )
                await self._complete(result)
                return result

        context = RequestContext(
            intent_name=request.intent_name,
            raw_parameters=request.parameters,
            metadata=request.metadata,
            services=self.services,
            events=self.events,
            request_id=request.request_id,
        )

        outcome = await self.pipeline.execute(context, self._invoke, timeout=timeout)
        result = self._result(context, outcome)
        result.duration_ms = (time.perf_counter() - start) * 1000

        await self._complete(result)
        return result

    def _result(self, context: RequestContext, outcome: PipelineOutcome) -> DispatchResult:
        intent_name = context.intent.name if context.intent is not None else context.intent_name

        if outcome.success:
            return DispatchResult(
                success=True,
                request_id=context.request_id,
                intent=intent_name,
                component=context.intent.component if context.intent is not None else None,
                data=outcome.response,
                recovered=outcome.recovered_from is not None,
            )

        error = outcome.error
        return DispatchResult(
            success=False,
            request_id=context.request_id,
            intent=intent_name,
            error=error,
            expose_details=self.debug or error.status_code < 500,
        )

    async def _complete(self, result: DispatchResult) -> None:
        self._stats["dispatched"] += 1
        if result.success:
            self._stats["succeeded"] += 1
            if result.recovered:
                self._stats["recovered"] += 1
        else:
            self._stats["failed"] += 1
            self._errors_by_kind[result.error_kind] += 1

        logger.debug(
            "Request dispatched",
            request_id=result.request_id,
            intent=result.intent,
            success=result.success,
            error_kind=result.error_kind,
            duration_ms=round(result.duration_ms, 2),
        )

        if self.events is not None:
            await self.events.publish(
                REQUEST_COMPLETED,
                {
                    "request_id": result.request_id,
                    "intent": result.intent,
                    "success": result.success,
                    "error_kind": result.error_kind,
                    "duration_ms": result.duration_ms,
                },
            )

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self._stats)
        stats["errors_by_kind"] = dict(self._errors_by_kind)
        stats["handlers"] = len(self._handlers)
        return stats
