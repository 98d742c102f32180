"""
IXP Contexts

Two contexts flow through the core:

- ``ServerContext``: the process-wide object built once at boot. It owns the
  registries, the event bus, the plugin manager and the pipeline, and is
  passed by reference to whoever needs them. There are no module globals.
- ``RequestContext``: short-lived, one per dispatched request, exclusively
  owned by the task serving that request.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from ixp.core.config import IXPConfig
    from ixp.dispatch import RequestDispatcher
    from ixp.events.bus import EventBus
    from ixp.intents.components import ComponentRegistry
    from ixp.intents.registry import IntentRegistry
    from ixp.intents.types import IntentDefinition
    from ixp.middleware.pipeline import MiddlewarePipeline
    from ixp.plugins.manager import PluginManager
    from ixp.services.registry import ServiceRegistry

_UNSET = object()


@dataclass
class ServerContext:
    """Process-wide collaborators, created at boot and torn down at shutdown."""

    config: "IXPConfig"
    intents: "IntentRegistry"
    services: "ServiceRegistry"
    events: "EventBus"
    plugins: "PluginManager"
    pipeline: "MiddlewarePipeline"
    dispatcher: Optional["RequestDispatcher"] = None
    components: Optional["ComponentRegistry"] = None
    logger: Any = field(default_factory=lambda: structlog.get_logger("ixp.server"))


class RequestContext:
    """
    Per-request state carried through the middleware chain.

    The service registry and event bus are shared references; the context
    never copies or restructures them.
    """

    def __init__(
        self,
        intent_name: str,
        raw_parameters: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        services: Optional["ServiceRegistry"] = None,
        events: Optional["EventBus"] = None,
        request_id: Optional[str] = None,
    ):
        self.request_id = request_id or uuid.uuid4().hex
        self.intent_name = intent_name
        self.raw_parameters: Dict[str, Any] = dict(raw_parameters or {})
        self.metadata: Dict[str, Any] = dict(metadata or {})

        self.intent: Optional["IntentDefinition"] = None
        self.parameters: Dict[str, Any] = {}

        # Scratch space shared between middleware of one request
        self.state: Dict[str, Any] = {}

        self.error: Optional[BaseException] = None
        self._response: Any = _UNSET
        self._cancelled = False
        self._cancel_reason: Optional[str] = None

        self._services = services
        self._events = events
        self.started_at = time.monotonic()

    # === Shared collaborators (read-only) ===

    @property
    def services(self) -> Optional["ServiceRegistry"]:
        return self._services

    @property
    def events(self) -> Optional["EventBus"]:
        return self._events

    # === Response slot ===

    @property
    def response(self) -> Any:
        return None if self._response is _UNSET else self._response

    @response.setter
    def response(self, value: Any) -> None:
        self._response = value

    @property
    def has_response(self) -> bool:
        return self._response is not _UNSET

    def clear_response(self) -> None:
        self._response = _UNSET

    # === Cancellation ===

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def cancel_reason(self) -> Optional[str]:
        return self._cancel_reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Mark the request cancelled; later stages will not run."""
        if not self._cancelled:
            self._cancelled = True
            self._cancel_reason = reason

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000

    def __repr__(self) -> str:
        return (
            f"RequestContext(id={self.request_id}, intent={self.intent_name!r}, "
            f"cancelled={self._cancelled})"
        )
