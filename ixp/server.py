"""
IXP Server

Boot object that builds the ServerContext once, owns its lifecycle and is
the single entry point handed to the transport layer.

Usage:
    server = IXPServer(config, plugins=[create_health_plugin()])
    server.register_handler("weather.get", get_weather)

    async with server:
        result = await server.dispatch({"intentName": "get_weather", "parameters": {...}})
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import structlog

from ixp.core.config import IXPConfig, get_config
from ixp.core.context import ServerContext
from ixp.core.errors import PluginNotFoundError
from ixp.core.logging import setup_logging
from ixp.dispatch import (
    DispatchRequest,
    DispatchResult,
    IntentDataProvider,
    IntentHandler,
    RequestDispatcher,
)
from ixp.events.bus import EventBus
from ixp.intents.components import ComponentRegistry
from ixp.intents.matcher import IntentMatcher
from ixp.intents.registry import IntentRegistry
from ixp.intents.validator import ParameterValidator
from ixp.middleware.pipeline import MiddlewarePipeline
from ixp.middleware.types import MiddlewareDescriptor, MiddlewareHandler, MiddlewarePhase
from ixp.plugins.builtin import create_metrics_plugin
from ixp.plugins.manager import PluginManager
from ixp.plugins.types import HealthStatus, Plugin, PluginInfo, PluginState
from ixp.services.registry import ServiceRegistry
from ixp.telemetry.metrics import MetricsService

logger = structlog.get_logger(__name__)

PluginFactory = Callable[[], Plugin]


class ServerStatus(str, Enum):
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class IXPServer:
    """
    The IXP core, assembled.

    Args:
        config: Boot configuration (default: environment-derived)
        plugins: Plugins installed as one batch at start()
        plugin_factories: Static name -> factory table; ``config.plugins``
            names are resolved against it
        middleware: Middleware registered at construction
        matcher: Optional intent matcher consulted before exact lookup
        components: Component registry to check intents against; built
            from ``config.components_path`` when that is set
        data_provider: Optional source of extra handler data
        configure_logging: Call setup_logging() from config
    """

    def __init__(
        self,
        config: Optional[IXPConfig] = None,
        plugins: Iterable[Plugin] = (),
        plugin_factories: Optional[Dict[str, PluginFactory]] = None,
        middleware: Iterable[MiddlewareDescriptor] = (),
        matcher: Optional[IntentMatcher] = None,
        components: Optional[ComponentRegistry] = None,
        data_provider: Optional[IntentDataProvider] = None,
        configure_logging: bool = True,
    ):
        self.config = config or get_config()
        if configure_logging:
            setup_logging(self.config.logging.level.value, self.config.logging.format)

        events = EventBus(max_history=self.config.events.max_history)
        services = ServiceRegistry(event_bus=events)
        pipeline = MiddlewarePipeline(
            default_timeout=self.config.pipeline.request_timeout_seconds,
            debug=self.config.debug,
        )
        intents = IntentRegistry()
        if components is None and self.config.components_path is not None:
            components = ComponentRegistry()

        self.context = ServerContext(
            config=self.config,
            intents=intents,
            services=services,
            events=events,
            plugins=PluginManager(services, events),
            pipeline=pipeline,
            components=components,
        )
        self.context.dispatcher = RequestDispatcher(
            intents=intents,
            pipeline=pipeline,
            validator=ParameterValidator(
                unknown=self.config.pipeline.unknown_parameters,
                coerce=self.config.pipeline.coerce_parameters,
            ),
            services=services,
            events=events,
            matcher=matcher,
            components=components,
            data_provider=data_provider,
            debug=self.config.debug,
        )

        self.metrics: Optional[MetricsService] = None
        self._boot_plugins: List[Plugin] = []
        if self.config.metrics.enabled:
            self.metrics = MetricsService(max_samples=self.config.metrics.max_samples)
            self._boot_plugins.append(create_metrics_plugin(self.metrics))
        self._boot_plugins.extend(plugins)
        self._plugin_factories: Dict[str, PluginFactory] = dict(plugin_factories or {})

        for descriptor in middleware:
            pipeline.add(descriptor)

        self._status = ServerStatus.CREATED
        self._started_at: Optional[datetime] = None
        self._lifecycle_lock = asyncio.Lock()

    async def __aenter__(self) -> "IXPServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    # === Shortcuts ===

    @property
    def intents(self) -> IntentRegistry:
        return self.context.intents

    @property
    def services(self) -> ServiceRegistry:
        return self.context.services

    @property
    def events(self) -> EventBus:
        return self.context.events

    @property
    def plugins(self) -> PluginManager:
        return self.context.plugins

    @property
    def pipeline(self) -> MiddlewarePipeline:
        return self.context.pipeline

    @property
    def dispatcher(self) -> RequestDispatcher:
        return self.context.dispatcher

    @property
    def components(self) -> Optional[ComponentRegistry]:
        return self.context.components

    @property
    def status(self) -> ServerStatus:
        return self._status

    def is_ready(self) -> bool:
        return self._status == ServerStatus.RUNNING

    # === Lifecycle ===

    async def start(self) -> None:
        """Load intents and install boot plugins as one batch."""
        async with self._lifecycle_lock:
            if self._status == ServerStatus.RUNNING:
                return

            self._status = ServerStatus.STARTING
            logger.info("Starting IXP server", service=self.config.service_name)

            try:
                if self.config.intents_path is not None:
                    count = self.intents.load_file(self.config.intents_path)
                    logger.info(
                        "Intents loaded",
                        path=str(self.config.intents_path),
                        count=count,
                    )
                if self.config.components_path is not None:
                    self.components.load_file(self.config.components_path)

                boot = list(self._boot_plugins)
                for name in self.config.plugins:
                    factory = self._plugin_factories.get(name)
                    if factory is None:
                        raise PluginNotFoundError(name)
                    boot.append(factory())

                if boot:
                    await self.plugins.install_all(boot)
            except Exception as e:
                self._status = ServerStatus.ERROR
                logger.error("IXP server failed to start", error=str(e))
                raise

            self._status = ServerStatus.RUNNING
            self._started_at = datetime.now()
            logger.info(
                "IXP server started",
                service=self.config.service_name,
                intents=len(self.intents),
                plugins=self.plugins.running(),
            )

    async def shutdown(self) -> None:
        """Stop plugins dependents-first and cancel orphaned requests."""
        async with self._lifecycle_lock:
            if self._status in (ServerStatus.STOPPED, ServerStatus.CREATED):
                self._status = ServerStatus.STOPPED
                return

            self._status = ServerStatus.STOPPING
            logger.info("Shutting down IXP server", service=self.config.service_name)

            await self.plugins.shutdown()
            await self.pipeline.aclose()

            self._status = ServerStatus.STOPPED
            logger.info("IXP server shutdown complete")

    # === Request surface ===

    async def dispatch(
        self,
        request: Union[DispatchRequest, Dict[str, Any]],
        timeout: Optional[float] = None,
    ) -> DispatchResult:
        return await self.dispatcher.dispatch(request, timeout=timeout)

    def register_handler(self, ref: str, handler: IntentHandler, override: bool = False) -> None:
        self.dispatcher.register_handler(ref, handler, override=override)

    def add_middleware(
        self,
        name_or_descriptor: Union[str, MiddlewareDescriptor],
        handler: Optional[MiddlewareHandler] = None,
        phase: MiddlewarePhase = MiddlewarePhase.REQUEST,
        order: int = 0,
    ) -> MiddlewareDescriptor:
        if isinstance(name_or_descriptor, MiddlewareDescriptor):
            return self.pipeline.add(name_or_descriptor)
        if handler is None:
            raise TypeError("add_middleware() needs a handler when given a name")
        return self.pipeline.use(name_or_descriptor, handler, phase=phase, order=order)

    def remove_middleware(self, name: str) -> bool:
        return self.pipeline.remove(name)

    # === Plugins at runtime ===

    async def add_plugin(self, plugin: Plugin) -> PluginInfo:
        return await self.plugins.install(plugin)

    async def remove_plugin(self, name: str) -> bool:
        """Uninstall and forget a plugin. Returns False if it could not be stopped."""
        await self.plugins.uninstall(name)
        return await self.plugins.remove(name)

    # === Introspection ===

    async def health_check(self) -> Dict[str, Any]:
        """
        Aggregate server health.

        Stopped plugins are ignored; any other non-healthy plugin degrades
        the server. A server that is not running is unhealthy.
        """
        plugin_health: Dict[str, Dict[str, Any]] = {}
        degraded = False
        for info in self.plugins.list():
            if info.state == PluginState.STOPPED:
                continue
            health = await self.plugins.check_health(info.name)
            plugin_health[info.name] = health.to_dict()
            if health.status != HealthStatus.HEALTHY:
                degraded = True

        if self._status != ServerStatus.RUNNING:
            status = HealthStatus.UNHEALTHY
        elif degraded:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        return {
            "status": status.value,
            "service": self.config.service_name,
            "server": self._status.value,
            "uptime_seconds": (
                (datetime.now() - self._started_at).total_seconds()
                if self._started_at and self._status == ServerStatus.RUNNING
                else 0
            ),
            "intents": len(self.intents),
            "components": len(self.components) if self.components is not None else None,
            "services": len(self.services),
            "plugins": plugin_health,
        }

    def get_metrics(self) -> Dict[str, Any]:
        metrics: Dict[str, Any] = {
            "dispatcher": self.dispatcher.get_stats(),
            "pipeline": self.pipeline.get_stats(),
            "events": self.events.get_stats(),
            "plugins": self.plugins.get_stats(),
        }
        if self.components is not None:
            metrics["components"] = self.components.get_stats()
        if self.metrics is not None:
            metrics["requests"] = self.metrics.get_metrics()
        return metrics
