"""
IXP Plugin Manager

Central coordinator for plugin operations:
- Dependency-checked install with start, and rollback on failure
- Uninstall guarded by live dependents
- Topologically ordered batch install with batch rollback
- Hook execution
- Health checks and ordered shutdown

Install, uninstall and batch operations are serialized by one lock per
manager, even for independent plugins.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from ixp.core.errors import (
    DependentExistsError,
    DuplicatePluginError,
    IXPError,
    MissingDependencyError,
    PluginLifecycleError,
    PluginNotFoundError,
)
from ixp.events.bus import EventBus
from ixp.plugins.graph import DependencyGraph
from ixp.plugins.hooks import HookRegistration, HookSystem
from ixp.plugins.lifecycle import LifecycleTracker
from ixp.plugins.types import (
    HealthStatus,
    Plugin,
    PluginEvent,
    PluginHealth,
    PluginInfo,
    PluginState,
)
from ixp.services.registry import ServiceRegistry

logger = structlog.get_logger(__name__)


class ScopedServiceRegistry:
    """
    Plugin view of the shared ServiceRegistry.

    Registrations are stamped with the plugin as owner; every other
    attribute is read from the shared registry.
    """

    def __init__(self, registry: ServiceRegistry, owner: str):
        self._registry = registry
        self._owner = owner

    def register(self, name: str, instance: Any, *, override: bool = False) -> None:
        self._registry.register(name, instance, override=override, owner=self._owner)

    def register_factory(
        self,
        name: str,
        factory: Callable[[], Any],
        *,
        singleton: bool = True,
        override: bool = False,
    ) -> None:
        self._registry.register_factory(
            name, factory, singleton=singleton, override=override, owner=self._owner
        )

    def __getattr__(self, attr: str) -> Any:
        return getattr(self._registry, attr)

    def __contains__(self, name: object) -> bool:
        return name in self._registry

    def __len__(self) -> int:
        return len(self._registry)


class ScopedEventBus:
    """
    Plugin view of the shared EventBus.

    Subscriptions are stamped with the plugin as owner; publishing and
    queries go straight to the shared bus.
    """

    def __init__(self, bus: EventBus, owner: str):
        self._bus = bus
        self._owner = owner

    def subscribe(self, channel: str, handler: Callable[[Any], Any], *, priority: int = 0) -> str:
        return self._bus.subscribe(channel, handler, priority=priority, owner=self._owner)

    def __getattr__(self, attr: str) -> Any:
        return getattr(self._bus, attr)


class PluginContext:
    """
    Context handed to a plugin's install().

    Exposes owner-scoped views of the shared service registry and event bus
    plus a scoped logger. Everything registered through the context is
    tagged with the plugin as owner so it is removed on uninstall or
    rollback.
    """

    def __init__(
        self,
        plugin_name: str,
        service_registry: ServiceRegistry,
        event_bus: EventBus,
        hooks: HookSystem,
    ):
        self._plugin_name = plugin_name
        self._services = ScopedServiceRegistry(service_registry, plugin_name)
        self._events = ScopedEventBus(event_bus, plugin_name)
        self._hooks = hooks
        self._logger = structlog.get_logger(f"plugin.{plugin_name}").bind(plugin=plugin_name)

    @property
    def plugin_name(self) -> str:
        return self._plugin_name

    @property
    def service_registry(self) -> ScopedServiceRegistry:
        return self._services

    @property
    def event_bus(self) -> ScopedEventBus:
        return self._events

    @property
    def logger(self) -> structlog.stdlib.BoundLogger:
        """Plugin-scoped logger."""
        return self._logger

    # === Owner-scoped registration ===

    def register_service(self, name: str, instance: Any, override: bool = False) -> None:
        self._services.register(name, instance, override=override)

    def register_factory(
        self,
        name: str,
        factory: Callable[[], Any],
        singleton: bool = True,
        override: bool = False,
    ) -> None:
        self._services.register_factory(name, factory, singleton=singleton, override=override)

    def subscribe(self, channel: str, handler: Callable[[Any], Any], priority: int = 0) -> str:
        return self._events.subscribe(channel, handler, priority=priority)

    def register_hook(
        self,
        hook_name: str,
        handler: Callable[..., Any],
        priority: int = 0,
        required: bool = False,
    ) -> HookRegistration:
        return self._hooks.register(
            hook_name, self._plugin_name, handler, priority=priority, required=required
        )


class PluginManager:
    """
    Plugin lifecycle manager.

    Features:
    - REGISTERED -> INITIALIZING -> INITIALIZED -> STARTING -> RUNNING
      -> STOPPING -> STOPPED, with FAILED reachable from any state
    - Rollback of hooks, services and subscriptions on failure
    - Lifecycle events on the bus (plugin:installed, plugin:failed,
      plugin:uninstalled)
    """

    def __init__(
        self,
        services: ServiceRegistry,
        events: EventBus,
        hooks: Optional[HookSystem] = None,
    ):
        self.services = services
        self.events = events
        self.hooks = hooks or HookSystem()

        self._plugins: Dict[str, PluginInfo] = {}
        self._lifecycle = LifecycleTracker()
        self._lock = asyncio.Lock()

    # === Install ===

    async def install(self, plugin: Plugin) -> PluginInfo:
        """
        Install and start a plugin.

        Args:
            plugin: Plugin capability record

        Returns:
            The plugin's runtime info, in state RUNNING

        Raises:
            DuplicatePluginError: If a live plugin with that name exists
            MissingDependencyError: If a dependency is not RUNNING
            PluginLifecycleError: If install() or start() raised; the plugin
                is FAILED and rolled back
        """
        async with self._lock:
            return await self._install(plugin)

    async def _install(self, plugin: Plugin) -> PluginInfo:
        name = plugin.name

        existing = self._plugins.get(name)
        if existing is not None and not existing.state.is_terminal:
            raise DuplicatePluginError(name)

        missing = [
            dep for dep in plugin.dependencies
            if dep not in self._plugins or self._plugins[dep].state != PluginState.RUNNING
        ]
        if missing:
            raise MissingDependencyError(name, missing)

        info = PluginInfo(plugin=plugin)
        self._plugins[name] = info
        context = PluginContext(name, self.services, self.events, self.hooks)

        operation = "install"
        try:
            self._lifecycle.transition(info, PluginState.INITIALIZING)
            for hook_name, spec in plugin.hooks.items():
                self.hooks.register(
                    hook_name, name, spec.handler,
                    priority=spec.priority, required=spec.required,
                )
            await plugin.install(context)
            self._lifecycle.transition(info, PluginState.INITIALIZED)

            operation = "start"
            self._lifecycle.transition(info, PluginState.STARTING)
            if plugin.start is not None:
                await plugin.start()
            self._lifecycle.transition(info, PluginState.RUNNING)
        except Exception as e:
            await self._fail(info, operation, e)
            raise PluginLifecycleError(name, operation, e) from e
        except asyncio.CancelledError as e:
            await self._fail(info, operation, e)
            raise

        logger.info("Plugin installed", plugin=name, version=plugin.version)
        await self._publish(PluginEvent.INSTALLED, {"name": name, "version": plugin.version})
        return info

    async def install_all(self, plugins: Iterable[Plugin]) -> List[PluginInfo]:
        """
        Install a set of plugins in dependency order.

        Dependencies between members of the set are ordered topologically;
        dependencies outside the set must already be RUNNING. The first
        failure uninstalls everything this batch installed, in reverse
        order, and re-raises.

        Raises:
            CyclicDependencyError: If the set's dependency graph has a cycle
        """
        by_name: Dict[str, Plugin] = {}
        for plugin in plugins:
            if plugin.name in by_name:
                raise DuplicatePluginError(plugin.name)
            by_name[plugin.name] = plugin

        order = DependencyGraph.from_dependencies(
            {name: p.dependencies for name, p in by_name.items()}
        ).topological_sort()

        async with self._lock:
            installed: List[str] = []
            try:
                for name in order:
                    await self._install(by_name[name])
                    installed.append(name)
            except Exception as e:
                logger.error(
                    "Batch install failed, rolling back",
                    failed_after=installed,
                    error=str(e),
                )
                for name in reversed(installed):
                    try:
                        await self._uninstall(name)
                    except IXPError as rollback_error:
                        logger.error(
                            "Batch rollback failed for plugin",
                            plugin=name,
                            error=str(rollback_error),
                        )
                raise

            logger.info("Batch install complete", plugins=order)
            return [self._plugins[name] for name in order]

    # === Uninstall ===

    async def uninstall(self, name: str) -> PluginInfo:
        """
        Stop a running plugin and remove its hooks, services and subscriptions.

        Raises:
            PluginNotFoundError: If the plugin is unknown
            DependentExistsError: If live plugins depend on it
            PluginLifecycleError: If stop() raised; the plugin is FAILED and
                its registrations are removed anyway
        """
        async with self._lock:
            return await self._uninstall(name)

    async def _uninstall(self, name: str) -> PluginInfo:
        info = self._plugins.get(name)
        if info is None:
            raise PluginNotFoundError(name)

        if info.state.is_terminal:
            logger.debug("Plugin already stopped", plugin=name, state=info.state.value)
            return info

        dependents = self.dependents_of(name)
        if dependents:
            raise DependentExistsError(name, dependents)

        try:
            self._lifecycle.transition(info, PluginState.STOPPING)
            if info.plugin.stop is not None:
                await info.plugin.stop()
        except Exception as e:
            await self._fail(info, "stop", e)
            raise PluginLifecycleError(name, "stop", e) from e

        await self._cleanup(name)
        self._lifecycle.transition(info, PluginState.STOPPED)

        logger.info("Plugin uninstalled", plugin=name)
        await self._publish(PluginEvent.UNINSTALLED, {"name": name})
        return info

    async def remove(self, name: str) -> bool:
        """
        Forget a STOPPED or FAILED plugin record.

        Returns:
            True if removed, False if the plugin is still live
        """
        async with self._lock:
            info = self._plugins.get(name)
            if info is None:
                raise PluginNotFoundError(name)
            if not info.state.is_terminal:
                logger.warning("Cannot remove live plugin", plugin=name, state=info.state.value)
                return False
            del self._plugins[name]
            return True

    async def shutdown(self) -> List[str]:
        """
        Uninstall every live plugin, dependents first.

        Returns:
            Names of plugins stopped cleanly
        """
        async with self._lock:
            live = {
                name: info.dependencies
                for name, info in self._plugins.items()
                if info.state.is_active
            }
            order = DependencyGraph.from_dependencies(live).topological_sort_reverse()

            stopped: List[str] = []
            for name in order:
                try:
                    await self._uninstall(name)
                    stopped.append(name)
                except IXPError as e:
                    logger.error("Plugin shutdown failed", plugin=name, error=str(e))

            logger.info("Plugin manager shutdown complete", stopped=stopped)
            return stopped

    # === Failure handling ===

    async def _fail(self, info: PluginInfo, operation: str, error: BaseException) -> None:
        self._lifecycle.fail(info, error)
        await self._cleanup(info.name)
        logger.error(
            "Plugin operation failed",
            plugin=info.name,
            operation=operation,
            error=str(error),
            error_type=type(error).__name__,
        )
        await self._publish(
            PluginEvent.FAILED,
            {"name": info.name, "operation": operation, "error": str(error)},
        )

    async def _cleanup(self, name: str) -> None:
        """Remove everything a plugin registered."""
        hooks = self.hooks.unregister_plugin(name)
        subscriptions = self.events.unsubscribe_all(name)
        services = await self.services.unregister_owner(name)
        logger.debug(
            "Plugin registrations removed",
            plugin=name,
            hooks=hooks,
            subscriptions=subscriptions,
            services=services,
        )

    async def _publish(self, event: PluginEvent, data: Dict[str, Any]) -> None:
        await self.events.publish(event.value, data)

    # === Hooks ===

    async def run_hook(self, hook_name: str, *args, **kwargs) -> List[Any]:
        """
        Run a hook point.

        Returns:
            Results of handlers that did not raise

        Raises:
            Exception: Whatever a required handler raised
        """
        return await self.hooks.run(hook_name, *args, **kwargs)

    # === Queries ===

    def get(self, name: str) -> Optional[PluginInfo]:
        return self._plugins.get(name)

    def get_state(self, name: str) -> Optional[PluginState]:
        info = self._plugins.get(name)
        return info.state if info else None

    def list(self, state: Optional[PluginState] = None) -> List[PluginInfo]:
        if state is None:
            return list(self._plugins.values())
        return [info for info in self._plugins.values() if info.state == state]

    def running(self) -> List[str]:
        return [name for name, info in self._plugins.items() if info.state == PluginState.RUNNING]

    def dependents_of(self, name: str) -> List[str]:
        """Live plugins that declare a dependency on ``name``."""
        return sorted(
            other for other, info in self._plugins.items()
            if other != name and info.state.is_active and name in info.dependencies
        )

    def __contains__(self, name: object) -> bool:
        return name in self._plugins

    def __len__(self) -> int:
        return len(self._plugins)

    # === Health ===

    async def check_health(self, name: str) -> PluginHealth:
        """
        Check one plugin.

        A plugin that is not RUNNING, or whose health check raises, is unhealthy.
        """
        info = self._plugins.get(name)
        if info is None:
            raise PluginNotFoundError(name)

        if info.state != PluginState.RUNNING:
            return PluginHealth(
                HealthStatus.UNHEALTHY,
                message=f"Plugin is {info.state.value}",
                details={"last_error": info.last_error} if info.last_error else {},
            )

        if info.plugin.health is None:
            return PluginHealth(HealthStatus.HEALTHY)

        try:
            return PluginHealth.coerce(await info.plugin.health())
        except Exception as e:
            logger.warning("Plugin health check failed", plugin=name, error=str(e))
            return PluginHealth(
                HealthStatus.UNHEALTHY,
                message=str(e),
                details={"error_type": type(e).__name__},
            )

    async def check_health_all(self) -> Dict[str, PluginHealth]:
        return {name: await self.check_health(name) for name in list(self._plugins)}

    def get_stats(self) -> Dict[str, Any]:
        by_state: Dict[str, int] = {}
        for info in self._plugins.values():
            by_state[info.state.value] = by_state.get(info.state.value, 0) + 1
        return {
            "total": len(self._plugins),
            "by_state": by_state,
            "active_hooks": self.hooks.list_active_hooks(),
        }
