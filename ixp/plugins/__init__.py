"""
IXP Plugin System

Installable units that register services, event subscriptions and hooks
through a PluginContext, with a managed forward-only lifecycle.

Basic Usage:
    from ixp.plugins import Plugin, PluginManager

    async def install(context):
        context.register_service("cache", {})

    manager = PluginManager(services, events)
    await manager.install(Plugin(name="cache", version="1.0.0", install=install))

    # Dependency-ordered batch with rollback
    await manager.install_all([auth_plugin, cache_plugin, search_plugin])

    results = await manager.run_hook("request.before", context)
    await manager.shutdown()
"""

from ixp.plugins.builtin import HealthService, create_health_plugin, create_metrics_plugin
from ixp.plugins.graph import DependencyGraph
from ixp.plugins.hooks import HookRegistration, HookSystem
from ixp.plugins.lifecycle import STATE_TRANSITIONS, LifecycleTracker, can_transition
from ixp.plugins.manager import PluginContext, PluginManager, ScopedEventBus, ScopedServiceRegistry
from ixp.plugins.types import (
    HealthStatus,
    HookSpec,
    Plugin,
    PluginEvent,
    PluginHealth,
    PluginInfo,
    PluginState,
)

__all__ = [
    # Types
    "HealthStatus",
    "HookSpec",
    "Plugin",
    "PluginEvent",
    "PluginHealth",
    "PluginInfo",
    "PluginState",
    # Lifecycle
    "STATE_TRANSITIONS",
    "LifecycleTracker",
    "can_transition",
    # Core
    "DependencyGraph",
    "HookRegistration",
    "HookSystem",
    "PluginContext",
    "PluginManager",
    "ScopedEventBus",
    "ScopedServiceRegistry",
    # Built-ins
    "HealthService",
    "create_health_plugin",
    "create_metrics_plugin",
]
