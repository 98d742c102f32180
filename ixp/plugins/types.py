"""
IXP Plugin Types

Plugins are capability records, not class hierarchies: a name, a version,
an install coroutine and optional start/stop/health coroutines. The manager
dispatches on which optional capabilities are present.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union, TYPE_CHECKING

if TYPE_CHECKING:
    from ixp.plugins.manager import PluginContext


# === Lifecycle ===


class PluginState(str, Enum):
    """Plugin lifecycle states."""

    REGISTERED = "registered"      # Known to the manager, nothing run yet
    INITIALIZING = "initializing"  # install() running
    INITIALIZED = "initialized"    # install() done, not started
    STARTING = "starting"          # start() running
    RUNNING = "running"            # Operational
    STOPPING = "stopping"          # stop() running
    STOPPED = "stopped"            # Gracefully stopped and cleaned up
    FAILED = "failed"              # An operation raised; rolled back

    @property
    def is_active(self) -> bool:
        """States in which the plugin counts as a live dependent."""
        return self in (
            PluginState.INITIALIZING,
            PluginState.INITIALIZED,
            PluginState.STARTING,
            PluginState.RUNNING,
            PluginState.STOPPING,
        )

    @property
    def is_terminal(self) -> bool:
        return self in (PluginState.STOPPED, PluginState.FAILED)


class PluginEvent(str, Enum):
    """Plugin lifecycle events published on the event bus."""

    INSTALLED = "plugin:installed"
    FAILED = "plugin:failed"
    UNINSTALLED = "plugin:uninstalled"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


# === Capability records ===


@dataclass
class HookSpec:
    """A handler a plugin attaches to a named hook point."""

    handler: Callable[..., Any]
    priority: int = 0  # Higher = earlier execution
    required: bool = False  # Failures propagate to run_hook() callers


HookInput = Union[HookSpec, Callable[..., Any], Dict[str, Any]]


@dataclass
class PluginHealth:
    """Result of a plugin health check."""

    status: HealthStatus = HealthStatus.HEALTHY
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, value: Any) -> "PluginHealth":
        """Accept a PluginHealth, a {"status", "message"?, "details"?} dict or a bool."""
        if isinstance(value, PluginHealth):
            return value
        if isinstance(value, bool):
            return cls(HealthStatus.HEALTHY if value else HealthStatus.UNHEALTHY)
        if isinstance(value, dict):
            return cls(
                status=HealthStatus(value.get("status", HealthStatus.HEALTHY)),
                message=value.get("message"),
                details=dict(value.get("details") or {}),
            )
        raise TypeError(f"Unsupported health result: {type(value).__name__}")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status.value}
        if self.message:
            data["message"] = self.message
        if self.details:
            data["details"] = self.details
        return data


@dataclass
class Plugin:
    """
    An installable unit.

    ``install`` receives a PluginContext and registers services, event
    subscriptions and hooks through it. ``start``, ``stop`` and ``health``
    take no arguments.
    """

    name: str
    version: str
    install: Callable[["PluginContext"], Awaitable[None]]
    start: Optional[Callable[[], Awaitable[None]]] = None
    stop: Optional[Callable[[], Awaitable[None]]] = None
    health: Optional[Callable[[], Awaitable[Any]]] = None
    dependencies: List[str] = field(default_factory=list)
    hooks: Dict[str, HookInput] = field(default_factory=dict)
    description: str = ""

    def __post_init__(self):
        if not self.name or not isinstance(self.name, str):
            raise ValueError("Plugin must have a non-empty name")
        if not callable(self.install):
            raise TypeError(f"Plugin '{self.name}' install must be callable")
        if self.name in self.dependencies:
            raise ValueError(f"Plugin '{self.name}' cannot depend on itself")
        self.dependencies = list(dict.fromkeys(self.dependencies))
        self.hooks = {name: _to_hook_spec(name, spec) for name, spec in self.hooks.items()}


def _to_hook_spec(hook_name: str, spec: HookInput) -> HookSpec:
    if isinstance(spec, HookSpec):
        return spec
    if isinstance(spec, dict):
        return HookSpec(
            handler=spec["handler"],
            priority=int(spec.get("priority", 0)),
            required=bool(spec.get("required", False)),
        )
    if callable(spec):
        return HookSpec(handler=spec)
    raise TypeError(f"Invalid hook specification for '{hook_name}'")


# === Runtime records ===


@dataclass
class PluginInfo:
    """Runtime information about a plugin known to the manager."""

    plugin: Plugin
    state: PluginState = PluginState.REGISTERED

    # Errors
    last_error: Optional[str] = None
    error_type: Optional[str] = None

    # Timestamps
    registered_at: datetime = field(default_factory=datetime.now)
    installed_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    state_changed_at: datetime = field(default_factory=datetime.now)

    @property
    def name(self) -> str:
        return self.plugin.name

    @property
    def version(self) -> str:
        return self.plugin.version

    @property
    def dependencies(self) -> List[str]:
        return self.plugin.dependencies

    @property
    def is_running(self) -> bool:
        return self.state == PluginState.RUNNING

    @property
    def uptime_seconds(self) -> float:
        if self.state != PluginState.RUNNING or not self.started_at:
            return 0.0
        return (datetime.now() - self.started_at).total_seconds()

    def record_error(self, error: BaseException) -> None:
        self.last_error = str(error)
        self.error_type = type(error).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "state": self.state.value,
            "dependencies": list(self.dependencies),
            "hooks": sorted(self.plugin.hooks),
            "last_error": self.last_error,
            "registered_at": self.registered_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "stopped_at": self.stopped_at.isoformat() if self.stopped_at else None,
            "uptime_seconds": self.uptime_seconds,
        }
