"""
IXP Service Registry

Directory of named shared instances and factories populated by plugins.
Persistence, caching and other backends are consumed through it by name.
"""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, TYPE_CHECKING

import structlog

from ixp.core.errors import DuplicateServiceError, InternalError

if TYPE_CHECKING:
    from ixp.events.bus import EventBus

logger = structlog.get_logger(__name__)

SERVICE_REMOVED = "service:removed"


class ServiceMode(str, Enum):
    """How a registration produces its value."""
    INSTANCE = "instance"
    SINGLETON = "singleton"
    TRANSIENT = "transient"


@dataclass
class ServiceRegistration:
    """A named service entry."""
    name: str
    mode: ServiceMode
    instance: Any = None
    factory: Optional[Callable[[], Any]] = None
    owner: Optional[str] = None
    registered_at: float = field(default_factory=time.monotonic)
    seq: int = 0
    resolved: bool = False

    def resolve(self) -> Any:
        if self.mode is ServiceMode.INSTANCE:
            return self.instance
        if self.mode is ServiceMode.TRANSIENT:
            return self.factory()
        if not self.resolved:
            self.instance = self.factory()
            self.resolved = True
        return self.instance


class ServiceRegistry:
    """
    Named-instance directory.

    Entries are instances, lazily created singletons or transient factories.
    Removal is announced on the event bus as "service:removed" so dependents
    can drop cached references.
    """

    def __init__(self, event_bus: Optional["EventBus"] = None):
        self._event_bus = event_bus
        self._services: Dict[str, ServiceRegistration] = {}
        self._by_owner: Dict[str, Set[str]] = defaultdict(set)
        self._seq = 0

    # === Registration ===

    def register(
        self,
        name: str,
        instance: Any,
        *,
        override: bool = False,
        owner: Optional[str] = None,
    ) -> None:
        """
        Register a ready-made instance.

        Raises:
            DuplicateServiceError: If the name is taken and override is False
        """
        self._store(
            ServiceRegistration(name=name, mode=ServiceMode.INSTANCE, instance=instance, owner=owner),
            override,
        )

    def register_factory(
        self,
        name: str,
        factory: Callable[[], Any],
        *,
        singleton: bool = True,
        override: bool = False,
        owner: Optional[str] = None,
    ) -> None:
        """
        Register a factory.

        Args:
            name: Service name
            factory: Zero-argument callable producing the service
            singleton: Invoke once and cache (True) or on every get() (False)
            override: Replace an existing entry
            owner: Owner key (plugin name) for bulk removal

        Raises:
            DuplicateServiceError: If the name is taken and override is False
        """
        if not callable(factory):
            raise TypeError(f"Factory for service '{name}' must be callable")

        mode = ServiceMode.SINGLETON if singleton else ServiceMode.TRANSIENT
        self._store(
            ServiceRegistration(name=name, mode=mode, factory=factory, owner=owner),
            override,
        )

    def _store(self, registration: ServiceRegistration, override: bool) -> None:
        name = registration.name
        existing = self._services.get(name)
        if existing is not None:
            if not override:
                raise DuplicateServiceError(name)
            self._forget_owner(existing)
            logger.info("Service overridden", service=name, owner=registration.owner)

        self._seq += 1
        registration.seq = self._seq
        self._services[name] = registration
        if registration.owner is not None:
            self._by_owner[registration.owner].add(name)

        logger.debug(
            "Service registered",
            service=name,
            mode=registration.mode.value,
            owner=registration.owner,
        )

    def _forget_owner(self, registration: ServiceRegistration) -> None:
        if registration.owner is None:
            return
        owned = self._by_owner.get(registration.owner)
        if owned is not None:
            owned.discard(registration.name)
            if not owned:
                del self._by_owner[registration.owner]

    async def unregister(self, name: str) -> bool:
        """
        Remove a service and publish "service:removed" with {"name": name}.

        Returns:
            True if the service existed
        """
        registration = self._services.pop(name, None)
        if registration is None:
            return False

        self._forget_owner(registration)
        logger.debug("Service unregistered", service=name, owner=registration.owner)

        if self._event_bus is not None:
            await self._event_bus.publish(SERVICE_REMOVED, {"name": name})
        return True

    async def unregister_owner(self, owner: str) -> List[str]:
        """Remove every service registered by an owner, newest first."""
        names = sorted(
            self._by_owner.get(owner, ()),
            key=lambda n: self._services[n].seq,
            reverse=True,
        )
        removed = []
        for name in names:
            if await self.unregister(name):
                removed.append(name)
        return removed

    # === Lookup ===

    def get(self, name: str) -> Any:
        """Return the service value, or None if absent."""
        registration = self._services.get(name)
        if registration is None:
            return None
        return registration.resolve()

    def require(self, name: str) -> Any:
        """
        Return the service value.

        Raises:
            InternalError: If the service is not registered
        """
        if name not in self._services:
            raise InternalError(f"Required service '{name}' is not registered", {"service": name})
        return self._services[name].resolve()

    def has(self, name: str) -> bool:
        return name in self._services

    def names(self) -> List[str]:
        return list(self._services.keys())

    def owner_of(self, name: str) -> Optional[str]:
        registration = self._services.get(name)
        return registration.owner if registration else None

    def owned_by(self, owner: str) -> List[str]:
        return sorted(self._by_owner.get(owner, ()))

    def __contains__(self, name: object) -> bool:
        return name in self._services

    def __len__(self) -> int:
        return len(self._services)

    def get_stats(self) -> Dict[str, Any]:
        by_mode: Dict[str, int] = defaultdict(int)
        for registration in self._services.values():
            by_mode[registration.mode.value] += 1
        return {
            "total": len(self._services),
            "by_mode": dict(by_mode),
            "owners": len(self._by_owner),
        }
