"""
IXP Plugin Hook System

Named extension points plugins attach prioritized handlers to.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class HookRegistration:
    """A registered hook handler."""

    hook_name: str
    plugin_name: str
    handler: Callable[..., Any]
    priority: int = 0  # Higher = earlier execution
    required: bool = False
    seq: int = 0

    @property
    def sort_key(self):
        return (-self.priority, self.seq)


class HookSystem:
    """
    Plugin hook system.

    Handlers run sequentially in priority-descending order, ties broken by
    registration order. A failing required handler aborts the run and
    propagates; a failing optional handler is logged and skipped.
    """

    def __init__(self):
        self._hooks: Dict[str, List[HookRegistration]] = {}
        self._plugin_hooks: Dict[str, Set[str]] = {}  # plugin -> hook names
        self._seq = itertools.count()

        # Statistics
        self._stats: Dict[str, Dict[str, Any]] = {}

    # === Registration ===

    def register(
        self,
        hook_name: str,
        plugin_name: str,
        handler: Callable[..., Any],
        priority: int = 0,
        required: bool = False,
    ) -> HookRegistration:
        """
        Register a hook handler.

        Args:
            hook_name: Name of hook to register for
            plugin_name: Plugin registering the hook
            handler: Handler function (sync or async)
            priority: Execution priority (higher = earlier)
            required: Propagate failures instead of logging them

        Returns:
            The registration
        """
        if not callable(handler):
            raise TypeError(f"Hook handler for '{hook_name}' must be callable")

        if hook_name not in self._hooks:
            self._hooks[hook_name] = []
            self._stats[hook_name] = {"calls": 0, "total_time_ms": 0.0, "errors": 0}

        registration = HookRegistration(
            hook_name=hook_name,
            plugin_name=plugin_name,
            handler=handler,
            priority=priority,
            required=required,
            seq=next(self._seq),
        )

        self._hooks[hook_name].append(registration)
        self._hooks[hook_name].sort(key=lambda r: r.sort_key)

        self._plugin_hooks.setdefault(plugin_name, set()).add(hook_name)

        logger.debug(
            "Registered hook handler",
            hook=hook_name,
            plugin=plugin_name,
            priority=priority,
            required=required,
        )
        return registration

    def unregister(self, hook_name: str, plugin_name: str) -> bool:
        """Remove a plugin's handlers from one hook."""
        if hook_name not in self._hooks:
            return False

        original_count = len(self._hooks[hook_name])
        self._hooks[hook_name] = [
            h for h in self._hooks[hook_name]
            if h.plugin_name != plugin_name
        ]

        if plugin_name in self._plugin_hooks:
            self._plugin_hooks[plugin_name].discard(hook_name)

        return len(self._hooks[hook_name]) < original_count

    def unregister_plugin(self, plugin_name: str) -> int:
        """
        Unregister all hooks for a plugin.

        Returns:
            Number of hooks unregistered
        """
        count = 0
        for hook_name in self._plugin_hooks.get(plugin_name, set()).copy():
            if self.unregister(hook_name, plugin_name):
                count += 1

        self._plugin_hooks.pop(plugin_name, None)
        if count:
            logger.debug("Unregistered plugin hooks", plugin=plugin_name, count=count)
        return count

    # === Dispatch ===

    async def run(self, hook_name: str, *args, **kwargs) -> List[Any]:
        """
        Run every handler for a hook.

        Returns:
            Results of handlers that did not raise, in execution order

        Raises:
            Exception: Whatever a required handler raised
        """
        registrations = list(self._hooks.get(hook_name, ()))
        if not registrations:
            return []

        results: List[Any] = []
        start_time = time.perf_counter()
        stats = self._stats[hook_name]

        try:
            for registration in registrations:
                try:
                    result = registration.handler(*args, **kwargs)
                    if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                        result = await result
                except Exception as e:
                    stats["errors"] += 1
                    if registration.required:
                        logger.error(
                            "Required hook handler failed",
                            hook=hook_name,
                            plugin=registration.plugin_name,
                            error=str(e),
                        )
                        raise
                    logger.warning(
                        "Hook handler failed",
                        hook=hook_name,
                        plugin=registration.plugin_name,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    continue
                results.append(result)
        finally:
            stats["calls"] += 1
            stats["total_time_ms"] += (time.perf_counter() - start_time) * 1000

        return results

    # === Queries ===

    def get_handlers(self, hook_name: str) -> List[HookRegistration]:
        return list(self._hooks.get(hook_name, ()))

    def get_plugin_hooks(self, plugin_name: str) -> List[str]:
        return sorted(self._plugin_hooks.get(plugin_name, set()))

    def list_active_hooks(self) -> List[str]:
        return [name for name, handlers in self._hooks.items() if handlers]

    def get_stats(self, hook_name: Optional[str] = None) -> Dict[str, Any]:
        if hook_name:
            return dict(self._stats.get(hook_name, {}))
        return {name: dict(stats) for name, stats in self._stats.items()}
