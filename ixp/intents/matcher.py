"""
IXP Intent Matching

Optional strategies the dispatcher consults before exact-name lookup.
Similarity or embedding-based matching is left to host applications.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional, Protocol, TYPE_CHECKING, runtime_checkable

import structlog

if TYPE_CHECKING:
    from ixp.intents.registry import IntentRegistry

logger = structlog.get_logger(__name__)


@runtime_checkable
class IntentMatcher(Protocol):
    """Maps an incoming request name to a registered intent name, or None."""

    def match(
        self,
        name: str,
        parameters: Dict[str, Any],
        registry: "IntentRegistry",
    ) -> Optional[str]:
        ...


class AliasIntentMatcher:
    """
    Matches request names through a static alias table.

    Aliases are compared case-insensitively. A hit only counts when the
    target intent is currently registered.
    """

    def __init__(self, aliases: Optional[Dict[str, str]] = None):
        self._aliases: Dict[str, str] = {}
        for alias, target in (aliases or {}).items():
            self.add(alias, target)

    def add(self, alias: str, target: str) -> None:
        self._aliases[alias.strip().lower()] = target

    def add_many(self, target: str, aliases: Iterable[str]) -> None:
        for alias in aliases:
            self.add(alias, target)

    def remove(self, alias: str) -> bool:
        return self._aliases.pop(alias.strip().lower(), None) is not None

    def match(
        self,
        name: str,
        parameters: Dict[str, Any],
        registry: "IntentRegistry",
    ) -> Optional[str]:
        target = self._aliases.get(name.strip().lower())
        if target is None or target not in registry:
            return None
        if target != name:
            logger.debug("Matched intent alias", alias=name, intent=target)
        return target
