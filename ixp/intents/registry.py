"""
IXP Intent Registry

Stores intent definitions and resolves request names to them.
Lookup is exact-name; alternative strategies plug in via IntentMatcher.
"""

from __future__ import annotations

import json
from collections import Counter
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Union

import structlog

from ixp.core.errors import (
    DuplicateIntentError,
    IntentNotFoundError,
    InvalidIntentError,
)
from ixp.intents.types import IntentDefinition
from ixp.intents.validator import check_schema

logger = structlog.get_logger(__name__)

ChangeListener = Callable[[], Any]
IntentInput = Union[IntentDefinition, Dict[str, Any]]


class IntentRegistry:
    """
    Registry of intent definitions.

    Features:
    - Exact-name registration and resolution
    - Bulk loading from a JSON file ({"intents": [...]}) with reload
    - Criteria queries and statistics
    - Change listeners
    """

    def __init__(self, definitions: Optional[Iterable[IntentInput]] = None):
        self._intents: Dict[str, IntentDefinition] = {}
        self._listeners: List[ChangeListener] = []
        self._source_path: Optional[Path] = None

        if definitions:
            self.load(definitions)

    # === Registration ===

    def register(self, definition: IntentInput) -> IntentDefinition:
        """
        Register an intent.

        Args:
            definition: Definition or its declarative dict form

        Returns:
            The stored (private copy of the) definition

        Raises:
            DuplicateIntentError: If the name is already registered
            InvalidIntentError: If the definition is structurally invalid
            SchemaError: If the parameter schema is malformed
        """
        stored = self._prepare(definition)
        if stored.name in self._intents:
            raise DuplicateIntentError(stored.name)

        self._intents[stored.name] = stored
        logger.debug("Registered intent", intent=stored.name, version=stored.version)
        self._notify()
        return stored

    def unregister(self, name: str) -> bool:
        """Remove an intent. In-flight requests keep their resolved copy."""
        if self._intents.pop(name, None) is None:
            return False
        logger.debug("Unregistered intent", intent=name)
        self._notify()
        return True

    def load(self, definitions: Iterable[IntentInput], replace: bool = False) -> int:
        """
        Register many intents at once.

        Either every definition is stored or none is.

        Args:
            definitions: Definitions to register
            replace: Drop the current set first

        Returns:
            Number of intents loaded
        """
        prepared: Dict[str, IntentDefinition] = {}
        for definition in definitions:
            stored = self._prepare(definition)
            if stored.name in prepared or (not replace and stored.name in self._intents):
                raise DuplicateIntentError(stored.name)
            prepared[stored.name] = stored

        if replace:
            self._intents = prepared
        else:
            self._intents.update(prepared)

        self._notify()
        return len(prepared)

    def load_file(self, path: Union[str, Path]) -> int:
        """
        Load intents from a JSON file, replacing the current set.

        The path is remembered for reload().
        """
        path = Path(path).resolve()
        if not path.exists():
            raise FileNotFoundError(f"Intent configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = json.load(f)

        if not isinstance(data, dict) or not isinstance(data.get("intents"), list):
            raise InvalidIntentError(
                'Invalid intent configuration: missing or invalid "intents" array',
                {"path": str(path)},
            )

        count = self.load(data["intents"], replace=True)
        self._source_path = path
        logger.info("Loaded intents", count=count, path=str(path))
        return count

    def reload(self) -> int:
        """Reload from the file last passed to load_file(); no-op without one."""
        if self._source_path is None:
            logger.warning("Cannot reload intents: no source file")
            return 0
        return self.load_file(self._source_path)

    def _prepare(self, definition: IntentInput) -> IntentDefinition:
        if isinstance(definition, dict):
            definition = IntentDefinition.from_dict(definition)
        elif isinstance(definition, IntentDefinition):
            definition.check()
        else:
            raise InvalidIntentError(
                f"Unsupported intent definition type: {type(definition).__name__}"
            )
        check_schema(definition.parameters, "")
        return definition.frozen_copy()

    # === Lookup ===

    def resolve(self, name: str) -> IntentDefinition:
        """
        Resolve an intent by exact name.

        Raises:
            IntentNotFoundError: If no intent has that name
        """
        definition = self._intents.get(name)
        if definition is None:
            raise IntentNotFoundError(name)
        if definition.deprecated:
            logger.warning("Resolved deprecated intent", intent=name)
        return definition

    def get(self, name: str) -> Optional[IntentDefinition]:
        return self._intents.get(name)

    def list(self) -> List[IntentDefinition]:
        return list(self._intents.values())

    def names(self) -> List[str]:
        return list(self._intents.keys())

    def find(
        self,
        crawlable: Optional[bool] = None,
        deprecated: Optional[bool] = None,
        component: Optional[str] = None,
    ) -> List[IntentDefinition]:
        """Return intents matching every given criterion."""
        results = []
        for definition in self._intents.values():
            if crawlable is not None and definition.crawlable != crawlable:
                continue
            if deprecated is not None and definition.deprecated != deprecated:
                continue
            if component and definition.component != component:
                continue
            results.append(definition)
        return results

    def get_stats(self) -> Dict[str, Any]:
        definitions = self._intents.values()
        return {
            "total": len(self._intents),
            "crawlable": sum(1 for d in definitions if d.crawlable),
            "deprecated": sum(1 for d in definitions if d.deprecated),
            "by_component": dict(Counter(d.component for d in definitions)),
        }

    def __len__(self) -> int:
        return len(self._intents)

    def __contains__(self, name: object) -> bool:
        return name in self._intents

    def __iter__(self) -> Iterator[IntentDefinition]:
        return iter(list(self._intents.values()))

    # === Change listeners ===

    def on_change(self, listener: ChangeListener) -> Callable[[], None]:
        """
        Register a listener called after every change.

        Returns:
            A function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.error("Intent registry listener failed", error=str(e))

    def clear(self) -> None:
        self._intents.clear()
        self._listeners.clear()
        self._source_path = None
