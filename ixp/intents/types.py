"""
IXP Intent Types

Intent definitions as loaded from configuration or registered in code.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

from ixp.core.errors import InvalidIntentError


DEFAULT_INTENT_VERSION = "1.0.0"


@dataclass(frozen=True)
class IntentDefinition:
    """
    A named, schema-validated request type mapped to a handler and component.

    ``handler_ref`` is opaque: a callable, a key into the dispatcher's handler
    table, or ``None`` to echo the validated parameters back.
    """

    name: str
    component: str
    parameters: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    version: str = DEFAULT_INTENT_VERSION
    description: str = ""
    handler_ref: Any = None
    crawlable: bool = False
    deprecated: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def check(self) -> None:
        """
        Structural checks on the definition.

        Raises:
            InvalidIntentError: If a required field is missing or mistyped
        """
        if not self.name or not isinstance(self.name, str):
            raise InvalidIntentError("Intent must have a valid name")
        if not self.component or not isinstance(self.component, str):
            raise InvalidIntentError(
                f"Intent '{self.name}' must specify a component", {"intent": self.name}
            )
        if not self.version or not isinstance(self.version, str):
            raise InvalidIntentError(
                f"Intent '{self.name}' must have a version", {"intent": self.name}
            )
        if not isinstance(self.description, str):
            raise InvalidIntentError(
                f"Intent '{self.name}' description must be a string", {"intent": self.name}
            )
        if not isinstance(self.parameters, dict):
            raise InvalidIntentError(
                f"Intent '{self.name}' must have a parameters definition",
                {"intent": self.name},
            )
        if self.parameters.get("type", "object") != "object":
            raise InvalidIntentError(
                f"Intent '{self.name}' parameters must be of type \"object\"",
                {"intent": self.name},
            )

    def frozen_copy(self) -> "IntentDefinition":
        """Copy with private parameter and metadata trees."""
        return replace(
            self,
            parameters=copy.deepcopy(self.parameters),
            metadata=copy.deepcopy(self.metadata),
        )

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        handler_ref: Optional[Any] = None,
    ) -> "IntentDefinition":
        """Build a definition from declarative input (camelCase or snake_case keys)."""
        if not isinstance(data, dict):
            raise InvalidIntentError("Intent definition must be an object")

        ref = handler_ref
        if ref is None:
            ref = data.get("handler_ref", data.get("handlerRef", data.get("handler")))

        definition = cls(
            name=data.get("name", ""),
            component=data.get("component", ""),
            parameters=copy.deepcopy(data.get("parameters", {"type": "object", "properties": {}})),
            version=data.get("version", DEFAULT_INTENT_VERSION),
            description=data.get("description", ""),
            handler_ref=ref,
            crawlable=bool(data.get("crawlable", False)),
            deprecated=bool(data.get("deprecated", False)),
            metadata=copy.deepcopy(data.get("metadata", {})),
        )
        definition.check()
        return definition

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "parameters": copy.deepcopy(self.parameters),
            "component": self.component,
            "version": self.version,
            "crawlable": self.crawlable,
            "deprecated": self.deprecated,
        }
        if isinstance(self.handler_ref, str):
            data["handlerRef"] = self.handler_ref
        if self.metadata:
            data["metadata"] = copy.deepcopy(self.metadata)
        return data
