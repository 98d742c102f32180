"""
IXP Component Registry

Descriptors of the UI components intents resolve to. The core never
renders a component; it only checks that an intent's component exists,
warns on deprecated ones and answers origin and criteria queries for the
transport layer.
"""

from __future__ import annotations

import copy
import json
import re
from collections import Counter
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Union
from urllib.parse import urlparse

import structlog

from ixp.core.errors import InvalidComponentError, SchemaError
from ixp.intents.validator import check_schema

logger = structlog.get_logger(__name__)

ChangeListener = Callable[[], Any]
ComponentInput = Union["ComponentDefinition", Dict[str, Any]]

_BUNDLE_SIZE = re.compile(r"(\d+)KB")


@dataclass(frozen=True)
class ComponentDefinition:
    """A remotely loadable UI component."""

    name: str
    framework: str
    remote_url: str
    export_name: str
    version: str
    props_schema: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    allowed_origins: List[str] = field(default_factory=list)
    description: str = ""
    deprecated: bool = False
    bundle_size: Optional[str] = None
    # {"allow_eval": bool, "sandboxed": bool}
    security_policy: Optional[Dict[str, bool]] = None

    @property
    def sandboxed(self) -> bool:
        return bool(self.security_policy and self.security_policy.get("sandboxed"))

    def check(self) -> None:
        """
        Structural checks on the definition.

        Raises:
            InvalidComponentError: If a required field is missing or mistyped
        """
        if not self.name or not isinstance(self.name, str):
            raise InvalidComponentError("Component must have a valid name")

        details = {"component": self.name}
        for attr, label in (
            ("framework", "specify a framework"),
            ("remote_url", "have a remoteUrl"),
            ("export_name", "have an exportName"),
            ("version", "have a version"),
        ):
            value = getattr(self, attr)
            if not value or not isinstance(value, str):
                raise InvalidComponentError(f"Component '{self.name}' must {label}", details)

        parsed = urlparse(self.remote_url)
        if not parsed.scheme or not parsed.netloc:
            raise InvalidComponentError(
                f"Component '{self.name}' has invalid remoteUrl format", details
            )

        if not isinstance(self.props_schema, dict) or self.props_schema.get("type") != "object":
            raise InvalidComponentError(
                f"Component '{self.name}' propsSchema must be of type \"object\"", details
            )
        try:
            check_schema(self.props_schema)
        except SchemaError as e:
            raise InvalidComponentError(
                f"Component '{self.name}' propsSchema is invalid: {e.message}", details
            ) from e

        if not isinstance(self.allowed_origins, list):
            raise InvalidComponentError(
                f"Component '{self.name}' must have allowedOrigins array", details
            )

        if self.security_policy is not None:
            if not isinstance(self.security_policy, dict):
                raise InvalidComponentError(
                    f"Component '{self.name}' securityPolicy must be an object", details
                )
            for flag in ("allow_eval", "sandboxed"):
                if not isinstance(self.security_policy.get(flag), bool):
                    raise InvalidComponentError(
                        f"Component '{self.name}' securityPolicy.{flag} must be boolean",
                        details,
                    )

    def frozen_copy(self) -> "ComponentDefinition":
        return replace(
            self,
            props_schema=copy.deepcopy(self.props_schema),
            allowed_origins=list(self.allowed_origins),
            security_policy=dict(self.security_policy) if self.security_policy else None,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any], name: Optional[str] = None) -> "ComponentDefinition":
        """Build from declarative input (camelCase or snake_case keys)."""
        if not isinstance(data, dict):
            raise InvalidComponentError("Component definition must be an object")

        policy = data.get("securityPolicy", data.get("security_policy"))
        if isinstance(policy, dict):
            policy = {
                "allow_eval": policy.get("allowEval", policy.get("allow_eval")),
                "sandboxed": policy.get("sandboxed"),
            }

        definition = cls(
            name=name or data.get("name", ""),
            framework=data.get("framework", ""),
            remote_url=data.get("remoteUrl", data.get("remote_url", "")),
            export_name=data.get("exportName", data.get("export_name", "")),
            version=data.get("version", ""),
            props_schema=copy.deepcopy(data.get("propsSchema", data.get("props_schema"))),
            allowed_origins=data.get("allowedOrigins", data.get("allowed_origins")),
            description=data.get("description", ""),
            deprecated=bool(data.get("deprecated", False)),
            bundle_size=data.get("bundleSize", data.get("bundle_size")),
            security_policy=policy,
        )
        definition.check()
        return definition

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "framework": self.framework,
            "remoteUrl": self.remote_url,
            "exportName": self.export_name,
            "version": self.version,
            "propsSchema": copy.deepcopy(self.props_schema),
            "allowedOrigins": list(self.allowed_origins),
            "deprecated": self.deprecated,
        }
        if self.description:
            data["description"] = self.description
        if self.bundle_size:
            data["bundleSize"] = self.bundle_size
        if self.security_policy is not None:
            data["securityPolicy"] = {
                "allowEval": self.security_policy["allow_eval"],
                "sandboxed": self.security_policy["sandboxed"],
            }
        return data


class ComponentRegistry:
    """
    Registry of component definitions, keyed by name.

    Features:
    - Add/replace, remove and lookup
    - Loading from a JSON file ({"components": {name: {...}}}) with reload
    - Criteria and origin queries, statistics
    - Change listeners
    """

    def __init__(self, definitions: Optional[Mapping[str, ComponentInput]] = None):
        self._components: Dict[str, ComponentDefinition] = {}
        self._listeners: List[ChangeListener] = []
        self._source_path: Optional[Path] = None

        if definitions:
            self.load(definitions)

    # === Registration ===

    def add(self, definition: ComponentInput) -> ComponentDefinition:
        """
        Add a component, replacing any existing one with the same name.

        Raises:
            InvalidComponentError: If the definition is structurally invalid
        """
        stored = self._prepare(definition)
        replaced = stored.name in self._components
        self._components[stored.name] = stored
        logger.debug(
            "Registered component",
            component=stored.name,
            version=stored.version,
            replaced=replaced,
        )
        self._notify()
        return stored

    def remove(self, name: str) -> bool:
        if self._components.pop(name, None) is None:
            return False
        logger.debug("Removed component", component=name)
        self._notify()
        return True

    def load(self, definitions: Mapping[str, ComponentInput]) -> int:
        """
        Replace the current set with ``{name: definition}``.

        Either every definition is stored or none is.
        """
        prepared: Dict[str, ComponentDefinition] = {}
        for name, definition in definitions.items():
            if isinstance(definition, dict):
                definition = ComponentDefinition.from_dict(definition, name=name)
            prepared[name] = self._prepare(definition)

        self._components = prepared
        self._notify()
        return len(prepared)

    def load_file(self, path: Union[str, Path]) -> int:
        """Load components from a JSON file; the path is remembered for reload()."""
        path = Path(path).resolve()
        if not path.exists():
            raise FileNotFoundError(f"Component configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = json.load(f)

        if not isinstance(data, dict) or not isinstance(data.get("components"), dict):
            raise InvalidComponentError(
                'Invalid component configuration: missing or invalid "components" object',
                {"path": str(path)},
            )

        count = self.load(data["components"])
        self._source_path = path
        logger.info("Loaded components", count=count, path=str(path))
        return count

    def reload(self) -> int:
        if self._source_path is None:
            logger.warning("Cannot reload components: no source file")
            return 0
        return self.load_file(self._source_path)

    def _prepare(self, definition: ComponentInput) -> ComponentDefinition:
        if isinstance(definition, dict):
            definition = ComponentDefinition.from_dict(definition)
        elif isinstance(definition, ComponentDefinition):
            definition.check()
        else:
            raise InvalidComponentError(
                f"Unsupported component definition type: {type(definition).__name__}"
            )
        return definition.frozen_copy()

    # === Lookup ===

    def get(self, name: str) -> Optional[ComponentDefinition]:
        return self._components.get(name)

    def list(self) -> List[ComponentDefinition]:
        return list(self._components.values())

    def names(self) -> List[str]:
        return list(self._components.keys())

    def find(
        self,
        framework: Optional[str] = None,
        deprecated: Optional[bool] = None,
        sandboxed: Optional[bool] = None,
    ) -> List[ComponentDefinition]:
        """Return components matching every given criterion."""
        results = []
        for definition in self._components.values():
            if framework and definition.framework != framework:
                continue
            if deprecated is not None and definition.deprecated != deprecated:
                continue
            if sandboxed is not None and definition.sandboxed != sandboxed:
                continue
            results.append(definition)
        return results

    def is_origin_allowed(self, name: str, origin: str) -> bool:
        definition = self._components.get(name)
        if definition is None:
            return False
        return origin in definition.allowed_origins or "*" in definition.allowed_origins

    def get_stats(self) -> Dict[str, Any]:
        definitions = self._components.values()

        sizes = []
        for definition in definitions:
            match = _BUNDLE_SIZE.search(definition.bundle_size or "")
            if match:
                sizes.append(int(match.group(1)))

        return {
            "total": len(self._components),
            "by_framework": dict(Counter(d.framework for d in definitions)),
            "deprecated": sum(1 for d in definitions if d.deprecated),
            "sandboxed": sum(1 for d in definitions if d.sandboxed),
            "average_bundle_size": f"{round(sum(sizes) / len(sizes))}KB" if sizes else "0KB",
        }

    def __len__(self) -> int:
        return len(self._components)

    def __contains__(self, name: object) -> bool:
        return name in self._components

    def __iter__(self) -> Iterator[ComponentDefinition]:
        return iter(list(self._components.values()))

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
                logger.error("Component registry listener failed", error=str(e))

    def clear(self) -> None:
        self._components.clear()
        self._listeners.clear()
        self._source_path = None
