"""
IXP Parameter Validation

JSON Schema (Draft 7) validation of intent parameter bags:
- defaults applied and types coerced before validation
- field paths in ``a.b`` / ``tags[1]`` form
- unknown-property policy: strict, strip or allow
- ``min``/``max`` and property-level ``required: true`` accepted as aliases

Malformed input never raises; it produces an ordered list of field-path
issues. A malformed schema raises SchemaError.
"""

from __future__ import annotations

import copy
import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import structlog
from jsonschema import Draft7Validator, validators
from jsonschema.exceptions import SchemaError as JsonSchemaError
from jsonschema.exceptions import ValidationError as JsonSchemaValidationError

from ixp.core.config import UnknownParameterPolicy
from ixp.core.errors import SchemaError

logger = structlog.get_logger(__name__)


_ALIASES = {"min": "minimum", "max": "maximum"}

# jsonschema keyword -> issue code
_CODES = {
    "exclusiveMinimum": "minimum",
    "exclusiveMaximum": "maximum",
    "additionalProperties": "unknown",
}

_CACHE_LIMIT = 256


@dataclass(frozen=True)
class ValidationIssue:
    """A single validation failure at a field path."""
    path: str
    message: str
    code: str

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "message": self.message, "code": self.code}

    def __str__(self) -> str:
        return f"{self.path or '(root)'}: {self.message}"


@dataclass
class ValidationOutcome:
    """Result of validating a parameter bag."""
    value: Optional[Any] = None
    errors: List[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def paths(self) -> List[str]:
        return [issue.path for issue in self.errors]


# === Draft 7, extended ===


def _required(validator, required, instance, schema):
    if not validator.is_type(instance, "object"):
        return
    for name in required:
        if name not in instance:
            yield JsonSchemaValidationError("Required", path=[name])


def _additional_properties(validator, extra, instance, schema):
    if not validator.is_type(instance, "object"):
        return
    declared = schema.get("properties", {})
    patterns = schema.get("patternProperties", {})
    unknown = [
        key for key in instance
        if key not in declared and not any(re.search(p, key) for p in patterns)
    ]
    if validator.is_type(extra, "object"):
        for key in unknown:
            yield from validator.descend(instance[key], extra, path=key)
    elif extra is False:
        for key in unknown:
            yield JsonSchemaValidationError("Unknown property", path=[key])


# One issue per missing or unknown key, each at the key's own path
ParameterSchemaValidator = validators.extend(
    Draft7Validator,
    {"required": _required, "additionalProperties": _additional_properties},
)


def render_path(parts: Iterable[Union[str, int]]) -> str:
    """``deque(["tags", 1])`` -> ``"tags[1]"``."""
    rendered = ""
    for part in parts:
        if isinstance(part, int):
            rendered += f"[{part}]"
        else:
            rendered = f"{rendered}.{part}" if rendered else str(part)
    return rendered


def _schema_location(parts: Iterable[Union[str, int]]) -> str:
    # Schema path (properties/a/items/type) -> field path (a[])
    location = ""
    tokens = list(parts)
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if token == "properties" and i + 1 < len(tokens):
            name = str(tokens[i + 1])
            location = f"{location}.{name}" if location else name
            i += 2
        elif token == "items":
            location += "[]"
            i += 1
        elif token == "additionalProperties":
            location = f"{location}.*" if location else "*"
            i += 1
        else:
            break
    return location


def _issue(error: JsonSchemaValidationError) -> ValidationIssue:
    return ValidationIssue(
        render_path(error.absolute_path),
        error.message,
        _CODES.get(error.validator, error.validator),
    )


# === Schema preparation ===


def _normalize(node: Any, strict: bool) -> Any:
    """Translate aliases to plain Draft 7; under ``strict`` close declared objects."""
    if not isinstance(node, dict):
        return node

    out: Dict[str, Any] = {}
    for key, value in node.items():
        canonical = _ALIASES.get(key)
        if canonical is not None:
            if canonical not in node:
                out[canonical] = value
            continue
        out[key] = value

    properties = out.get("properties")
    if isinstance(properties, dict):
        flagged = [
            name for name, sub in properties.items()
            if isinstance(sub, dict) and sub.get("required") is True
        ]
        out["properties"] = {name: _normalize(sub, strict) for name, sub in properties.items()}
        if flagged:
            required = out.get("required")
            names = list(required) if isinstance(required, list) else []
            out["required"] = names + [name for name in flagged if name not in names]
        if strict and "additionalProperties" not in out:
            out["additionalProperties"] = False

    if isinstance(out.get("required"), bool):
        # Property-level flag; lifted into the parent above
        del out["required"]

    for key in ("items", "additionalProperties"):
        if isinstance(out.get(key), dict):
            out[key] = _normalize(out[key], strict)

    return out


def _check_defaults(schema: Any, path: str = "") -> None:
    if not isinstance(schema, dict):
        return

    if "default" in schema:
        default = _prepare(schema, copy.deepcopy(schema["default"]), UnknownParameterPolicy.ALLOW, False)
        problem = next(iter(ParameterSchemaValidator(schema).iter_errors(default)), None)
        if problem is not None:
            raise SchemaError(f"default does not satisfy its schema ({problem.message})", path)

    for name, sub in (schema.get("properties") or {}).items():
        _check_defaults(sub, f"{path}.{name}" if path else name)
    if isinstance(schema.get("items"), dict):
        _check_defaults(schema["items"], f"{path}[]")
    if isinstance(schema.get("additionalProperties"), dict):
        _check_defaults(schema["additionalProperties"], f"{path}.*" if path else "*")


def check_schema(schema: Any, path: str = "") -> Dict[str, Any]:
    """
    Validate a parameter schema ahead of time.

    Returns:
        The schema translated to plain Draft 7

    Raises:
        SchemaError: On the first malformed node found
    """
    if not isinstance(schema, dict):
        raise SchemaError("schema must be an object", path)

    normalized = _normalize(schema, strict=False)
    try:
        Draft7Validator.check_schema(normalized)
    except JsonSchemaError as e:
        location = _schema_location(e.absolute_path)
        if path:
            location = f"{path}.{location}" if location else path
        raise SchemaError(e.message, location) from e

    _check_defaults(normalized, path)
    return normalized


# === Value preparation ===


def _declared_types(schema: Dict[str, Any]) -> Optional[List[str]]:
    declared = schema.get("type")
    if declared is None:
        if "properties" in schema:
            return ["object"]
        if "items" in schema:
            return ["array"]
        return None
    return [declared] if isinstance(declared, str) else list(declared)


def _exact(name: str, value: Any) -> Tuple[bool, Any]:
    if name == "string":
        return isinstance(value, str), value
    if name == "boolean":
        return isinstance(value, bool), value
    if name == "null":
        return value is None, value
    if name == "object":
        return isinstance(value, dict), value
    if name == "array":
        return isinstance(value, list), value
    if isinstance(value, bool):
        return False, value
    if name == "number":
        return isinstance(value, (int, float)), value
    if name == "integer":
        if isinstance(value, int):
            return True, value
        if isinstance(value, float) and math.isfinite(value) and value.is_integer():
            return True, int(value)
    return False, value


def _from_string(name: str, text: str) -> Tuple[bool, Any]:
    raw = text.strip()
    if name == "boolean":
        lowered = raw.lower()
        if lowered in ("true", "false"):
            return True, lowered == "true"
        return False, text
    if name in ("integer", "number") and raw:
        try:
            return True, int(raw)
        except ValueError:
            pass
        try:
            number = float(raw)
        except ValueError:
            return False, text
        if not math.isfinite(number):
            return False, text
        if name == "integer":
            return (True, int(number)) if number.is_integer() else (False, text)
        return True, number
    return False, text


def _convert(types: Optional[Sequence[str]], value: Any, coerce: bool) -> Any:
    if isinstance(value, tuple):
        value = list(value)
    if types is None:
        return value

    # Exact matches win over coercions across the whole type list
    for name in types:
        ok, converted = _exact(name, value)
        if ok:
            return converted
    if coerce and isinstance(value, str):
        for name in types:
            ok, converted = _from_string(name, value)
            if ok:
                return converted
    return value


def _prepare(schema: Any, value: Any, policy: UnknownParameterPolicy, coerce: bool) -> Any:
    """Apply defaults, coercion and the unknown-property policy; never fails."""
    if not isinstance(schema, dict):
        return value

    value = _convert(_declared_types(schema), value, coerce)

    if isinstance(value, list) and isinstance(schema.get("items"), dict):
        return [_prepare(schema["items"], item, policy, coerce) for item in value]
    if not isinstance(value, dict):
        return value

    properties = schema.get("properties")
    patterns = schema.get("patternProperties") or {}
    extra = schema.get("additionalProperties", True)
    result: Dict[str, Any] = {}

    for key, sub in (properties or {}).items():
        if key in value:
            result[key] = _prepare(sub, value[key], policy, coerce)
        elif isinstance(sub, dict) and "default" in sub:
            result[key] = _prepare(sub, copy.deepcopy(sub["default"]), policy, coerce)

    for key, item in value.items():
        if properties is not None and key in properties:
            continue
        if any(re.search(pattern, key) for pattern in patterns):
            result[key] = item
        elif isinstance(extra, dict):
            result[key] = _prepare(extra, item, policy, coerce)
        elif properties is None or extra is False or policy is not UnknownParameterPolicy.STRIP:
            # Free-form objects pass through; closed objects report the key
            result[key] = item

    return result


class ParameterValidator:
    """
    Draft 7 validator producing a coerced value bag or an ordered issue list.

    Args:
        unknown: Default policy for properties an object schema does not declare
        coerce: Convert strings to numbers/booleans where unambiguous
    """

    def __init__(
        self,
        unknown: Union[UnknownParameterPolicy, str] = UnknownParameterPolicy.STRIP,
        coerce: bool = False,
    ):
        self.unknown = UnknownParameterPolicy(unknown)
        self.coerce = coerce
        self._compiled: Dict[Tuple[str, bool], Tuple[Dict[str, Any], Any]] = {}

    def _compile(self, schema: Dict[str, Any], strict: bool) -> Tuple[Dict[str, Any], Any]:
        key = (json.dumps(schema, default=repr), strict)
        compiled = self._compiled.get(key)
        if compiled is None:
            check_schema(schema)
            normalized = _normalize(schema, strict)
            compiled = (normalized, ParameterSchemaValidator(normalized))
            if len(self._compiled) >= _CACHE_LIMIT:
                self._compiled.clear()
            self._compiled[key] = compiled
            logger.debug("Parameter schema compiled", strict=strict, cached=len(self._compiled))
        return compiled

    def validate(
        self,
        schema: Dict[str, Any],
        data: Any,
        *,
        unknown: Optional[Union[UnknownParameterPolicy, str]] = None,
        coerce: Optional[bool] = None,
    ) -> ValidationOutcome:
        """
        Validate a parameter bag.

        Args:
            schema: Parameter schema (usually an object schema)
            data: Raw input; ``None`` is treated as an empty bag
            unknown: Per-call override of the unknown-property policy
            coerce: Per-call override of string coercion

        Returns:
            ValidationOutcome with the coerced value, or the issues found

        Raises:
            SchemaError: If the schema itself is malformed
        """
        policy = UnknownParameterPolicy(unknown) if unknown is not None else self.unknown
        do_coerce = self.coerce if coerce is None else coerce

        normalized, validator = self._compile(schema, policy is UnknownParameterPolicy.STRICT)

        if data is None and _declared_types(normalized) in (["object"], None):
            data = {}

        value = _prepare(normalized, data, policy, do_coerce)
        errors = [_issue(error) for error in validator.iter_errors(value)]

        if errors:
            return ValidationOutcome(value=None, errors=errors)
        return ValidationOutcome(value=value)
