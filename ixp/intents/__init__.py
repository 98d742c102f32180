"""
IXP Intents

Intent definitions, the registry that resolves them, the parameter
validator that checks request bags against their schemas, and the
registry of components intents resolve to.

Usage:
    from ixp.intents import IntentRegistry, ParameterValidator

    registry = IntentRegistry()
    registry.register({
        "name": "get_weather",
        "component": "weather-card",
        "parameters": {
            "type": "object",
            "properties": {"location": {"type": "string"}},
            "required": ["location"],
        },
    })

    intent = registry.resolve("get_weather")
    outcome = ParameterValidator().validate(intent.parameters, {"location": "NYC"})
"""

from ixp.intents.components import ComponentDefinition, ComponentRegistry
from ixp.intents.matcher import AliasIntentMatcher, IntentMatcher
from ixp.intents.registry import IntentRegistry
from ixp.intents.types import IntentDefinition
from ixp.intents.validator import (
    ParameterValidator,
    ValidationIssue,
    ValidationOutcome,
    check_schema,
)

__all__ = [
    "AliasIntentMatcher",
    "ComponentDefinition",
    "ComponentRegistry",
    "IntentDefinition",
    "IntentMatcher",
    "IntentRegistry",
    "ParameterValidator",
    "ValidationIssue",
    "ValidationOutcome",
    "check_schema",
]
