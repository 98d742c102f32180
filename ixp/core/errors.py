"""
IXP Error Taxonomy

Structured errors raised by the core subsystems. Every error carries an
``error_kind`` that is stable across releases and is what callers see in a
failed dispatch result.
"""

from __future__ import annotations

import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional


class IXPError(Exception):
    """Base class for all IXP errors."""

    error_kind: str = "InternalError"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}
        if status_code is not None:
            self.status_code = status_code
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self, include_details: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "errorKind": self.error_kind,
            "message": self.message,
            "statusCode": self.status_code,
            "timestamp": self.timestamp.isoformat(),
        }
        if include_details and self.details:
            data["details"] = self.details
        return data

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        debug: bool = False,
    ) -> "IXPError":
        """Wrap an arbitrary exception as an IXPError."""
        if isinstance(exc, IXPError):
            return exc

        details: Dict[str, Any] = {"original_error": type(exc).__name__}
        if debug:
            details["traceback"] = "".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            )
        return InternalError(str(exc) or "An internal error occurred", details)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


# === Request errors ===


class ParameterValidationError(IXPError):
    """Parameters did not satisfy the intent schema."""

    error_kind = "ValidationError"
    status_code = 400

    def __init__(self, issues: Iterable[Any], intent_name: Optional[str] = None):
        self.issues = list(issues)
        rendered = ", ".join(str(issue) for issue in self.issues)
        super().__init__(
            f"Parameter validation failed: {rendered}",
            {
                "intent": intent_name,
                "errors": [
                    issue.to_dict() if hasattr(issue, "to_dict") else str(issue)
                    for issue in self.issues
                ],
            },
        )


class IntentNotFoundError(IXPError):
    error_kind = "NotFoundError"
    status_code = 404

    def __init__(self, intent_name: str):
        self.intent_name = intent_name
        super().__init__(f"Intent '{intent_name}' not found", {"intent": intent_name})


class DuplicateIntentError(IXPError):
    error_kind = "DuplicateIntentError"
    status_code = 409

    def __init__(self, intent_name: str):
        self.intent_name = intent_name
        super().__init__(
            f"Intent '{intent_name}' is already registered", {"intent": intent_name}
        )


class InvalidIntentError(IXPError):
    """An intent definition is structurally invalid."""

    error_kind = "InvalidIntentError"
    status_code = 500


class ComponentNotFoundError(IXPError):
    """An intent names a component the component registry does not hold."""

    error_kind = "ComponentNotFoundError"
    status_code = 404

    def __init__(self, component: str, intent_name: Optional[str] = None):
        self.component = component
        super().__init__(
            f"Component '{component}' not found",
            {"component": component, "intent": intent_name},
        )


class InvalidComponentError(IXPError):
    """A component definition is structurally invalid."""

    error_kind = "InvalidComponentError"
    status_code = 500


class SchemaError(IXPError):
    """A parameter schema is malformed. This is a programming error."""

    error_kind = "SchemaError"
    status_code = 500

    def __init__(self, message: str, path: str = ""):
        self.path = path
        where = f" at '{path}'" if path else ""
        super().__init__(f"Invalid schema{where}: {message}", {"path": path})


class AuthenticationError(IXPError):
    error_kind = "AuthenticationError"
    status_code = 401

    def __init__(self, message: str = "Authentication required", details=None):
        super().__init__(message, details)


class AuthorizationError(IXPError):
    error_kind = "AuthorizationError"
    status_code = 403

    def __init__(self, message: str = "Not authorized", details=None):
        super().__init__(message, details)


class RateLimitError(IXPError):
    error_kind = "RateLimitError"
    status_code = 429

    def __init__(self, limit: int, window_seconds: float, retry_after: float = 0.0):
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded: {limit} requests per {window_seconds:g}s",
            {
                "limit": limit,
                "window_seconds": window_seconds,
                "retry_after": round(retry_after, 3),
            },
        )


class RequestTimeoutError(IXPError):
    error_kind = "TimeoutError"
    status_code = 408

    def __init__(self, timeout_seconds: float, operation: str = "request"):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Operation '{operation}' timed out after {timeout_seconds:g}s",
            {"operation": operation, "timeout_seconds": timeout_seconds},
        )


class RequestCancelledError(IXPError):
    error_kind = "CancelledError"
    status_code = 499

    def __init__(self, message: str = "Request was cancelled"):
        super().__init__(message)


class MultipleNextInvocationError(IXPError):
    """A middleware invoked its continuation more than once."""

    error_kind = "MultipleNextInvocationError"
    status_code = 500

    def __init__(self, middleware_name: str):
        self.middleware_name = middleware_name
        super().__init__(
            f"Middleware '{middleware_name}' called next() more than once",
            {"middleware": middleware_name},
        )


class InternalError(IXPError):
    error_kind = "InternalError"
    status_code = 500


# === Registry errors ===


class DuplicateServiceError(IXPError):
    error_kind = "DuplicateServiceError"
    status_code = 409

    def __init__(self, service_name: str):
        self.service_name = service_name
        super().__init__(
            f"Service '{service_name}' is already registered", {"service": service_name}
        )


# === Plugin errors ===


class MissingDependencyError(IXPError):
    error_kind = "MissingDependencyError"
    status_code = 424

    def __init__(self, plugin_name: str, missing: List[str]):
        self.plugin_name = plugin_name
        self.missing = list(missing)
        super().__init__(
            f"Plugin '{plugin_name}' requires plugins that are not running: "
            f"{', '.join(self.missing)}",
            {"plugin": plugin_name, "missing": self.missing},
        )


class CyclicDependencyError(IXPError):
    error_kind = "CyclicDependencyError"
    status_code = 500

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(
            f"Plugin dependency cycle detected: {' -> '.join(self.cycle)}",
            {"cycle": self.cycle},
        )


class DependentExistsError(IXPError):
    error_kind = "DependentExistsError"
    status_code = 409

    def __init__(self, plugin_name: str, dependents: List[str]):
        self.plugin_name = plugin_name
        self.dependents = sorted(dependents)
        super().__init__(
            f"Plugin '{plugin_name}' is required by: {', '.join(self.dependents)}",
            {"plugin": plugin_name, "dependents": self.dependents},
        )


class DuplicatePluginError(IXPError):
    error_kind = "DuplicatePluginError"
    status_code = 409

    def __init__(self, plugin_name: str):
        self.plugin_name = plugin_name
        super().__init__(
            f"Plugin '{plugin_name}' is already installed", {"plugin": plugin_name}
        )


class PluginNotFoundError(IXPError):
    error_kind = "NotFoundError"
    status_code = 404

    def __init__(self, plugin_name: str):
        self.plugin_name = plugin_name
        super().__init__(f"Plugin '{plugin_name}' not found", {"plugin": plugin_name})


class PluginLifecycleError(IXPError):
    """A plugin operation raised; the plugin has been rolled back."""

    error_kind = "PluginLifecycleError"
    status_code = 500

    def __init__(self, plugin_name: str, operation: str, cause: BaseException):
        self.plugin_name = plugin_name
        self.operation = operation
        self.cause = cause
        super().__init__(
            f"Plugin '{plugin_name}' {operation} failed: {cause}",
            {
                "plugin": plugin_name,
                "operation": operation,
                "cause": type(cause).__name__,
            },
        )


class LifecycleTransitionError(IXPError):
    error_kind = "InternalError"
    status_code = 500

    def __init__(self, plugin_name: str, from_state: Any, to_state: Any):
        self.plugin_name = plugin_name
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Plugin '{plugin_name}' cannot transition from "
            f"{from_state.value} to {to_state.value}",
            {"plugin": plugin_name, "from": from_state.value, "to": to_state.value},
        )
