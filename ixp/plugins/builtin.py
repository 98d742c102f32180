"""
IXP Built-in Plugins

Health aggregation and request metrics, packaged as ordinary plugins.
"""

from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from ixp.plugins.manager import PluginContext
from ixp.plugins.types import HealthStatus, Plugin, PluginHealth
from ixp.telemetry.metrics import MetricsService

logger = structlog.get_logger(__name__)

HealthCheckFn = Callable[[], Awaitable[Any]]

# Status words accepted from checks, beyond the HealthStatus values
_STATUS_ALIASES = {
    "pass": HealthStatus.HEALTHY,
    "warn": HealthStatus.DEGRADED,
    "fail": HealthStatus.UNHEALTHY,
}


def _normalize(result: Any) -> PluginHealth:
    if isinstance(result, dict) and result.get("status") in _STATUS_ALIASES:
        result = {**result, "status": _STATUS_ALIASES[result["status"]]}
    return PluginHealth.coerce(result)


class HealthService:
    """Runs named checks and aggregates them into one status."""

    def __init__(self, checks: Optional[Dict[str, HealthCheckFn]] = None):
        self._checks: Dict[str, HealthCheckFn] = dict(checks or {})

    @property
    def check_names(self):
        return list(self._checks)

    def add_check(self, name: str, check: HealthCheckFn) -> None:
        self._checks[name] = check

    def remove_check(self, name: str) -> bool:
        return self._checks.pop(name, None) is not None

    async def run(self) -> Dict[str, Any]:
        """
        Run every check.

        Returns:
            {"status": healthy|degraded|unhealthy, "checks": {name: result}}
        """
        results: Dict[str, Dict[str, Any]] = {}
        statuses = []

        for name, check in self._checks.items():
            start = time.perf_counter()
            try:
                health = _normalize(await check())
            except Exception as e:
                logger.warning("Health check failed", check=name, error=str(e))
                health = PluginHealth(HealthStatus.UNHEALTHY, message=str(e))

            entry = health.to_dict()
            entry["duration_ms"] = round((time.perf_counter() - start) * 1000, 3)
            results[name] = entry
            statuses.append(health.status)

        if HealthStatus.UNHEALTHY in statuses:
            overall = HealthStatus.UNHEALTHY
        elif HealthStatus.DEGRADED in statuses:
            overall = HealthStatus.DEGRADED
        else:
            overall = HealthStatus.HEALTHY

        return {"status": overall.value, "checks": results}


def create_health_plugin(
    checks: Optional[Dict[str, HealthCheckFn]] = None,
    name: str = "health",
    service_name: str = "health",
) -> Plugin:
    """Plugin registering a HealthService under ``service_name``."""
    service = HealthService(checks)

    async def install(context: PluginContext) -> None:
        context.register_service(service_name, service)
        context.logger.info("Health service registered", checks=service.check_names)

    async def health() -> Dict[str, Any]:
        report = await service.run()
        return {"status": report["status"], "details": report["checks"]}

    return Plugin(
        name=name,
        version="1.0.0",
        install=install,
        health=health,
        description="Aggregates named health checks",
    )


def create_metrics_plugin(
    metrics: Optional[MetricsService] = None,
    name: str = "metrics",
    service_name: str = "metrics",
    channel: str = "request:completed",
) -> Plugin:
    """Plugin registering a MetricsService fed from request completion events."""
    service = metrics or MetricsService()

    async def install(context: PluginContext) -> None:
        context.register_service(service_name, service)
        context.subscribe(channel, service.on_request_completed)

    async def health() -> PluginHealth:
        return PluginHealth(
            HealthStatus.HEALTHY if service.enabled else HealthStatus.DEGRADED,
            details={"requests": service.get_summary()["total_requests"]},
        )

    return Plugin(
        name=name,
        version="1.0.0",
        install=install,
        health=health,
        description="Collects request metrics",
    )
