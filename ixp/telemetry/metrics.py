"""
IXP Request Metrics

Prometheus metrics for dispatched requests:
- ixp_requests_total{intent, outcome}
- ixp_errors_total{kind}
- ixp_request_duration_seconds{intent} histogram

Each service owns a dedicated CollectorRegistry so that several servers in
one process never collide on metric names. ``get_metrics()`` reads the
registry back into a plain dict; average and p95/p99 latency come from a
bounded sample window.
"""

from __future__ import annotations

import time
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterator, Optional, Tuple

import structlog
from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

logger = structlog.get_logger(__name__)


LATENCY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


def _percentile(ordered: list, fraction: float) -> float:
    if not ordered:
        return 0.0
    index = min(int(len(ordered) * fraction), len(ordered) - 1)
    return ordered[index]


class MetricsService:
    """
    Request metrics collector.

    Args:
        enabled: When False every record call is a no-op
        max_samples: Latency samples kept for average and percentiles
        namespace: Metric name prefix
    """

    def __init__(self, enabled: bool = True, max_samples: int = 1000, namespace: str = "ixp"):
        self.enabled = enabled
        self.max_samples = max_samples
        self.namespace = namespace
        self._started = time.monotonic()
        self._build()

    def _build(self) -> None:
        self.registry = CollectorRegistry()
        self._requests = Counter(
            "requests",
            "Dispatched intent requests",
            ["intent", "outcome"],
            namespace=self.namespace,
            registry=self.registry,
        )
        self._errors = Counter(
            "errors",
            "Failed intent requests by error kind",
            ["kind"],
            namespace=self.namespace,
            registry=self.registry,
        )
        self._latency = Histogram(
            "request_duration_seconds",
            "Intent request latency",
            ["intent"],
            namespace=self.namespace,
            registry=self.registry,
            buckets=LATENCY_BUCKETS,
        )
        self._durations: Deque[float] = deque(maxlen=self.max_samples)

    def record_request(
        self,
        intent: str,
        success: bool,
        duration_ms: float,
        error_kind: Optional[str] = None,
    ) -> None:
        """Record one completed dispatch."""
        if not self.enabled:
            return

        self._requests.labels(intent=intent, outcome="success" if success else "failure").inc()
        self._latency.labels(intent=intent).observe(float(duration_ms) / 1000)
        self._durations.append(float(duration_ms))

        if not success:
            self.record_error(error_kind or "InternalError")

    def record_error(self, error_kind: str) -> None:
        if not self.enabled:
            return
        self._errors.labels(kind=error_kind).inc()

    async def on_request_completed(self, payload: Dict[str, Any]) -> None:
        """Event bus handler for "request:completed"."""
        self.record_request(
            intent=payload.get("intent", "unknown"),
            success=bool(payload.get("success")),
            duration_ms=float(payload.get("duration_ms", 0.0)),
            error_kind=payload.get("error_kind"),
        )

    def _samples(self, sample_name: str) -> Iterator[Tuple[Dict[str, str], float]]:
        full_name = f"{self.namespace}_{sample_name}"
        for family in self.registry.collect():
            for sample in family.samples:
                if sample.name == full_name:
                    yield sample.labels, sample.value

    def get_metrics(self) -> Dict[str, Any]:
        by_intent: Dict[str, int] = defaultdict(int)
        by_outcome: Dict[str, int] = defaultdict(int)
        for labels, value in self._samples("requests_total"):
            by_intent[labels["intent"]] += int(value)
            by_outcome[labels["outcome"]] += int(value)

        by_kind = {labels["kind"]: int(value) for labels, value in self._samples("errors_total")}

        ordered = sorted(self._durations)
        average = sum(ordered) / len(ordered) if ordered else 0.0

        return {
            "requests": {
                "total": sum(by_intent.values()),
                "by_intent": dict(by_intent),
                "by_outcome": dict(by_outcome),
            },
            "performance": {
                "average_ms": round(average, 2),
                "p95_ms": round(_percentile(ordered, 0.95), 2),
                "p99_ms": round(_percentile(ordered, 0.99), 2),
                "samples": len(ordered),
            },
            "errors": {
                "total": sum(by_kind.values()),
                "by_kind": by_kind,
            },
            "uptime_seconds": int(time.monotonic() - self._started),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def get_summary(self) -> Dict[str, float]:
        metrics = self.get_metrics()
        total = metrics["requests"]["total"]
        errors = metrics["errors"]["total"]
        return {
            "total_requests": total,
            "error_rate": (errors / total * 100) if total else 0.0,
            "average_ms": metrics["performance"]["average_ms"],
            "uptime_seconds": metrics["uptime_seconds"],
        }

    def export(self) -> str:
        """Prometheus text exposition of this service's registry."""
        return generate_latest(self.registry).decode("utf-8")

    def reset(self) -> None:
        """Drop every series. ``registry`` is replaced by a fresh one."""
        self._build()
        logger.debug("Metrics reset")
