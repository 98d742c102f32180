"""
IXP Request Metrics Tests
"""

import pytest

from ixp.telemetry import MetricsService


@pytest.fixture
def metrics():
    return MetricsService()


class TestMetricsService:
    """Prometheus-backed counters read back as a plain dict."""

    def test_counts_by_intent_outcome_and_kind(self, metrics):
        metrics.record_request("get_weather", True, 10.0)
        metrics.record_request("get_weather", False, 30.0, "ValidationError")
        metrics.record_request("ping", True, 20.0)

        snapshot = metrics.get_metrics()
        assert snapshot["requests"] == {
            "total": 3,
            "by_intent": {"get_weather": 2, "ping": 1},
            "by_outcome": {"success": 2, "failure": 1},
        }
        assert snapshot["errors"] == {"total": 1, "by_kind": {"ValidationError": 1}}
        assert snapshot["performance"]["average_ms"] == 20.0
        assert snapshot["performance"]["samples"] == 3

    def test_registry_holds_prometheus_series(self, metrics):
        metrics.record_request("ping", False, 250.0, "RequestTimeoutError")

        registry = metrics.registry
        assert registry.get_sample_value(
            "ixp_requests_total", {"intent": "ping", "outcome": "failure"}
        ) == 1.0
        assert registry.get_sample_value(
            "ixp_errors_total", {"kind": "RequestTimeoutError"}
        ) == 1.0
        assert registry.get_sample_value(
            "ixp_request_duration_seconds_bucket", {"intent": "ping", "le": "0.25"}
        ) == 1.0
        assert registry.get_sample_value(
            "ixp_request_duration_seconds_bucket", {"intent": "ping", "le": "0.1"}
        ) == 0.0

    def test_services_do_not_share_a_registry(self):
        first, second = MetricsService(), MetricsService()
        first.record_request("ping", True, 1.0)
        assert second.get_metrics()["requests"]["total"] == 0

    def test_export_is_text_exposition(self, metrics):
        metrics.record_request("ping", True, 1.0)
        text = metrics.export()
        assert "# TYPE ixp_requests_total counter" in text
        assert 'ixp_requests_total{intent="ping",outcome="success"} 1.0' in text

    def test_missing_error_kind_counts_as_internal(self, metrics):
        metrics.record_request("ping", False, 1.0)
        assert metrics.get_metrics()["errors"]["by_kind"] == {"InternalError": 1}

    def test_disabled_records_nothing(self):
        metrics = MetricsService(enabled=False)
        metrics.record_request("ping", True, 1.0)
        metrics.record_error("InternalError")
        assert metrics.get_summary()["total_requests"] == 0

    def test_reset(self, metrics):
        metrics.record_request("ping", False, 5.0, "InternalError")
        metrics.reset()

        snapshot = metrics.get_metrics()
        assert snapshot["requests"]["total"] == 0
        assert snapshot["errors"]["by_kind"] == {}
        assert snapshot["performance"]["samples"] == 0

    def test_summary_error_rate(self, metrics):
        metrics.record_request("ping", True, 1.0)
        metrics.record_request("ping", False, 1.0, "InternalError")
        assert metrics.get_summary()["error_rate"] == 50.0
