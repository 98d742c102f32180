"""
IXP Telemetry

Request metrics collected from dispatcher completion events.
"""

from ixp.telemetry.metrics import MetricsService

__all__ = ["MetricsService"]
