"""
IXP Events

In-process publish/subscribe bus shared by plugins, the service registry
and the dispatcher.
"""

from ixp.events.bus import Event, EventBus, EventBusMetrics, Subscription

__all__ = ["Event", "EventBus", "EventBusMetrics", "Subscription"]
