"""
IXP Services

Named-instance directory shared across plugins and request handlers.
"""

from ixp.services.registry import (
    SERVICE_REMOVED,
    ServiceMode,
    ServiceRegistration,
    ServiceRegistry,
)

__all__ = ["SERVICE_REMOVED", "ServiceMode", "ServiceRegistration", "ServiceRegistry"]
