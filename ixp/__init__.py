"""
IXP - Intent Exchange Protocol core

An in-process runtime for schema-validated intents:
- Intent registry with declarative parameter schemas
- Onion-model middleware pipeline with error phase and timeouts
- Plugin lifecycle with dependency ordering and rollback
- Event bus and service registry shared through an explicit server context
"""

__version__ = "1.0.0"

from ixp.core.config import IXPConfig
from ixp.dispatch import DispatchRequest, DispatchResult, RequestDispatcher
from ixp.server import IXPServer

__all__ = [
    "IXPConfig",
    "IXPServer",
    "DispatchRequest",
    "DispatchResult",
    "RequestDispatcher",
    "__version__",
]
