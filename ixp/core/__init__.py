"""IXP Core Module - configuration, errors, contexts and logging setup."""

from ixp.core.config import IXPConfig, UnknownParameterPolicy, get_config, set_config
from ixp.core.context import RequestContext, ServerContext
from ixp.core.errors import IXPError
from ixp.core.logging import setup_logging

__all__ = [
    "IXPConfig",
    "UnknownParameterPolicy",
    "get_config",
    "set_config",
    "RequestContext",
    "ServerContext",
    "IXPError",
    "setup_logging",
]
