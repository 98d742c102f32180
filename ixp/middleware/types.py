"""
IXP Middleware Types
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ixp.core.context import RequestContext
from ixp.core.errors import IXPError

Next = Callable[[], Awaitable[None]]
MiddlewareHandler = Callable[[RequestContext, Next], Awaitable[None]]
StageHandler = Callable[[RequestContext], Awaitable[Any]]


class MiddlewarePhase(str, Enum):
    """Where a middleware sits in the chain."""
    GLOBAL = "global"
    REQUEST = "request"
    RESPONSE = "response"
    ERROR = "error"


@dataclass
class MiddlewareDescriptor:
    """
    A registered middleware.

    Within a phase, lower ``order`` runs earlier; equal orders run in
    registration sequence.
    """
    name: str
    handler: MiddlewareHandler
    phase: MiddlewarePhase = MiddlewarePhase.REQUEST
    order: int = 0
    seq: int = field(default=0, compare=False)

    def __post_init__(self):
        if not self.name:
            raise ValueError("Middleware must have a name")
        if not callable(self.handler):
            raise TypeError(f"Middleware '{self.name}' handler must be callable")
        self.phase = MiddlewarePhase(self.phase)

    @property
    def sort_key(self):
        return (self.order, self.seq)

    def to_dict(self) -> dict:
        return {"name": self.name, "phase": self.phase.value, "order": self.order}


@dataclass
class PipelineOutcome:
    """
    Result of one pipeline execution.

    ``error`` is set when the request failed. ``recovered_from`` is set when
    an error-phase middleware turned a failure into a response.
    """
    response: Any = None
    error: Optional[IXPError] = None
    recovered_from: Optional[BaseException] = None
    timed_out: bool = False
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.error is None
