"""
IXP Plugin Lifecycle

Forward-only state machine for plugins. Any state may move directly to
FAILED; STOPPED and FAILED are terminal for a given PluginInfo record.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Set, Tuple

import structlog

from ixp.core.errors import LifecycleTransitionError
from ixp.plugins.types import PluginInfo, PluginState

logger = structlog.get_logger(__name__)


# Valid state transitions
STATE_TRANSITIONS: Dict[PluginState, Set[PluginState]] = {
    PluginState.REGISTERED: {PluginState.INITIALIZING, PluginState.FAILED},
    PluginState.INITIALIZING: {PluginState.INITIALIZED, PluginState.FAILED},
    PluginState.INITIALIZED: {PluginState.STARTING, PluginState.FAILED},
    PluginState.STARTING: {PluginState.RUNNING, PluginState.FAILED},
    PluginState.RUNNING: {PluginState.STOPPING, PluginState.FAILED},
    PluginState.STOPPING: {PluginState.STOPPED, PluginState.FAILED},
    PluginState.STOPPED: set(),
    PluginState.FAILED: set(),
}


def can_transition(current_state: PluginState, target_state: PluginState) -> bool:
    """Check if state transition is valid."""
    return target_state in STATE_TRANSITIONS.get(current_state, set())


class LifecycleTracker:
    """
    Applies state transitions to PluginInfo records.

    Keeps a bounded log of transitions for diagnostics.
    """

    def __init__(self, max_log: int = 500):
        self._log: List[Tuple[datetime, str, PluginState, PluginState]] = []
        self._max_log = max_log

    def transition(self, info: PluginInfo, target_state: PluginState) -> None:
        """
        Move a plugin to a new state.

        Raises:
            LifecycleTransitionError: If the transition is not allowed
        """
        current_state = info.state
        if not can_transition(current_state, target_state):
            raise LifecycleTransitionError(info.name, current_state, target_state)

        now = datetime.now()
        info.state = target_state
        info.state_changed_at = now

        if target_state == PluginState.INITIALIZED:
            info.installed_at = now
        elif target_state == PluginState.RUNNING:
            info.started_at = now
        elif target_state in (PluginState.STOPPED, PluginState.FAILED):
            info.stopped_at = now

        self._log.append((now, info.name, current_state, target_state))
        if len(self._log) > self._max_log:
            del self._log[: len(self._log) - self._max_log]

        logger.debug(
            "Plugin state changed",
            plugin=info.name,
            from_state=current_state.value,
            to_state=target_state.value,
        )

    def fail(self, info: PluginInfo, error: BaseException) -> None:
        """Move a plugin to FAILED, recording the error. No-op if already terminal."""
        info.record_error(error)
        if info.state.is_terminal:
            return
        self.transition(info, PluginState.FAILED)

    def history(self, plugin_name: str) -> List[Tuple[PluginState, PluginState]]:
        return [(src, dst) for _, name, src, dst in self._log if name == plugin_name]
