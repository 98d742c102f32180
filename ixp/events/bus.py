"""
IXP Event Bus

In-process publish/subscribe channel for decoupled notifications:
- Exact channels and glob-style patterns (plugin:*)
- Priority-ordered delivery, ties by subscription order
- Handler failures isolated, logged and counted
- Subscriptions kept in an arena keyed by owner for bulk cleanup
- Bounded history of published events

Delivery is at-most-once and best-effort; nothing is persisted.
"""

from __future__ import annotations

import asyncio
import fnmatch
import itertools
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Set

import structlog

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Any], Any]

_PATTERN_CHARS = set("*?[")


@dataclass
class Subscription:
    """A subscription to an event channel."""
    id: str
    channel: str  # Exact name or glob pattern
    handler: EventHandler
    priority: int = 0
    owner: Optional[str] = None
    seq: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    event_count: int = 0
    last_event_at: Optional[datetime] = None

    @property
    def is_pattern(self) -> bool:
        return any(c in _PATTERN_CHARS for c in self.channel)

    def matches(self, channel: str) -> bool:
        if self.is_pattern:
            return fnmatch.fnmatchcase(channel, self.channel)
        return self.channel == channel


@dataclass
class Event:
    """A published event, as kept in history."""
    channel: str
    payload: Any
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=datetime.now)
    delivered: int = 0
    failed: int = 0


@dataclass
class EventBusMetrics:
    """Counters for the event bus."""
    events_published: int = 0
    events_delivered: int = 0
    events_failed: int = 0
    subscriptions_created: int = 0
    subscriptions_removed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "events_published": self.events_published,
            "events_delivered": self.events_delivered,
            "events_failed": self.events_failed,
            "subscriptions_created": self.subscriptions_created,
            "subscriptions_removed": self.subscriptions_removed,
        }


class EventBus:
    """
    Process-wide event bus.

    Handlers are called one at a time, awaiting coroutine results, so a
    single publish observes a fixed order. Concurrent publishes from
    different requests may interleave.
    """

    def __init__(self, max_history: int = 1000):
        self.max_history = max_history

        self._subscriptions: Dict[str, Subscription] = {}
        self._by_owner: Dict[str, Set[str]] = defaultdict(set)
        self._history: Deque[Event] = deque(maxlen=max_history)
        self._seq = itertools.count()
        self._metrics = EventBusMetrics()

    # === Subscription ===

    def subscribe(
        self,
        channel: str,
        handler: EventHandler,
        *,
        priority: int = 0,
        owner: Optional[str] = None,
    ) -> str:
        """
        Subscribe a handler to a channel.

        Args:
            channel: Channel name or glob pattern
            handler: Sync or async callable receiving the payload
            priority: Higher runs first
            owner: Owner key (plugin name) for unsubscribe_all()

        Returns:
            Subscription ID
        """
        if not callable(handler):
            raise TypeError("Event handler must be callable")

        subscription = Subscription(
            id=uuid.uuid4().hex,
            channel=channel,
            handler=handler,
            priority=priority,
            owner=owner,
            seq=next(self._seq),
        )
        self._subscriptions[subscription.id] = subscription
        if owner is not None:
            self._by_owner[owner].add(subscription.id)

        self._metrics.subscriptions_created += 1
        logger.debug(
            "Subscription created",
            channel=channel,
            subscription_id=subscription.id,
            owner=owner,
            priority=priority,
        )
        return subscription.id

    def unsubscribe(self, subscription_id: str) -> bool:
        subscription = self._subscriptions.pop(subscription_id, None)
        if subscription is None:
            return False

        if subscription.owner is not None:
            owned = self._by_owner.get(subscription.owner)
            if owned is not None:
                owned.discard(subscription_id)
                if not owned:
                    del self._by_owner[subscription.owner]

        self._metrics.subscriptions_removed += 1
        return True

    def unsubscribe_all(self, owner: str) -> int:
        """
        Remove every subscription held by an owner.

        Returns:
            Number of subscriptions removed
        """
        ids = list(self._by_owner.get(owner, ()))
        count = sum(1 for subscription_id in ids if self.unsubscribe(subscription_id))
        self._by_owner.pop(owner, None)
        if count:
            logger.debug("Removed owner subscriptions", owner=owner, count=count)
        return count

    # === Publishing ===

    async def publish(self, channel: str, payload: Any = None) -> int:
        """
        Publish a payload to every matching subscriber.

        Handler exceptions are logged and never reach the publisher.

        Returns:
            Number of handlers that completed without error
        """
        event = Event(channel=channel, payload=payload)
        self._metrics.events_published += 1
        if self.max_history > 0:
            self._history.append(event)

        for subscription in self._matching(channel):
            # Removed by an earlier handler of this same publish
            if subscription.id not in self._subscriptions:
                continue
            try:
                result = subscription.handler(payload)
                if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                    await result
            except Exception as e:
                event.failed += 1
                self._metrics.events_failed += 1
                logger.error(
                    "Event handler failed",
                    channel=channel,
                    event_id=event.id,
                    subscription_id=subscription.id,
                    owner=subscription.owner,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            subscription.event_count += 1
            subscription.last_event_at = datetime.now()
            event.delivered += 1
            self._metrics.events_delivered += 1

        return event.delivered

    def _matching(self, channel: str) -> List[Subscription]:
        matched = [s for s in self._subscriptions.values() if s.matches(channel)]
        matched.sort(key=lambda s: (-s.priority, s.seq))
        return matched

    # === Queries ===

    def subscriptions(self, owner: Optional[str] = None) -> List[Subscription]:
        if owner is None:
            return sorted(self._subscriptions.values(), key=lambda s: s.seq)
        ids = self._by_owner.get(owner, set())
        return sorted(
            (self._subscriptions[i] for i in ids if i in self._subscriptions),
            key=lambda s: s.seq,
        )

    def subscriber_count(self, channel: str) -> int:
        return len(self._matching(channel))

    def get_history(self, channel: Optional[str] = None, limit: int = 100) -> List[Event]:
        events = list(self._history)
        if channel is not None:
            events = [
                e for e in events
                if e.channel == channel or fnmatch.fnmatchcase(e.channel, channel)
            ]
        return events[-limit:] if limit > 0 else []

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = self._metrics.to_dict()
        stats["active_subscriptions"] = len(self._subscriptions)
        stats["owners"] = len(self._by_owner)
        stats["history_size"] = len(self._history)
        return stats

    def clear(self) -> None:
        """Drop all subscriptions and history."""
        self._subscriptions.clear()
        self._by_owner.clear()
        self._history.clear()
