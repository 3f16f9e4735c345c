"""
Registro: campaign progress events.

Publish/subscribe with an explicit lifecycle: a consumer (e.g. a websocket or a
management command) subscribes when it connects and unsubscribes when it goes away.
"""

import logging
import threading
from typing import Callable, Iterable

logger = logging.getLogger(__name__)

CAMPAIGN_PROGRESS = "campaignProgress"
CAMPAIGN_COMPLETED = "campaignCompleted"
CAMPAIGN_CANCELLED = "campaignCancelled"
CAMPAIGN_PAUSED = "campaignPaused"
CAMPAIGN_RESUMED = "campaignResumed"
CAMPAIGN_DELETED = "campaignDeleted"

EVENT_NAMES = frozenset({
    CAMPAIGN_PROGRESS,
    CAMPAIGN_COMPLETED,
    CAMPAIGN_CANCELLED,
    CAMPAIGN_PAUSED,
    CAMPAIGN_RESUMED,
    CAMPAIGN_DELETED,
})

Listener = Callable[[str, dict], None]


class Subscription:
    def __init__(self, bus: "EventBus", listener: Listener, events: frozenset | None):
        self._bus = bus
        self.listener = listener
        self.events = events
        self.active = True

    def wants(self, name: str) -> bool:
        return self.events is None or name in self.events

    def unsubscribe(self) -> None:
        self._bus._remove(self)
        self.active = False


class EventBus:
    def __init__(self):
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []

    def subscribe(self, listener: Listener, events: Iterable[str] | None = None) -> Subscription:
        """Register listener(name, payload) for the given event names (all when None)."""
        wanted = None
        if events is not None:
            wanted = frozenset(events)
            unknown = wanted - EVENT_NAMES
            if unknown:
                raise ValueError(f"Unknown event names: {sorted(unknown)}")
        subscription = Subscription(self, listener, wanted)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, name: str, payload: dict) -> None:
        """Deliver to every matching subscriber. A failing listener never breaks the publisher."""
        with self._lock:
            targets = [s for s in self._subscriptions if s.wants(name)]
        for subscription in targets:
            try:
                subscription.listener(name, payload)
            except Exception:
                logger.exception("event listener failed event=%s", name)
