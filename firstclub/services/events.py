"""
Membership event bus.

In-process publish/subscribe for lifecycle and tier transitions. Downstream
systems (notifications, analytics, CRM sync) subscribe handlers; the
lifecycle manager publishes after its transaction commits and after the
user's lock is released.

Handler failures are logged and swallowed: a broken subscriber must never
undo or block a committed membership change.
"""
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

LIFECYCLE = 'lifecycle'
TIER = 'tier'


@dataclass(frozen=True)
class SubscriptionEvent:
    """A lifecycle (status) or tier transition of one subscription."""
    kind: str                    # 'lifecycle' or 'tier'
    user_id: str
    subscription_id: int
    from_value: Optional[str]    # previous status / tier name (None on creation)
    to_value: str
    occurred_at: datetime
    cause: str

    def to_dict(self):
        data = asdict(self)
        data['occurred_at'] = self.occurred_at.isoformat()
        return data


class EventBus:
    """Synchronous in-memory event bus keyed by event kind."""

    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, kind: str, handler: Callable[[SubscriptionEvent], None]) -> None:
        with self._lock:
            self._handlers[kind].append(handler)

    def unsubscribe(self, kind: str, handler: Callable) -> None:
        with self._lock:
            if handler in self._handlers.get(kind, []):
                self._handlers[kind].remove(handler)

    def publish(self, event: SubscriptionEvent) -> None:
        logger.info(
            f'Membership event [{event.kind}] user={event.user_id} '
            f'sub={event.subscription_id} {event.from_value} -> {event.to_value} ({event.cause})'
        )
        with self._lock:
            handlers = list(self._handlers.get(event.kind, []))

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.warning(f'Event handler {getattr(handler, "__name__", handler)} failed: {e}')

    def publish_all(self, events: List[SubscriptionEvent]) -> None:
        for event in events:
            self.publish(event)


def get_event_bus() -> EventBus:
    """Return the event bus installed on the current app."""
    from flask import current_app
    return current_app.extensions['membership_events']
