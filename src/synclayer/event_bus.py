"""
In-process pub/sub for sync intents.

An EventBus is the message queue of one execution context (a surface);
SameContextAdapter posts intents through it.

Usage:
    bus = EventBus()
    dispose = bus.subscribe('sync.pull', lambda intent: schedule_pull(intent.user_id))
    bus.subscribe('*', log_intent)

    bus.publish(SyncIntent(event_type='sync.pull', user_id='u1', device_id='d1'))
    dispose()
"""

import logging
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

WILDCARD = '*'

Callback = Callable[[Any], None]


class EventBus:
    """
    Thread-safe registry of callbacks keyed by event type.

    '*' subscribers see every event, after the type's own subscribers.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[Callback]] = {}
        self._lock = Lock()

    def subscribe(self, event_type: str, callback: Callback) -> Callable[[], bool]:
        """
        Register a callback for one event type (or WILDCARD).

        Returns:
            Callable removing this registration
        """
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)
        logger.debug(f"Subscribed to {event_type}: {getattr(callback, '__name__', 'lambda')}")
        return lambda: self.unsubscribe(event_type, callback)

    def unsubscribe(self, event_type: str, callback: Callback) -> bool:
        """Remove one registration; False when it was not there."""
        with self._lock:
            callbacks = self._subscribers.get(event_type)
            if not callbacks or callback not in callbacks:
                return False
            callbacks.remove(callback)
            if not callbacks:
                del self._subscribers[event_type]
        logger.debug(f"Unsubscribed from {event_type}")
        return True

    def publish(self, event: Any) -> int:
        """
        Deliver an event to every matching callback.

        Callback errors are logged, never raised to the publisher.

        Returns:
            Number of callbacks invoked
        """
        event_type = getattr(event, 'event_type', None)
        if event_type is None:
            logger.warning(f"Event missing 'event_type' attribute: {type(event).__name__}")
            return 0

        # Snapshot so callbacks may (un)subscribe without deadlocking
        with self._lock:
            callbacks = list(self._subscribers.get(event_type, []))
            callbacks += self._subscribers.get(WILDCARD, [])

        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in subscriber callback for {event_type}: {e}", exc_info=True)

        logger.debug(f"Published {event_type} to {len(callbacks)} subscribers")
        return len(callbacks)

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()

    def subscriber_count(self, event_type: Optional[str] = None) -> int:
        """Callbacks registered for one type, or in total."""
        with self._lock:
            if event_type:
                return len(self._subscribers.get(event_type, []))
            return sum(len(callbacks) for callbacks in self._subscribers.values())


__all__ = ['EventBus', 'WILDCARD']
