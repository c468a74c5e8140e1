"""
Broadcast hub: per-user rooms of live connections.

publish() never blocks and never raises because of a slow or dead
subscriber. Each connection owns a bounded outbox; when it is full the
oldest undelivered event is dropped, since the client reconciles from
a state snapshot on reconnect anyway.
"""

import logging
import threading
import uuid
from collections import deque
from typing import Dict, List, Optional

from django.conf import settings

from apps.core.metrics import (
    increment_progress_dropped,
    increment_progress_published,
    set_progress_connections,
)
from .events import ProgressEvent

logger = logging.getLogger(__name__)


class Subscription:
    """
    One connection's view of its user's room.

    Thread-safe: the hub offers from publisher threads while the
    connection drains from its own thread or event loop.
    """

    def __init__(self, user_id, connection_id: Optional[str] = None, maxsize: Optional[int] = None):
        self.user_id = str(user_id)
        self.connection_id = connection_id or uuid.uuid4().hex
        self.maxsize = maxsize or settings.PROGRESS_OUTBOX_SIZE
        self.dropped = 0
        self.closed = False
        self._outbox = deque()
        self._lock = threading.Lock()

    def offer(self, event: ProgressEvent) -> bool:
        """Queue an event; returns False if an older event had to be dropped."""
        with self._lock:
            if self.closed:
                return False
            accepted = True
            if len(self._outbox) >= self.maxsize:
                self._outbox.popleft()
                self.dropped += 1
                accepted = False
            self._outbox.append(event)
        self._notify()
        return accepted

    def drain(self) -> List[ProgressEvent]:
        with self._lock:
            events = list(self._outbox)
            self._outbox.clear()
        return events

    def pending(self) -> int:
        with self._lock:
            return len(self._outbox)

    def close(self):
        with self._lock:
            self.closed = True
            self._outbox.clear()
        self._notify()

    def _notify(self):
        """Hook for subclasses that need a wake-up when events arrive."""
        pass


class BroadcastHub:
    """Routes progress events to every live connection of a user."""

    def __init__(self, outbox_size: Optional[int] = None):
        self.outbox_size = outbox_size
        self._rooms: Dict[str, Dict[str, Subscription]] = {}
        self._connections: Dict[str, Subscription] = {}
        self._lock = threading.RLock()

    def subscribe(self, user_id, subscription: Optional[Subscription] = None) -> Subscription:
        """Join the user's room; subsequent publishes for the user reach it."""
        if subscription is None:
            subscription = Subscription(user_id, maxsize=self.outbox_size)
        user_key = str(user_id)
        with self._lock:
            self._rooms.setdefault(user_key, {})[subscription.connection_id] = subscription
            self._connections[subscription.connection_id] = subscription
            count = len(self._connections)
        set_progress_connections(count)
        logger.debug(f"Connection {subscription.connection_id} joined room user-{user_key}")
        return subscription

    def unsubscribe(self, connection_id: str) -> bool:
        """Leave the room. Unknown connection ids are ignored."""
        with self._lock:
            subscription = self._connections.pop(connection_id, None)
            if subscription is None:
                return False
            room = self._rooms.get(subscription.user_id, {})
            room.pop(connection_id, None)
            if not room:
                self._rooms.pop(subscription.user_id, None)
            count = len(self._connections)
        subscription.close()
        set_progress_connections(count)
        logger.debug(f"Connection {connection_id} left room user-{subscription.user_id}")
        return True

    def publish(self, user_id, event: ProgressEvent) -> int:
        """
        Fire-and-forget delivery to the user's connections.

        Returns the number of connections the event was offered to. A user
        with no connections is not an error; the event is discarded.
        """
        with self._lock:
            subscribers = list(self._rooms.get(str(user_id), {}).values())

        increment_progress_published(event.subject_kind)
        for subscription in subscribers:
            if not subscription.offer(event):
                increment_progress_dropped()
                logger.warning(
                    f"Outbox full for connection {subscription.connection_id}, dropped oldest event"
                )
        return len(subscribers)

    def room(self, user_id) -> List[str]:
        with self._lock:
            return list(self._rooms.get(str(user_id), {}).keys())

    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def clear(self):
        with self._lock:
            connection_ids = list(self._connections.keys())
        for connection_id in connection_ids:
            self.unsubscribe(connection_id)


_hub: Optional[BroadcastHub] = None
_hub_lock = threading.Lock()


def get_hub() -> BroadcastHub:
    """Get the process-wide hub singleton."""
    global _hub
    with _hub_lock:
        if _hub is None:
            _hub = BroadcastHub()
        return _hub
