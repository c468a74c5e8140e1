"""
Entry point for publishing progress from anywhere in the pipeline.

PROGRESS_PUBLISHER selects the transport:
- 'local': straight into this process's hub (tests, single-process dev)
- 'redis': through RedisRelay to the socket server process
"""

import logging
import threading

import redis
from django.conf import settings

from .events import ProgressEvent
from .hub import get_hub

logger = logging.getLogger(__name__)


class LocalPublisher:

    def publish(self, user_id, event: ProgressEvent) -> None:
        get_hub().publish(user_id, event)


class RedisPublisher:

    def __init__(self):
        from .relay import RedisRelay
        self.relay = RedisRelay()

    def publish(self, user_id, event: ProgressEvent) -> None:
        try:
            self.relay.publish(user_id, event)
        except redis.RedisError as e:
            # Clients reconcile from the snapshot endpoint, so a lost event is recoverable
            logger.warning(
                f"Could not relay progress for {event.subject_kind} {event.subject_id}: {e}"
            )


_publisher = None
_publisher_lock = threading.Lock()


def get_publisher():
    """Get the configured publisher singleton."""
    global _publisher
    with _publisher_lock:
        if _publisher is None:
            if settings.PROGRESS_PUBLISHER == 'redis':
                _publisher = RedisPublisher()
            else:
                _publisher = LocalPublisher()
        return _publisher


def reset_publisher():
    global _publisher
    with _publisher_lock:
        _publisher = None


def publish_progress(user_id, event: ProgressEvent) -> None:
    get_publisher().publish(user_id, event)
