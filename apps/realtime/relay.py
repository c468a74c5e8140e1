"""
Redis pub/sub relay for progress events.

Capture workers run in their own processes, so they cannot reach the
socket server's in-memory hub. Workers publish each event to a per-user
Redis channel; the socket server runs a listener thread that feeds every
message into its local hub.
"""

import logging
import threading
from typing import Optional

import redis
from django.conf import settings

from .events import ProgressEvent
from .hub import BroadcastHub

logger = logging.getLogger(__name__)


class RedisRelay:
    """Publishes progress events to Redis and forwards them into a hub."""

    def __init__(self, redis_url: Optional[str] = None, channel_prefix: Optional[str] = None, client=None):
        self.redis_url = redis_url or settings.PROGRESS_REDIS_URL
        self.channel_prefix = channel_prefix or settings.PROGRESS_REDIS_CHANNEL_PREFIX
        self.client = client or redis.Redis.from_url(self.redis_url)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def channel_for(self, user_id) -> str:
        return f"{self.channel_prefix}:{user_id}"

    def user_from_channel(self, channel) -> Optional[str]:
        if isinstance(channel, bytes):
            channel = channel.decode()
        prefix = f"{self.channel_prefix}:"
        if not channel.startswith(prefix):
            return None
        return channel[len(prefix):]

    def publish(self, user_id, event: ProgressEvent) -> None:
        self.client.publish(self.channel_for(user_id), event.to_json())

    def forward(self, message, hub: BroadcastHub) -> bool:
        """Deliver one pub/sub message into the hub. Returns False if it was unusable."""
        if not message or message.get('type') not in ('message', 'pmessage'):
            return False

        user_id = self.user_from_channel(message.get('channel', ''))
        if user_id is None:
            return False

        try:
            event = ProgressEvent.from_json(message['data'])
        except (ValueError, TypeError) as e:
            logger.warning(f"Discarding malformed progress message on {message.get('channel')}: {e}")
            return False

        hub.publish(user_id, event)
        return True

    def listen(self, hub: BroadcastHub, poll_timeout: float = 1.0) -> None:
        """Blocking loop: forward every relayed event until stop() is called."""
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        pubsub.psubscribe(f"{self.channel_prefix}:*")
        logger.info(f"Progress relay listening on {self.channel_prefix}:*")
        try:
            while not self._stop.is_set():
                try:
                    message = pubsub.get_message(timeout=poll_timeout)
                except redis.RedisError as e:
                    logger.error(f"Progress relay could not read from Redis: {e}")
                    self._stop.wait(poll_timeout)
                    continue
                if message:
                    self.forward(message, hub)
        finally:
            pubsub.close()

    def start(self, hub: BroadcastHub) -> threading.Thread:
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.listen, args=(hub,), name='progress-relay', daemon=True
        )
        self._thread.start()
        return self._thread

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
