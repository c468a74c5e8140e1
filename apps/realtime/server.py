"""
Websocket endpoint for live capture progress.

    ws://<PROGRESS_WS_HOST>:<PROGRESS_WS_PORT>/progress?token=<access token>

A connection authenticates with a JWT access token, joins its user's
room in the hub, and receives one ``hello`` frame followed by a stream
of ``progress`` frames. Events published before the connection joined
are never replayed: the hello frame tells the client to fetch
``/api/progress/state/`` and reconcile.
"""

import asyncio
import json
import logging
from typing import Callable, Optional
from urllib.parse import parse_qs, urlsplit

from asgiref.sync import sync_to_async
from django.conf import settings
from django.contrib.auth import get_user_model
from rest_framework_simplejwt.exceptions import TokenError
from rest_framework_simplejwt.settings import api_settings as jwt_settings
from rest_framework_simplejwt.tokens import AccessToken
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from .hub import BroadcastHub, Subscription, get_hub

logger = logging.getLogger(__name__)

CLOSE_UNSUPPORTED_PATH = 1008
CLOSE_UNAUTHORIZED = 4401

STATE_URL = '/api/progress/state/'


def authenticate_token(token: Optional[str]):
    """Return the active user an access token belongs to, or None."""
    if not token:
        return None
    try:
        access = AccessToken(token)
    except TokenError as e:
        logger.info(f"Rejected progress connection: {e}")
        return None

    user_id = access.get(jwt_settings.USER_ID_CLAIM)
    if user_id is None:
        return None
    return (
        get_user_model().objects
        .filter(**{jwt_settings.USER_ID_FIELD: user_id, 'is_active': True})
        .first()
    )


class AsyncSubscription(Subscription):
    """Subscription that wakes an asyncio task when events arrive from any thread."""

    def __init__(self, user_id, loop: asyncio.AbstractEventLoop, maxsize: Optional[int] = None):
        super().__init__(user_id, maxsize=maxsize)
        self._loop = loop
        self._ready = asyncio.Event()

    def _notify(self):
        if not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._ready.set)

    async def wait(self):
        await self._ready.wait()
        self._ready.clear()


class ProgressServer:
    """Serves the progress socket and bridges it to a BroadcastHub."""

    def __init__(
        self,
        hub: Optional[BroadcastHub] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        path: str = '/progress',
        authenticate: Callable = authenticate_token,
        relay=None,
    ):
        self.hub = hub or get_hub()
        self.host = host or settings.PROGRESS_WS_HOST
        self.port = port if port is not None else settings.PROGRESS_WS_PORT
        self.path = path.rstrip('/')
        self.authenticate = authenticate
        self.relay = relay

    async def handler(self, connection):
        target = urlsplit(connection.request.path)
        if target.path.rstrip('/') != self.path:
            await connection.close(code=CLOSE_UNSUPPORTED_PATH, reason='Unsupported path')
            return

        token = parse_qs(target.query).get('token', [None])[0]
        user = await sync_to_async(self.authenticate)(token)
        if user is None:
            await connection.close(code=CLOSE_UNAUTHORIZED, reason='Authentication required')
            return

        subscription = AsyncSubscription(
            user.pk, asyncio.get_running_loop(), maxsize=self.hub.outbox_size
        )
        self.hub.subscribe(user.pk, subscription)
        logger.info(f"Progress connection {subscription.connection_id} opened for user {user.pk}")

        try:
            await connection.send(json.dumps({
                'type': 'hello',
                'connection_id': subscription.connection_id,
                'reconcile': True,
                'state_url': STATE_URL,
            }))
            pump = asyncio.ensure_future(self._pump(connection, subscription))
            reader = asyncio.ensure_future(self._read(connection))
            done, pending = await asyncio.wait({pump, reader}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            for task in done:
                error = task.exception()
                if error is not None and not isinstance(error, ConnectionClosed):
                    raise error
        except ConnectionClosed as e:
            logger.debug(f"Progress connection {subscription.connection_id} dropped: {e}")
        finally:
            self.hub.unsubscribe(subscription.connection_id)
            logger.info(f"Progress connection {subscription.connection_id} closed")

    async def _pump(self, connection, subscription: AsyncSubscription):
        while not subscription.closed:
            await subscription.wait()
            for event in subscription.drain():
                await connection.send(json.dumps({'type': 'progress', **event.to_dict()}))

    async def _read(self, connection):
        # Clients have nothing to say; iterate only to notice the close
        async for _message in connection:
            pass

    async def serve(self, stop: Optional[asyncio.Future] = None):
        if self.relay is not None:
            self.relay.start(self.hub)
        try:
            async with serve(self.handler, self.host, self.port, ping_interval=20, ping_timeout=20):
                logger.info(f"Progress server listening on ws://{self.host}:{self.port}{self.path}")
                if stop is None:
                    stop = asyncio.get_running_loop().create_future()
                await stop
        finally:
            if self.relay is not None:
                self.relay.stop()
        logger.info("Progress server stopped")


def build_server(**kwargs) -> ProgressServer:
    """Server wired to the configured transport: Redis relay or in-process hub."""
    if settings.PROGRESS_PUBLISHER == 'redis' and 'relay' not in kwargs:
        from .relay import RedisRelay
        kwargs['relay'] = RedisRelay()
    return ProgressServer(**kwargs)
