"""
Tests for the progress websocket handler.

The handler is driven with an in-memory connection object so the tests
need no network; authentication is injected except where the JWT path
itself is under test.
"""

import asyncio
import json
from types import SimpleNamespace

import pytest
from rest_framework_simplejwt.tokens import AccessToken

from apps.realtime.events import SUBJECT_JOB, ProgressEvent
from apps.realtime.hub import BroadcastHub
from apps.realtime.server import (
    CLOSE_UNAUTHORIZED,
    CLOSE_UNSUPPORTED_PATH,
    ProgressServer,
    authenticate_token,
)

ALICE = SimpleNamespace(pk=7)


class FakeConnection:
    """Just enough of a websockets server connection for the handler."""

    def __init__(self, path):
        self.request = SimpleNamespace(path=path)
        self.sent = []
        self.closed_with = None
        self._incoming = None

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self, code=1000, reason=''):
        self.closed_with = (code, reason)

    def _queue(self):
        if self._incoming is None:
            self._incoming = asyncio.Queue()
        return self._incoming

    def hang_up(self):
        self._queue().put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._queue().get()
        if message is None:
            raise StopAsyncIteration
        return message


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def job_update(percent, status='running'):
    return ProgressEvent(subject_id='job-1', subject_kind=SUBJECT_JOB, status=status, percent=percent)


@pytest.fixture
def hub():
    return BroadcastHub(outbox_size=16)


@pytest.fixture
def server(hub):
    return ProgressServer(
        hub=hub,
        host='127.0.0.1',
        port=0,
        authenticate=lambda token: ALICE if token == 'good' else None,
    )


class TestProgressHandler:

    def test_hello_then_live_events(self, server, hub):
        async def scenario():
            hub.publish(ALICE.pk, job_update(5))  # before connecting: never replayed
            connection = FakeConnection('/progress?token=good')
            handler = asyncio.ensure_future(server.handler(connection))

            await wait_until(lambda: len(connection.sent) == 1)
            hub.publish(ALICE.pk, job_update(40))
            hub.publish(ALICE.pk, job_update(100, status='completed'))
            await wait_until(lambda: len(connection.sent) == 3)

            connection.hang_up()
            await asyncio.wait_for(handler, 2)
            return connection

        connection = asyncio.run(scenario())

        hello, first, last = connection.sent
        assert hello['type'] == 'hello'
        assert hello['reconcile'] is True
        assert hello['state_url'] == '/api/progress/state/'
        assert first['type'] == 'progress'
        assert first['percent'] == 40
        assert last['status'] == 'completed'
        assert connection.closed_with is None

    def test_disconnect_leaves_room(self, server, hub):
        async def scenario():
            connection = FakeConnection('/progress/?token=good')
            handler = asyncio.ensure_future(server.handler(connection))
            await wait_until(lambda: hub.connection_count() == 1)

            connection.hang_up()
            await asyncio.wait_for(handler, 2)

        asyncio.run(scenario())

        assert hub.connection_count() == 0
        assert hub.publish(ALICE.pk, job_update(60)) == 0

    def test_events_for_other_users_are_not_sent(self, server, hub):
        async def scenario():
            connection = FakeConnection('/progress?token=good')
            handler = asyncio.ensure_future(server.handler(connection))
            await wait_until(lambda: len(connection.sent) == 1)

            hub.publish(99, job_update(40))
            await asyncio.sleep(0.05)

            connection.hang_up()
            await asyncio.wait_for(handler, 2)
            return connection

        connection = asyncio.run(scenario())

        assert [frame['type'] for frame in connection.sent] == ['hello']

    def test_bad_token_is_rejected(self, server, hub):
        connection = FakeConnection('/progress?token=forged')

        asyncio.run(server.handler(connection))

        assert connection.closed_with[0] == CLOSE_UNAUTHORIZED
        assert connection.sent == []
        assert hub.connection_count() == 0

    def test_missing_token_is_rejected(self, server):
        connection = FakeConnection('/progress')

        asyncio.run(server.handler(connection))

        assert connection.closed_with[0] == CLOSE_UNAUTHORIZED

    def test_unknown_path_is_rejected(self, server):
        connection = FakeConnection('/admin?token=good')

        asyncio.run(server.handler(connection))

        assert connection.closed_with[0] == CLOSE_UNSUPPORTED_PATH
        assert connection.sent == []


class TestAuthenticateToken:

    @pytest.mark.django_db
    def test_valid_access_token(self, user):
        token = str(AccessToken.for_user(user))

        assert authenticate_token(token) == user

    @pytest.mark.django_db
    def test_inactive_user(self, user):
        token = str(AccessToken.for_user(user))
        user.is_active = False
        user.save()

        assert authenticate_token(token) is None

    def test_garbage_token(self):
        assert authenticate_token('not-a-jwt') is None

    def test_no_token(self):
        assert authenticate_token(None) is None
