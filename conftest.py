"""
Shared fixtures for the capture service test suite.
"""

import uuid

import pytest
from django.contrib.auth import get_user_model
from rest_framework.test import APIClient

from apps.captures.engine import CaptureEngine, CaptureResult

PNG_BYTES = b'\x89PNG\r\n\x1a\n' + b'\x00' * 32


@pytest.fixture(autouse=True)
def reset_pipeline_singletons():
    """Process-wide singletons must not leak hub rooms or settings between tests."""
    from apps.captures import aggregator, queue
    from apps.core.security import reset_ssrf_guard
    from apps.realtime.hub import get_hub
    from apps.realtime.publisher import reset_publisher

    def reset():
        get_hub().clear()
        reset_publisher()
        reset_ssrf_guard()
        queue._queue = None
        aggregator._aggregator = None

    reset()
    yield
    reset()


@pytest.fixture
def user(db):
    return get_user_model().objects.create_user(username='alice', password='pass1234', email='alice@example.com')


@pytest.fixture
def other_user(db):
    return get_user_model().objects.create_user(username='bob', password='pass1234', email='bob@example.com')


@pytest.fixture
def project_id():
    return uuid.uuid4()


@pytest.fixture
def api_client(user):
    client = APIClient()
    client.force_authenticate(user=user)
    return client


@pytest.fixture
def hub():
    from apps.realtime.hub import get_hub
    return get_hub()


@pytest.fixture
def user_events(hub, user):
    """A live subscription to the user's room, as a connected session would have."""
    return hub.subscribe(user.id)


class FakeEngine(CaptureEngine):
    """
    Scriptable engine. ``script`` maps a URL to a list of outcomes, one per
    attempt: an exception instance to raise, or None to succeed.
    """

    def __init__(self, script=None, stages=('navigating', 'waiting', 'rendering')):
        self.script = {url: list(outcomes) for url, outcomes in (script or {}).items()}
        self.stages = stages
        self.calls = []
        self.closed = False

    def render(self, url, options, timeout, on_stage=None):
        self.calls.append(url)
        for stage in self.stages:
            if on_stage is not None:
                on_stage(stage)
        outcomes = self.script.get(url)
        if outcomes:
            outcome = outcomes.pop(0)
            if outcome is not None:
                raise outcome
        extra = {}
        if options.get('scroll_index'):
            extra = {'scroll_index': options['scroll_index'], 'scroll_position': options['scroll_position']}
        return CaptureResult(image=PNG_BYTES, final_url=url, title='Example', width=1280, height=720,
                             extra=extra)

    def close(self):
        self.closed = True


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def make_engine():
    return FakeEngine
