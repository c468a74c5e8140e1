"""
Tests for the progress subscriber, the client connection loop and the
image handle cache.

Tests cover:
- Percent never goes backwards; terminal updates apply once
- Stale collection counts and lower-percent updates are dropped
- Reconnect reconciliation replaces state from the snapshot, including
  mid-collection against the live aggregator
- Image handles are ref-counted and only released explicitly
"""

import json
from contextlib import contextmanager
from unittest.mock import MagicMock

import pytest

from apps.captures.aggregator import get_aggregator
from apps.captures.models import CaptureJob, Collection
from apps.captures.queue import CaptureOutcome, JobQueue, QueueConfig
from apps.captures.services import create_collection
from apps.core.exceptions import ErrorCode
from apps.realtime import client as client_module
from apps.realtime.client import (
    HandleRevoked,
    HTTPImageLoader,
    ImageHandleCache,
    ProgressClient,
    ProgressSubscriber,
)
from apps.realtime.events import SUBJECT_COLLECTION, SUBJECT_JOB, ProgressEvent


def job_update(percent, status='running', job_id='job-1', stage=''):
    return ProgressEvent(subject_id=job_id, subject_kind=SUBJECT_JOB, status=status,
                         percent=percent, stage=stage)


def collection_update(completed, total, collection_id='col-1'):
    return ProgressEvent(
        subject_id=collection_id, subject_kind=SUBJECT_COLLECTION, status='running',
        percent=int(completed * 100 / total), stage=f'Captured {completed}/{total}',
        total_expected=total, completed_count=completed, failed_count=0,
    )


def frame(event):
    return json.dumps({'type': 'progress', **event.to_dict()})


HELLO = json.dumps({'type': 'hello', 'connection_id': 'abc', 'reconcile': True})


@pytest.fixture
def changes():
    return []


@pytest.fixture
def subscriber(changes):
    return ProgressSubscriber(on_change=changes.append)


# ============================================================================
# ProgressSubscriber
# ============================================================================

class TestProgressSubscriber:

    def test_percent_never_decreases(self, subscriber):
        subscriber.apply(job_update(60))
        subscriber.apply(job_update(20))

        state = subscriber.job('job-1')
        assert state.percent == 60

    def test_duplicate_completion_applies_once(self, subscriber, changes):
        assert subscriber.apply(job_update(100, status='completed')) is True
        assert subscriber.apply(job_update(100, status='completed')) is False
        assert subscriber.apply(job_update(90)) is False

        assert len(changes) == 1
        assert subscriber.job('job-1').status == 'completed'

    def test_jobs_and_collections_are_tracked_separately(self, subscriber):
        subscriber.apply(job_update(40, job_id='shared-id'))
        subscriber.apply(ProgressEvent(
            subject_id='shared-id', subject_kind=SUBJECT_COLLECTION, status='running', percent=10
        ))

        assert subscriber.job('shared-id').percent == 40
        assert subscriber.collection('shared-id').percent == 10

    def test_stale_collection_count_is_dropped(self, subscriber, changes):
        assert subscriber.apply(collection_update(3, 5)) is True
        assert subscriber.apply(collection_update(2, 5)) is False

        state = subscriber.collection('col-1')
        assert state.completed_count == 3
        assert state.stage == 'Captured 3/5'
        assert len(changes) == 1

    def test_lower_percent_update_is_dropped_whole(self, subscriber):
        subscriber.apply(job_update(60, stage='rendering'))
        assert subscriber.apply(job_update(20, stage='navigating')) is False

        assert subscriber.job('job-1').stage == 'rendering'

    def test_terminal_update_keeps_highest_percent(self, subscriber):
        subscriber.apply(job_update(60))
        assert subscriber.apply(job_update(0, status='failed')) is True

        state = subscriber.job('job-1')
        assert state.status == 'failed'
        assert state.percent == 60

    def test_hello_marks_state_stale(self, subscriber):
        subscriber.reconcile({'jobs': [], 'collections': []})
        assert subscriber.needs_reconcile is False

        assert subscriber.handle_message(HELLO) == 'hello'
        assert subscriber.needs_reconcile is True

    def test_progress_frames_are_applied(self, subscriber):
        assert subscriber.handle_message(frame(job_update(20))) == 'progress'
        assert subscriber.job('job-1').percent == 20

    def test_unknown_frames_are_ignored(self, subscriber):
        assert subscriber.handle_message(json.dumps({'type': 'pong'})) == 'pong'
        assert subscriber.state() == {}

    def test_reconnect_reconciles_missed_updates(self, subscriber):
        """A job that finished while disconnected shows completed after reconnect."""
        subscriber.handle_message(HELLO)
        subscriber.reconcile({'jobs': [], 'collections': []})
        subscriber.handle_message(frame(job_update(40)))
        subscriber.handle_message(frame(job_update(20, job_id='job-gone')))

        # Connection drops; job-1 completes and job-gone is purged server-side
        subscriber.handle_message(HELLO)
        subscriber.reconcile({
            'jobs': [job_update(100, status='completed').to_dict()],
            'collections': [],
        })

        assert subscriber.job('job-1').status == 'completed'
        assert subscriber.job('job-1').percent == 100
        assert subscriber.job('job-gone') is None
        assert subscriber.needs_reconcile is False


# ============================================================================
# Reconnect against a live collection
# ============================================================================

def comparable(events):
    """Subject state without the per-build timestamp."""
    return {
        event.key: {k: v for k, v in event.to_dict().items() if k != 'timestamp'}
        for event in events
    }


class TestReconnectDuringCollection:

    @pytest.fixture
    def queue(self):
        return JobQueue(config=QueueConfig(lease_seconds=120, timeout_seconds=60, max_attempts=3))

    @pytest.fixture
    def collection(self, user, project_id, queue):
        return create_collection(
            user,
            project_id,
            kind=Collection.KIND_CRAWL,
            urls=[f'https://example.com/page-{i}' for i in range(4)],
            job_kind=CaptureJob.KIND_CRAWL,
            queue=queue,
        )

    def settle(self, queue, job, ok=True):
        queue.try_claim(job.id, 'worker-1')
        if ok:
            queue.complete(job.id, CaptureOutcome(image_path=f'captures/{job.id}.png'))
        else:
            queue.fail(job.id, ErrorCode.RENDER_ERROR, 'blank page', retryable=False)

    def deliver(self, subscription, subscriber):
        for event in subscription.drain():
            subscriber.apply(event)

    @pytest.mark.django_db
    def test_client_matches_server_after_missing_events(self, hub, user, queue, collection, subscriber):
        collection, jobs = collection
        aggregator = get_aggregator()

        subscriber.reconcile(aggregator.snapshot(user))
        connection = hub.subscribe(user.id)
        self.settle(queue, jobs[0])
        self.deliver(connection, subscriber)
        assert subscriber.collection(collection.id).completed_count == 1

        # Connection drops while two jobs settle
        hub.unsubscribe(connection.connection_id)
        self.settle(queue, jobs[1])
        self.settle(queue, jobs[2], ok=False)
        assert subscriber.collection(collection.id).completed_count == 1

        connection = hub.subscribe(user.id)
        assert subscriber.handle_message(HELLO) == 'hello'
        subscriber.reconcile(aggregator.snapshot(user))
        state = subscriber.collection(collection.id)
        assert (state.completed_count, state.failed_count) == (2, 1)

        self.settle(queue, jobs[3])
        self.deliver(connection, subscriber)

        server = aggregator.snapshot(user)
        server_events = [ProgressEvent.from_dict(item)
                         for item in server['jobs'] + server['collections']]
        assert comparable(subscriber.state().values()) == comparable(server_events)
        assert subscriber.collection(collection.id).status == 'completed_with_errors'


# ============================================================================
# ProgressClient
# ============================================================================

@pytest.fixture
def session():
    session = MagicMock()
    session.headers = {}
    session.get.return_value.json.return_value = {
        'jobs': [job_update(100, status='completed').to_dict()],
        'collections': [],
    }
    return session


@pytest.fixture
def progress_client(session, subscriber):
    return ProgressClient(
        api_url='http://api.test',
        ws_url='ws://api.test:8765/progress',
        token='tok',
        subscriber=subscriber,
        session=session,
        project_id='p-1',
    )


class TestProgressClient:

    def test_sets_bearer_header(self, progress_client, session):
        assert session.headers['Authorization'] == 'Bearer tok'

    def test_hello_triggers_snapshot_fetch(self, progress_client, session, subscriber):
        progress_client.handle_message(HELLO)

        session.get.assert_called_once_with(
            'http://api.test/api/progress/state/', params={'project_id': 'p-1'}, timeout=10
        )
        assert subscriber.job('job-1').status == 'completed'
        assert subscriber.needs_reconcile is False

    def test_progress_frames_do_not_fetch(self, progress_client, session):
        progress_client.handle_message(frame(job_update(20)))

        session.get.assert_not_called()

    def test_run_once_reads_until_stopped(self, progress_client, subscriber, monkeypatch):
        frames = [HELLO, frame(job_update(100, status='completed', job_id='job-2'))]
        urls = []

        class FakeSocket:
            def recv(self, timeout=None):
                if frames:
                    return frames.pop(0)
                progress_client.stop()
                raise TimeoutError

        @contextmanager
        def fake_connect(url):
            urls.append(url)
            yield FakeSocket()

        monkeypatch.setattr(client_module, 'connect', fake_connect)

        progress_client.run_once()

        assert urls == ['ws://api.test:8765/progress?token=tok']
        assert subscriber.job('job-1').status == 'completed'
        assert subscriber.job('job-2').status == 'completed'


# ============================================================================
# ImageHandleCache
# ============================================================================

@pytest.fixture
def loads():
    return []


@pytest.fixture
def cache(loads):
    def loader(job_id):
        loads.append(job_id)
        return f'png-{job_id}'.encode()
    return ImageHandleCache(loader)


class TestImageHandleCache:

    def test_acquire_shares_one_handle(self, cache, loads):
        first = cache.acquire('job-1')
        second = cache.acquire('job-1')

        assert first is second
        assert first.refs == 2
        assert first.data == b'png-job-1'
        assert loads == ['job-1']

    def test_released_when_last_holder_lets_go(self, cache):
        first = cache.acquire('job-1')
        cache.acquire('job-1')

        cache.release(first)
        assert first.data == b'png-job-1'
        assert 'job-1' in cache

        cache.release(first)
        assert 'job-1' not in cache
        with pytest.raises(HandleRevoked):
            first.data

    def test_reacquire_after_release_reloads(self, cache, loads):
        cache.release(cache.acquire('job-1'))

        handle = cache.acquire('job-1')

        assert handle.data == b'png-job-1'
        assert loads == ['job-1', 'job-1']

    def test_progress_events_never_release_images(self, cache, subscriber):
        handle = cache.acquire('job-1')

        subscriber.apply(job_update(100, status='completed'))
        subscriber.apply(job_update(100, status='completed'))
        subscriber.apply(job_update(40))
        subscriber.reconcile({'jobs': [], 'collections': []})

        assert handle.data == b'png-job-1'
        assert handle.refs == 1
        assert cache.job_ids() == ['job-1']

    def test_evict_revokes_regardless_of_refs(self, cache):
        handle = cache.acquire('job-1')
        cache.acquire('job-1')

        assert cache.evict('job-1') is True
        assert handle.revoked
        assert cache.evict('job-1') is False

        # Late release from a holder is harmless
        cache.release(handle)
        assert len(cache) == 0

    def test_teardown_revokes_everything(self, cache):
        handles = [cache.acquire(f'job-{i}') for i in range(3)]

        cache.teardown()

        assert len(cache) == 0
        assert all(h.revoked for h in handles)


class TestHTTPImageLoader:

    def test_loads_image_through_capture_detail(self):
        session = MagicMock()
        session.headers = {}
        detail = MagicMock()
        detail.json.return_value = {'image_url': '/media/captures/p/job-1.png'}
        image = MagicMock(content=b'png-bytes')
        session.get.side_effect = [detail, image]

        data = HTTPImageLoader('http://api.test/', token='tok', session=session)('job-1')

        assert data == b'png-bytes'
        assert session.get.call_args_list[0][0][0] == 'http://api.test/api/captures/job-1/'
        assert session.get.call_args_list[1][0][0] == 'http://api.test/media/captures/p/job-1.png'
        assert session.headers['Authorization'] == 'Bearer tok'

    def test_job_without_image(self):
        session = MagicMock()
        session.headers = {}
        session.get.return_value.json.return_value = {'image_url': None}

        with pytest.raises(ValueError):
            HTTPImageLoader('http://api.test', token='tok', session=session)('job-1')
