"""
Tests for the capture worker pool, end to end with a scripted engine.

Tests cover:
- Standalone capture: queued -> completed with stored image and events
- Crawl collection with transient failures exhausting their attempts
- Permanent and unexpected engine errors
- Lost leases abandon the capture without settling it
- The worker loop survives infrastructure errors
"""

from unittest.mock import MagicMock

import pytest
from django.core.files.storage import default_storage
from django.db import DatabaseError

from apps.captures.exceptions import PermanentCaptureError, TransientCaptureError
from apps.captures.models import CaptureJob, Collection
from apps.captures.queue import JobQueue, QueueConfig
from apps.captures.services import create_capture, create_collection, create_frameset
from apps.captures.worker import CaptureWorker, WorkerPool
from apps.core.exceptions import ErrorCode
from apps.realtime.events import SUBJECT_COLLECTION, SUBJECT_JOB


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def queue():
    return JobQueue(config=QueueConfig(lease_seconds=120, timeout_seconds=60, max_attempts=3))


@pytest.fixture
def pool_for(queue):
    def _pool(engine, size=1):
        return WorkerPool(size=size, queue=queue, engine_factory=lambda: engine, poll_interval=0)
    return _pool


# ============================================================================
# Standalone captures
# ============================================================================

class TestStandaloneCapture:

    @pytest.mark.django_db
    def test_capture_end_to_end(self, user, project_id, queue, pool_for, fake_engine, user_events):
        job = create_capture(user, 'https://example.com/pricing', project_id, queue=queue)

        processed = pool_for(fake_engine).drain()

        assert processed == 1
        job.refresh_from_db()
        assert job.state == CaptureJob.STATE_COMPLETED
        assert job.percent == 100
        assert job.attempt_count == 0
        assert job.image_path.startswith(f'captures/{project_id}/')
        assert default_storage.exists(job.image_path)
        assert job.metadata['title'] == 'Example'
        assert job.metadata['width'] == 1280
        assert 'captured_at' in job.metadata
        assert fake_engine.closed

        events = user_events.drain()
        assert events
        assert all(e.subject_kind == SUBJECT_JOB for e in events)
        assert all(e.collection_id is None for e in events)
        assert [e.status for e in events if e.is_terminal] == ['completed']

    @pytest.mark.django_db
    def test_progress_events_in_order(self, user, project_id, queue, pool_for, fake_engine, user_events):
        job = create_capture(user, 'https://example.com/', project_id, queue=queue)

        pool_for(fake_engine).drain()

        events = [e for e in user_events.drain() if e.subject_kind == SUBJECT_JOB]
        assert [e.percent for e in events] == [0, 5, 20, 40, 60, 90, 100]
        assert events[0].status == 'queued'
        assert events[-1].status == 'completed'
        assert [e for e in events if e.is_terminal] == [events[-1]]
        assert all(e.subject_id == str(job.id) for e in events)

    @pytest.mark.django_db
    def test_permanent_error_fails_without_retry(self, user, project_id, queue, pool_for, make_engine):
        url = 'https://example.com/broken'
        engine = make_engine({url: [PermanentCaptureError('HTTP 404', code=ErrorCode.RENDER_ERROR)]})
        job = create_capture(user, url, project_id, queue=queue)

        pool_for(engine).drain()

        job.refresh_from_db()
        assert job.state == CaptureJob.STATE_FAILED
        assert job.attempt_count == 1
        assert job.error_code == 'RENDER_ERROR'
        assert engine.calls == [url]

    @pytest.mark.django_db
    def test_transient_error_retried_then_succeeds(self, user, project_id, queue, pool_for, make_engine):
        url = 'https://example.com/flaky'
        engine = make_engine({url: [TransientCaptureError('connection reset')]})
        job = create_capture(user, url, project_id, queue=queue)

        processed = pool_for(engine).drain()

        assert processed == 2
        job.refresh_from_db()
        assert job.state == CaptureJob.STATE_COMPLETED
        assert job.attempt_count == 1

    @pytest.mark.django_db
    def test_unexpected_error_is_retryable_unknown(self, user, project_id, queue, pool_for, make_engine):
        url = 'https://example.com/odd'
        engine = make_engine({url: [RuntimeError('browser crashed')] * 3})
        job = create_capture(user, url, project_id, queue=queue)

        pool_for(engine).drain()

        job.refresh_from_db()
        assert job.state == CaptureJob.STATE_FAILED
        assert job.attempt_count == 3
        assert job.error_code == 'UNKNOWN_ERROR'
        assert job.error_message == 'browser crashed'


# ============================================================================
# Collections
# ============================================================================

class TestCrawlCollection:

    @pytest.mark.django_db
    def test_transient_failures_exhaust_and_collection_completes_with_errors(
        self, user, project_id, queue, pool_for, make_engine, user_events
    ):
        urls = [f'https://example.com/page-{i}' for i in range(5)]
        failing = urls[1], urls[3]
        engine = make_engine({url: [TransientCaptureError('timeout', code=ErrorCode.NETWORK_TIMEOUT)] * 3
                              for url in failing})
        collection, jobs = create_collection(
            user, project_id, kind=Collection.KIND_CRAWL, urls=urls,
            job_kind=CaptureJob.KIND_CRAWL, queue=queue,
        )

        processed = pool_for(engine).drain()

        assert processed == 3 + 2 * 3
        collection.refresh_from_db()
        assert collection.total_expected == 5
        assert collection.completed_count == 3
        assert collection.failed_count == 2
        assert collection.status == Collection.STATUS_COMPLETED_WITH_ERRORS
        assert collection.finalized_at is not None

        failed = CaptureJob.objects.filter(collection=collection, state=CaptureJob.STATE_FAILED)
        assert sorted(failed.values_list('url', flat=True)) == sorted(failing)
        assert set(failed.values_list('attempt_count', flat=True)) == {3}
        assert set(failed.values_list('error_code', flat=True)) == {'NETWORK_TIMEOUT'}

        terminal = [e for e in user_events.drain()
                    if e.subject_kind == SUBJECT_COLLECTION and e.is_terminal]
        assert len(terminal) == 1
        assert terminal[0].status == 'completed_with_errors'

    @pytest.mark.django_db
    def test_frameset_captures_each_frame(self, user, project_id, queue, pool_for, fake_engine):
        collection, jobs = create_frameset(
            user, 'https://example.com/animation', project_id, [0, 1.5], queue=queue
        )

        pool_for(fake_engine).drain()

        collection.refresh_from_db()
        assert collection.kind == Collection.KIND_FRAMESET
        assert collection.status == Collection.STATUS_COMPLETED
        assert collection.stage == 'Captured 2/2 frames'
        frames = CaptureJob.objects.filter(collection=collection).order_by('created_at')
        assert sorted(f.metadata['frame_index'] for f in frames) == [0, 1]
        assert sorted(f.metadata['frame_delay'] for f in frames) == [0.0, 1.5]
        assert all(f.kind == CaptureJob.KIND_FRAME for f in frames)

    @pytest.mark.django_db
    def test_scroll_frames_follow_timed_frames(self, user, project_id, queue, pool_for, fake_engine):
        collection, jobs = create_frameset(
            user, 'https://example.com/feed', project_id, [0], queue=queue,
            auto_scroll={'enabled': True, 'step_size': 300, 'max_steps': 3},
        )

        pool_for(fake_engine).drain()

        collection.refresh_from_db()
        assert collection.total_expected == 4
        assert collection.status == Collection.STATUS_COMPLETED
        assert collection.stage == 'Captured 4/4 frames'
        scrolls = CaptureJob.objects.filter(collection=collection, kind=CaptureJob.KIND_SCROLL)
        assert sorted((s.metadata['scroll_index'], s.metadata['scroll_position']) for s in scrolls) == [
            (1, 0), (2, 300), (3, 600),
        ]
        assert {s.metadata['total_scrolls'] for s in scrolls} == {3}


# ============================================================================
# Lease loss & loop resilience
# ============================================================================

class TestWorkerResilience:

    @pytest.mark.django_db
    def test_lost_lease_abandons_capture(self, user, project_id, queue, make_engine):

        class StolenLeaseEngine(make_engine):
            def render(self, url, options, timeout, on_stage=None):
                CaptureJob.objects.filter(url=url).update(locked_by='another-worker')
                return super().render(url, options, timeout, on_stage)

        engine = StolenLeaseEngine()
        job = create_capture(user, 'https://example.com/', project_id, queue=queue)
        worker = CaptureWorker('worker-1', queue, engine_factory=lambda: engine, poll_interval=0)

        assert worker.run_once() is True

        job.refresh_from_db()
        assert job.state == CaptureJob.STATE_RUNNING
        assert job.locked_by == 'another-worker'
        assert job.attempt_count == 0
        assert job.error_code == ''
        assert job.image_path == ''

    @pytest.mark.django_db
    def test_loop_survives_database_errors(self, caplog):
        queue = MagicMock()
        worker = CaptureWorker('worker-1', queue, engine_factory=MagicMock(), poll_interval=0)
        calls = []

        def sweep():
            calls.append(1)
            if len(calls) == 1:
                raise DatabaseError('connection lost')
            worker.stop_event.set()
            return 0

        queue.sweep_expired_leases.side_effect = sweep
        queue.lease.return_value = None

        worker.run()

        assert len(calls) == 2
        assert 'poll cycle failed' in caplog.text

    @pytest.mark.django_db(transaction=True)
    def test_pool_starts_and_stops(self, queue, fake_engine):
        pool = WorkerPool(size=2, queue=queue, engine_factory=lambda: fake_engine, poll_interval=0.01)

        pool.start()
        pool.stop(wait=True)

        assert pool.stop_event.is_set()
        assert pool._executor is None
