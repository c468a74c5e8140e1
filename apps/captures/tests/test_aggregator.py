"""
Tests for progress aggregation.

Tests cover:
- Monotonic per-job percent
- Idempotent terminal outcome (outcome_recorded_at guard)
- Collection counters and status after every job is terminal
- Single finalization (finalized_at guard) and one terminal event
- Counter overflow is logged as CRITICAL
- Reconciliation snapshot scoping
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from django.db import connection

from apps.captures.aggregator import ProgressAggregator, get_aggregator
from apps.captures.models import CaptureJob, Collection
from apps.captures.queue import CaptureOutcome, JobQueue, QueueConfig
from apps.captures.services import create_capture, create_collection
from apps.core.exceptions import ErrorCode
from apps.realtime.events import SUBJECT_COLLECTION, SUBJECT_JOB


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def queue():
    return JobQueue(config=QueueConfig(lease_seconds=120, timeout_seconds=60, max_attempts=3))


@pytest.fixture
def crawl_collection(user, project_id, queue):
    collection, jobs = create_collection(
        user,
        project_id,
        kind=Collection.KIND_CRAWL,
        urls=[f'https://example.com/page-{i}' for i in range(3)],
        job_kind=CaptureJob.KIND_CRAWL,
        name='Crawl of example.com',
        queue=queue,
    )
    return collection, jobs


def finish(queue, job_id, ok=True):
    """Lease a specific job and settle it."""
    queue.try_claim(job_id, 'worker-1')
    if ok:
        queue.complete(job_id, CaptureOutcome(image_path=f'captures/{job_id}.png'))
    else:
        queue.fail(job_id, ErrorCode.RENDER_ERROR, 'blank page', retryable=False)


def collection_events(subscription, terminal_only=False):
    events = [e for e in subscription.drain() if e.subject_kind == SUBJECT_COLLECTION]
    if terminal_only:
        events = [e for e in events if e.is_terminal]
    return events


# ============================================================================
# Per-job progress
# ============================================================================

class TestJobProgress:

    @pytest.mark.django_db
    def test_percent_only_moves_forward(self, user, project_id, queue):
        create_capture(user, 'https://example.com/', project_id, queue=queue)
        job = queue.lease('worker-1')
        aggregator = get_aggregator()

        assert aggregator.record_stage(job, 'rendering') is True
        assert aggregator.record_stage(job, 'navigating') is False
        assert aggregator.record_stage(job, 'rendering') is False

        job.refresh_from_db()
        assert job.percent == 60
        assert job.stage == 'Capturing screenshot...'

    @pytest.mark.django_db
    def test_stage_ignored_for_unleased_job(self, user, project_id, queue):
        job = create_capture(user, 'https://example.com/', project_id, queue=queue)

        assert get_aggregator().record_stage(job, 'navigating') is False
        job.refresh_from_db()
        assert job.percent == 0

    @pytest.mark.django_db
    def test_stage_event_reaches_owner(self, user, project_id, queue, user_events):
        create_capture(user, 'https://example.com/docs', project_id, queue=queue)
        job = queue.lease('worker-1')
        queue.start(job.id, 'worker-1')
        user_events.drain()

        get_aggregator().record_stage(job, 'navigating')

        events = user_events.drain()
        assert len(events) == 1
        assert events[0].subject_kind == SUBJECT_JOB
        assert events[0].subject_id == str(job.id)
        assert events[0].status == 'running'
        assert events[0].percent == 20
        assert events[0].stage == 'Navigating to example.com...'

    @pytest.mark.django_db
    def test_stage_event_reports_stored_state(self, user, project_id, queue, user_events):
        create_capture(user, 'https://example.com/docs', project_id, queue=queue)
        user_events.drain()

        job = queue.lease('worker-1')

        events = user_events.drain()
        assert [(e.status, e.percent) for e in events] == [('locked', 5)]

        get_aggregator().record_stage(job, 'navigating')
        assert user_events.drain()[0].status == 'locked'

        queue.start(job.id, 'worker-1')
        get_aggregator().record_stage(job, 'waiting')
        assert user_events.drain()[0].status == 'running'

    @pytest.mark.django_db
    def test_events_not_sent_to_other_users(self, user, other_user, project_id, queue, hub):
        other_events = hub.subscribe(other_user.id)
        create_capture(user, 'https://example.com/', project_id, queue=queue)
        job = queue.lease('worker-1')

        get_aggregator().record_stage(job, 'navigating')

        assert other_events.drain() == []

    @pytest.mark.django_db
    def test_custom_publisher_receives_events(self, user, project_id, queue):
        published = []
        aggregator = ProgressAggregator(publish=lambda user_id, event: published.append((user_id, event)))
        create_capture(user, 'https://example.com/', project_id, queue=queue)
        job = queue.lease('worker-1')

        aggregator.record_stage(job, 'waiting')

        assert published[-1][0] == user.id
        assert published[-1][1].percent == 40


# ============================================================================
# Terminal outcomes
# ============================================================================

class TestOutcome:

    @pytest.mark.django_db
    def test_outcome_counted_once(self, crawl_collection, queue):
        collection, jobs = crawl_collection
        finish(queue, jobs[0].id)

        assert get_aggregator().record_outcome(jobs[0].id) is False
        assert get_aggregator().record_outcome(jobs[0].id) is False

        collection.refresh_from_db()
        assert collection.completed_count == 1
        assert collection.failed_count == 0

    @pytest.mark.django_db
    def test_outcome_ignored_for_non_terminal_job(self, crawl_collection):
        collection, jobs = crawl_collection

        assert get_aggregator().record_outcome(jobs[0].id) is False
        collection.refresh_from_db()
        assert collection.completed_count == 0

    @pytest.mark.django_db
    def test_duplicate_completion_emits_one_terminal_job_event(self, user, project_id, queue, user_events):
        create_capture(user, 'https://example.com/', project_id, queue=queue)
        job = queue.lease('worker-1')
        user_events.drain()

        queue.complete(job.id, CaptureOutcome(image_path='a.png'))
        queue.complete(job.id, CaptureOutcome(image_path='a.png'))

        terminal = [e for e in user_events.drain() if e.is_terminal]
        assert len(terminal) == 1
        assert terminal[0].status == 'completed'
        assert terminal[0].percent == 100
        assert terminal[0].image_path == 'a.png'


# ============================================================================
# Collections
# ============================================================================

class TestCollectionAggregation:

    @pytest.mark.django_db
    def test_all_success_completes_collection(self, crawl_collection, queue):
        collection, jobs = crawl_collection

        for job in jobs:
            finish(queue, job.id)

        collection.refresh_from_db()
        assert collection.completed_count == 3
        assert collection.failed_count == 0
        assert collection.status == Collection.STATUS_COMPLETED
        assert collection.finalized_at is not None
        assert collection.percent == 100

    @pytest.mark.django_db
    def test_failures_complete_with_errors(self, crawl_collection, queue):
        collection, jobs = crawl_collection

        finish(queue, jobs[0].id)
        finish(queue, jobs[1].id, ok=False)
        finish(queue, jobs[2].id)

        collection.refresh_from_db()
        assert collection.completed_count == 2
        assert collection.failed_count == 1
        assert collection.total_expected == 3
        assert collection.status == Collection.STATUS_COMPLETED_WITH_ERRORS
        assert collection.stage == 'Captured 2/3 screenshots (1 failed)'

    @pytest.mark.django_db
    def test_partial_progress_keeps_collection_open(self, crawl_collection, queue):
        collection, jobs = crawl_collection

        finish(queue, jobs[0].id)

        collection.refresh_from_db()
        assert collection.status == Collection.STATUS_RUNNING
        assert collection.finalized_at is None
        assert collection.stage == 'Captured 1/3 screenshots'
        assert collection.percent == 33

    @pytest.mark.django_db
    def test_start_moves_collection_to_running(self, crawl_collection, queue):
        collection, jobs = crawl_collection

        job = queue.lease('worker-1')
        queue.start(job.id, 'worker-1')

        collection.refresh_from_db()
        assert collection.status == Collection.STATUS_RUNNING

    @pytest.mark.django_db
    def test_single_terminal_collection_event(self, crawl_collection, queue, user_events):
        collection, jobs = crawl_collection
        user_events.drain()

        for job in jobs:
            finish(queue, job.id)
        for job in jobs:
            get_aggregator().record_outcome(job.id)

        terminal = collection_events(user_events, terminal_only=True)
        assert len(terminal) == 1
        assert terminal[0].subject_id == str(collection.id)
        assert terminal[0].completed_count == 3
        assert terminal[0].total_expected == 3

    @pytest.mark.django_db
    def test_finalize_is_idempotent(self, crawl_collection, queue):
        collection, jobs = crawl_collection
        for job in jobs:
            finish(queue, job.id)
        collection.refresh_from_db()
        finalized_at = collection.finalized_at

        assert get_aggregator()._finalize(collection, {}) == []

        collection.refresh_from_db()
        assert collection.finalized_at == finalized_at

    @pytest.mark.django_db
    def test_counter_overflow_logged_critical(self, crawl_collection, queue, caplog):
        collection, jobs = crawl_collection
        Collection.objects.filter(id=collection.id).update(total_expected=2)

        with caplog.at_level(logging.CRITICAL, logger='apps.captures.aggregator'):
            for job in jobs:
                finish(queue, job.id)

        assert any(r.levelno == logging.CRITICAL for r in caplog.records)
        collection.refresh_from_db()
        assert collection.completed_count == 3
        assert collection.status == Collection.STATUS_COMPLETED


class TestConcurrentCompletion:

    @pytest.mark.django_db(transaction=True)
    def test_concurrent_completions_counted_exactly_once(self, crawl_collection, queue):
        """
        Note: SQLite serializes writers and may raise lock errors under
        contention. Every completion that succeeded must be counted once.
        """
        collection, jobs = crawl_collection
        for job in jobs:
            queue.try_claim(job.id, 'worker-1')

        completed = []
        errors = []
        lock = threading.Lock()

        def complete(job_id):
            try:
                if queue.complete(job_id, CaptureOutcome(image_path=f'{job_id}.png')):
                    with lock:
                        completed.append(job_id)
            except Exception as e:
                errors.append(str(e))
            finally:
                connection.close()

        with ThreadPoolExecutor(max_workers=3) as executor:
            futures = [executor.submit(complete, job.id) for job in jobs for _ in range(2)]
            for future in futures:
                future.result(timeout=30)

        assert len(completed) == len(set(completed))
        collection.refresh_from_db()
        counted = CaptureJob.objects.filter(
            collection=collection, outcome_recorded_at__isnull=False
        ).count()
        assert collection.completed_count == counted
        if counted == 3:
            assert collection.status == Collection.STATUS_COMPLETED
            assert collection.finalized_at is not None


# ============================================================================
# Reconciliation snapshot
# ============================================================================

class TestSnapshot:

    @pytest.mark.django_db
    def test_snapshot_scoped_to_owner(self, user, other_user, project_id, queue):
        mine = create_capture(user, 'https://example.com/mine', project_id, queue=queue)
        create_capture(other_user, 'https://example.com/theirs', project_id, queue=queue)

        snapshot = get_aggregator().snapshot(user)

        assert [j['subject_id'] for j in snapshot['jobs']] == [str(mine.id)]
        assert snapshot['collections'] == []
        assert 'generated_at' in snapshot

    @pytest.mark.django_db
    def test_snapshot_filters_by_project(self, user, project_id, queue, crawl_collection):
        import uuid
        other_project = uuid.uuid4()
        create_capture(user, 'https://example.com/elsewhere', other_project, queue=queue)

        snapshot = get_aggregator().snapshot(user, project_id=project_id)

        assert len(snapshot['jobs']) == 3
        assert len(snapshot['collections']) == 1
        assert snapshot['collections'][0]['total_expected'] == 3

    @pytest.mark.django_db
    def test_snapshot_reflects_terminal_state(self, user, project_id, queue, crawl_collection):
        collection, jobs = crawl_collection
        for job in jobs:
            finish(queue, job.id)

        snapshot = get_aggregator().snapshot(user)

        assert {j['status'] for j in snapshot['jobs']} == {'completed'}
        assert snapshot['collections'][0]['status'] == 'completed'
        assert snapshot['collections'][0]['percent'] == 100
