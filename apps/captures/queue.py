"""
Database-backed capture job queue.

The lease is the only mutual-exclusion point in the pipeline: a worker
owns a job exactly when its conditional UPDATE from ``queued`` to
``locked`` matched one row. Everything else (start, heartbeat, complete,
fail) is conditional on the current state and lease holder, so a worker
whose lease was swept cannot overwrite the new holder's work.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, List, Optional

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from apps.core.metrics import (
    increment_captures_enqueued,
    increment_captures_finished,
    increment_lease_contention,
    increment_leases_reclaimed,
)

from .aggregator import ProgressAggregator, get_aggregator
from .exceptions import AlreadyTerminal, JobNotFound, QueueContention, retry_delay_seconds
from .models import CaptureJob, Collection

logger = logging.getLogger(__name__)

LEASE_CANDIDATES = 10


@dataclass(frozen=True)
class QueueConfig:
    lease_seconds: int
    timeout_seconds: int
    max_attempts: int

    @classmethod
    def from_settings(cls) -> 'QueueConfig':
        config = cls(
            lease_seconds=settings.CAPTURE_LEASE_SECONDS,
            timeout_seconds=settings.CAPTURE_TIMEOUT_SECONDS,
            max_attempts=settings.CAPTURE_MAX_ATTEMPTS,
        )
        config.validate()
        return config

    def validate(self):
        if self.timeout_seconds >= self.lease_seconds:
            raise ImproperlyConfigured(
                f"CAPTURE_TIMEOUT_SECONDS ({self.timeout_seconds}) must be shorter than "
                f"CAPTURE_LEASE_SECONDS ({self.lease_seconds})"
            )
        if self.max_attempts < 1:
            raise ImproperlyConfigured("CAPTURE_MAX_ATTEMPTS must be at least 1")


@dataclass
class CaptureOutcome:
    """What a successful capture produced."""
    image_path: str
    metadata: Optional[dict] = None


class JobQueue:
    """Enqueue, lease and settle capture jobs."""

    def __init__(self, config: Optional[QueueConfig] = None, aggregator: Optional[ProgressAggregator] = None):
        self.config = config or QueueConfig.from_settings()
        self.aggregator = aggregator or get_aggregator()

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def enqueue(self, job: CaptureJob) -> str:
        """Persist a new job in the queued state and return its id."""
        job.state = CaptureJob.STATE_QUEUED
        job.max_attempts = self.config.max_attempts
        job.save()
        increment_captures_enqueued(job.kind)
        logger.info(f"Enqueued {job.kind} capture {job.id} for {job.url}", extra={'job_id': str(job.id)})
        return str(job.id)

    def enqueue_many(self, jobs: Iterable[CaptureJob]) -> List[str]:
        """Enqueue a batch atomically; either every job is queued or none."""
        jobs = list(jobs)
        for job in jobs:
            job.state = CaptureJob.STATE_QUEUED
            job.max_attempts = self.config.max_attempts
        with transaction.atomic():
            CaptureJob.objects.bulk_create(jobs)
        for job in jobs:
            increment_captures_enqueued(job.kind)
        logger.info(f"Enqueued {len(jobs)} capture jobs")
        return [str(job.id) for job in jobs]

    # ------------------------------------------------------------------
    # Leasing
    # ------------------------------------------------------------------

    def _available(self, now):
        return CaptureJob.objects.filter(
            Q(locked_until__isnull=True) | Q(locked_until__lte=now),
            state=CaptureJob.STATE_QUEUED,
        )

    def try_claim(self, job_id, worker_id: str, lease_seconds: Optional[int] = None) -> CaptureJob:
        """
        Attempt to claim one specific job.

        Raises QueueContention if the job is no longer available.
        """
        now = timezone.now()
        lease_seconds = lease_seconds or self.config.lease_seconds
        claimed = self._available(now).filter(id=job_id).update(
            state=CaptureJob.STATE_LOCKED,
            locked_by=worker_id,
            locked_until=now + timedelta(seconds=lease_seconds),
            updated_at=now,
        )
        if claimed != 1:
            raise QueueContention(f"Job {job_id} was claimed by another worker")
        return CaptureJob.objects.select_related('collection').get(id=job_id)

    def lease(self, worker_id: str, lease_seconds: Optional[int] = None) -> Optional[CaptureJob]:
        """
        Claim the oldest available job, or return None if there is none.

        Candidates are tried oldest first; losing a race for one moves on
        to the next.
        """
        now = timezone.now()
        candidates = list(
            self._available(now)
            .order_by('created_at', 'id')
            .values_list('id', flat=True)[:LEASE_CANDIDATES]
        )

        for job_id in candidates:
            try:
                job = self.try_claim(job_id, worker_id, lease_seconds)
            except QueueContention:
                increment_lease_contention()
                continue
            logger.debug(f"{worker_id} leased job {job.id}", extra={'job_id': str(job.id)})
            self.aggregator.record_stage(job, 'locked')
            return job
        return None

    def start(self, job_id, worker_id: str) -> bool:
        """Move a leased job to running. Returns False if the lease was lost."""
        now = timezone.now()
        started = CaptureJob.objects.filter(
            id=job_id, state=CaptureJob.STATE_LOCKED, locked_by=worker_id
        ).update(state=CaptureJob.STATE_RUNNING, started_at=now, updated_at=now)

        if started:
            Collection.objects.filter(
                jobs__id=job_id, status=Collection.STATUS_PENDING
            ).update(status=Collection.STATUS_RUNNING)
        return bool(started)

    def heartbeat(self, job_id, worker_id: str, lease_seconds: Optional[int] = None) -> bool:
        """Extend the lease. Returns False if the worker no longer holds it."""
        now = timezone.now()
        lease_seconds = lease_seconds or self.config.lease_seconds
        extended = CaptureJob.objects.filter(
            id=job_id, state__in=CaptureJob.LEASED_STATES, locked_by=worker_id
        ).update(locked_until=now + timedelta(seconds=lease_seconds))
        return bool(extended)

    def sweep_expired_leases(self) -> int:
        """
        Return jobs whose lease expired to the queue.

        Lease expiry is not a failure (the worker died or stalled), so the
        attempt count is left alone.
        """
        now = timezone.now()
        reclaimed = CaptureJob.objects.filter(
            state__in=CaptureJob.LEASED_STATES,
            locked_until__lte=now,
        ).update(
            state=CaptureJob.STATE_QUEUED,
            locked_by='',
            locked_until=None,
            stage='Queued (previous worker timed out)',
            updated_at=now,
        )
        if reclaimed:
            increment_leases_reclaimed(reclaimed)
            logger.warning(f"Returned {reclaimed} expired capture leases to the queue")
        return reclaimed

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def _get(self, job_id) -> CaptureJob:
        try:
            return CaptureJob.objects.get(id=job_id)
        except (CaptureJob.DoesNotExist, ValueError):
            raise JobNotFound(f"Capture job {job_id} not found")

    def _check_not_terminal(self, job: CaptureJob):
        if job.is_terminal:
            raise AlreadyTerminal(job.id, job.state)

    def complete(self, job_id, outcome: CaptureOutcome, worker_id: Optional[str] = None) -> bool:
        """
        Mark a leased job completed and record its outcome.

        The terminal state and the outcome count commit together; if
        counting fails the job stays leased and is retried once the lease
        expires. Returns False (a logged no-op) if the job is already
        terminal or the given worker no longer holds the lease.
        """
        job = self._get(job_id)
        try:
            self._check_not_terminal(job)
        except AlreadyTerminal as e:
            logger.info(f"Ignoring completion: {e}", extra={'job_id': str(job_id)})
            return False

        now = timezone.now()
        qs = CaptureJob.objects.filter(id=job.id, state__in=CaptureJob.LEASED_STATES)
        if worker_id:
            qs = qs.filter(locked_by=worker_id)

        owner_id, events = None, []
        with transaction.atomic():
            completed = qs.update(
                state=CaptureJob.STATE_COMPLETED,
                percent=100,
                stage='Screenshot captured',
                image_path=outcome.image_path,
                metadata=outcome.metadata or {},
                error_code='',
                error_message='',
                locked_by='',
                locked_until=None,
                completed_at=now,
                updated_at=now,
            )
            if completed:
                owner_id, events = self.aggregator.count_outcome(job.id)

        if not completed:
            logger.warning(
                f"Completion for job {job.id} dropped: lease no longer held by {worker_id or 'caller'}",
                extra={'job_id': str(job.id)},
            )
            return False

        increment_captures_finished('completed')
        self.aggregator.emit_all(owner_id, events)
        return True

    def fail(self, job_id, error_code: str, error_message: str = '', retryable: bool = False,
             worker_id: Optional[str] = None) -> str:
        """
        Record a failed attempt.

        Retryable failures go back to the queue after a backoff until the
        job runs out of attempts; anything else fails terminally. Returns
        the job's resulting state, or its existing state when the call was
        a no-op.
        """
        job = self._get(job_id)
        try:
            self._check_not_terminal(job)
        except AlreadyTerminal as e:
            logger.info(f"Ignoring failure: {e}", extra={'job_id': str(job_id)})
            return job.state

        log_extra = {'job_id': str(job.id), 'error_code': str(error_code)}
        code = getattr(error_code, 'value', error_code)
        attempts = job.attempt_count + 1
        now = timezone.now()

        qs = CaptureJob.objects.filter(
            id=job.id, state__in=CaptureJob.LEASED_STATES, attempt_count=job.attempt_count
        )
        if worker_id:
            qs = qs.filter(locked_by=worker_id)

        if retryable and attempts < job.max_attempts:
            delay = retry_delay_seconds(error_code, attempts)
            requeued = qs.update(
                state=CaptureJob.STATE_QUEUED,
                attempt_count=attempts,
                error_code=code,
                error_message=error_message[:2000],
                locked_by='',
                locked_until=now + timedelta(seconds=delay) if delay else None,
                started_at=None,
                updated_at=now,
            )
            if not requeued:
                logger.warning(f"Failure for job {job.id} dropped: lease no longer held", extra=log_extra)
                return CaptureJob.objects.filter(id=job.id).values_list('state', flat=True).first()

            increment_captures_finished('retried')
            logger.warning(
                f"Capture {job.id} failed ({code}), retry {attempts + 1}/{job.max_attempts} in {delay}s: "
                f"{error_message}",
                extra=log_extra,
            )
            job.refresh_from_db()
            self.aggregator.record_requeue(
                job, f"Retrying (attempt {attempts + 1} of {job.max_attempts})"
            )
            return CaptureJob.STATE_QUEUED

        owner_id, events = None, []
        with transaction.atomic():
            failed = qs.update(
                state=CaptureJob.STATE_FAILED,
                attempt_count=attempts,
                error_code=code,
                error_message=error_message[:2000],
                stage='Capture failed',
                locked_by='',
                locked_until=None,
                completed_at=now,
                updated_at=now,
            )
            if failed:
                owner_id, events = self.aggregator.count_outcome(job.id)

        if not failed:
            logger.warning(f"Failure for job {job.id} dropped: lease no longer held", extra=log_extra)
            return CaptureJob.objects.filter(id=job.id).values_list('state', flat=True).first()

        increment_captures_finished('failed')
        logger.error(
            f"Capture {job.id} failed permanently after {attempts} attempt(s) ({code}): {error_message}",
            extra=log_extra,
        )
        self.aggregator.emit_all(owner_id, events)
        return CaptureJob.STATE_FAILED


_queue: Optional[JobQueue] = None


def get_job_queue() -> JobQueue:
    """Get the queue singleton configured from settings."""
    global _queue
    if _queue is None:
        _queue = JobQueue()
    return _queue
