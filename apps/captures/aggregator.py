"""
Progress aggregation for capture jobs and collections.

This is the only code that changes job progress or collection counters.
Every write is a conditional UPDATE so that concurrent workers, retries
and duplicate completions cannot double count:

- job percent only moves forward (``percent__lt`` guard)
- a job's terminal outcome is counted once (``outcome_recorded_at`` guard)
- collection counters use F() increments
- a collection finalizes once (``finalized_at`` guard)

Events are published after the database work, never from inside the
transaction that produced them.
"""

import logging
from datetime import timedelta
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

from django.db import transaction
from django.db.models import F, Q
from django.utils import timezone

from apps.core.metrics import increment_collections_finalized
from apps.realtime.events import ProgressEvent, SUBJECT_COLLECTION, SUBJECT_JOB
from apps.realtime.publisher import publish_progress

from .models import CaptureJob, Collection

logger = logging.getLogger(__name__)


# stage key -> (percent, label template)
STAGES: Dict[str, Tuple[int, str]] = {
    'queued': (0, 'Queued'),
    'locked': (5, 'Starting capture...'),
    'navigating': (20, 'Navigating to {host}...'),
    'waiting': (40, 'Waiting for page to settle...'),
    'rendering': (60, 'Capturing screenshot...'),
    'saving': (90, 'Saving image...'),
    'done': (100, 'Screenshot captured'),
}

SNAPSHOT_WINDOW = timedelta(hours=24)


def stage_label(stage_key: str, job: Optional[CaptureJob] = None, **context) -> str:
    _, template = STAGES[stage_key]
    if job is not None:
        context.setdefault('host', urlparse(job.url).hostname or job.url)
    try:
        return template.format(**context)
    except KeyError:
        return template


def collection_stage_label(collection: Collection) -> str:
    if collection.status == Collection.STATUS_PENDING:
        return 'Waiting for workers'
    noun = 'frames' if collection.kind == Collection.KIND_FRAMESET else 'screenshots'
    label = f"Captured {collection.completed_count}/{collection.total_expected} {noun}"
    if collection.failed_count:
        label += f" ({collection.failed_count} failed)"
    return label


def job_event(job: CaptureJob, status: Optional[str] = None, stage: Optional[str] = None) -> ProgressEvent:
    error = None
    if job.state == CaptureJob.STATE_FAILED and job.error_code:
        error = {'code': job.error_code, 'message': job.error_message}
    return ProgressEvent(
        subject_id=str(job.id),
        subject_kind=SUBJECT_JOB,
        status=status or job.state,
        percent=job.percent,
        stage=stage if stage is not None else job.stage,
        error=error,
        project_id=str(job.project_id),
        collection_id=str(job.collection_id) if job.collection_id else None,
        url=job.url,
        image_path=job.image_path or None,
    )


def collection_event(collection: Collection) -> ProgressEvent:
    return ProgressEvent(
        subject_id=str(collection.id),
        subject_kind=SUBJECT_COLLECTION,
        status=collection.status,
        percent=collection.percent,
        stage=collection.stage or collection_stage_label(collection),
        project_id=str(collection.project_id),
        collection_id=str(collection.id),
        url=collection.base_url or None,
        total_expected=collection.total_expected,
        completed_count=collection.completed_count,
        failed_count=collection.failed_count,
    )


class ProgressAggregator:
    """
    Turns worker milestones and job outcomes into stored progress and
    published ProgressEvents.
    """

    def __init__(self, publish=None):
        self._publish = publish or publish_progress

    def _emit(self, user_id, event: ProgressEvent):
        self._publish(user_id, event)

    # ------------------------------------------------------------------
    # Per-job milestones
    # ------------------------------------------------------------------

    def record_stage(self, job: CaptureJob, stage_key: str, **context) -> bool:
        """
        Store a milestone for a leased job and emit it.

        Only emits when the stored percent strictly increases, so repeated
        or out-of-order milestones (including those of a retried attempt
        that has not yet caught up) are silently ignored.
        """
        percent, _ = STAGES[stage_key]
        label = stage_label(stage_key, job, **context)

        updated = CaptureJob.objects.filter(
            id=job.id,
            state__in=CaptureJob.LEASED_STATES,
            percent__lt=percent,
        ).update(percent=percent, stage=label, updated_at=timezone.now())

        if not updated:
            return False

        job.percent = percent
        job.stage = label
        job.state = (
            CaptureJob.objects.filter(id=job.id).values_list('state', flat=True).first() or job.state
        )
        self._emit(job.owner_id, job_event(job, stage=label))
        return True

    def record_requeue(self, job: CaptureJob, stage: str):
        """Announce that a failed attempt will be retried."""
        CaptureJob.objects.filter(id=job.id).update(stage=stage)
        job.stage = stage
        self._emit(job.owner_id, job_event(job, status=CaptureJob.STATE_QUEUED, stage=stage))

    # ------------------------------------------------------------------
    # Terminal outcomes
    # ------------------------------------------------------------------

    def record_outcome(self, job_id) -> bool:
        """
        Count a job's terminal outcome exactly once.

        Expects the job to already be in a terminal state. Returns False
        (and emits nothing) when the outcome was counted before.
        """
        with transaction.atomic():
            owner_id, events = self.count_outcome(job_id)
        self.emit_all(owner_id, events)
        return bool(events)

    def count_outcome(self, job_id) -> Tuple[Optional[int], List[ProgressEvent]]:
        """
        Claim and count a terminal outcome without publishing anything.

        Runs inside the caller's transaction so that the terminal state and
        the collection counters commit or roll back together. Returns the
        owner and the events to publish once the transaction has committed;
        no events means the outcome was already counted.
        """
        claimed = CaptureJob.objects.filter(
            id=job_id,
            state__in=CaptureJob.TERMINAL_STATES,
            outcome_recorded_at__isnull=True,
        ).update(outcome_recorded_at=timezone.now())

        if not claimed:
            logger.debug(f"Outcome for job {job_id} already recorded or job not terminal")
            return None, []

        job = CaptureJob.objects.get(id=job_id)
        events = [job_event(job)]
        if job.collection_id:
            events.extend(self._count_in_collection(job))
        return job.owner_id, events

    def emit_all(self, owner_id, events: List[ProgressEvent]):
        for event in events:
            self._emit(owner_id, event)

    def recover_unrecorded_outcomes(self) -> int:
        """
        Count terminal jobs whose outcome was never recorded.

        Returns how many outcomes were counted.
        """
        recovered = 0
        pending = CaptureJob.objects.filter(
            state__in=CaptureJob.TERMINAL_STATES, outcome_recorded_at__isnull=True
        ).values_list('id', flat=True)
        for job_id in list(pending):
            if self.record_outcome(job_id):
                recovered += 1
        if recovered:
            logger.warning(f"Recorded {recovered} terminal capture outcomes that had been missed")
        return recovered

    def _count_in_collection(self, job: CaptureJob) -> List[ProgressEvent]:
        counter = 'completed_count' if job.state == CaptureJob.STATE_COMPLETED else 'failed_count'
        log_extra = {'job_id': str(job.id), 'collection_id': str(job.collection_id)}

        Collection.objects.filter(id=job.collection_id).update(**{counter: F(counter) + 1})
        Collection.objects.filter(
            id=job.collection_id, status=Collection.STATUS_PENDING
        ).update(status=Collection.STATUS_RUNNING)

        collection = Collection.objects.get(id=job.collection_id)
        finished = collection.finished_count

        if finished > collection.total_expected:
            logger.critical(
                f"Collection {collection.id} counters exceed total: "
                f"{collection.completed_count}+{collection.failed_count} > {collection.total_expected}",
                extra=log_extra,
            )
            return []

        if finished < collection.total_expected:
            collection.stage = collection_stage_label(collection)
            Collection.objects.filter(id=collection.id, finalized_at__isnull=True).update(
                stage=collection.stage
            )
            return [collection_event(collection)]

        return self._finalize(collection, log_extra)

    def _finalize(self, collection: Collection, log_extra) -> List[ProgressEvent]:
        status = (
            Collection.STATUS_COMPLETED
            if collection.failed_count == 0
            else Collection.STATUS_COMPLETED_WITH_ERRORS
        )
        collection.status = status
        collection.stage = collection_stage_label(collection)

        finalized = Collection.objects.filter(
            id=collection.id, finalized_at__isnull=True
        ).update(finalized_at=timezone.now(), status=status, stage=collection.stage)

        if not finalized:
            logger.info(f"Collection {collection.id} already finalized", extra=log_extra)
            return []

        increment_collections_finalized(status)
        logger.info(
            f"Collection {collection.id} finalized as {status} "
            f"({collection.completed_count} ok, {collection.failed_count} failed)",
            extra=log_extra,
        )
        return [collection_event(collection)]

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def snapshot(self, user, project_id=None) -> Dict[str, list]:
        """
        Full current state for a user's client, used after (re)connect.

        Includes every active job and collection plus those that finished
        within the last day, or everything in the project when one is given.
        """
        jobs = CaptureJob.objects.filter(owner=user)
        collections = Collection.objects.filter(owner=user)

        if project_id:
            jobs = jobs.filter(project_id=project_id)
            collections = collections.filter(project_id=project_id)
        else:
            cutoff = timezone.now() - SNAPSHOT_WINDOW
            jobs = jobs.filter(
                ~Q(state__in=CaptureJob.TERMINAL_STATES) | Q(updated_at__gte=cutoff)
            )
            collections = collections.filter(Q(finalized_at__isnull=True) | Q(finalized_at__gte=cutoff))

        return {
            'jobs': [job_event(job).to_dict() for job in jobs.order_by('created_at')],
            'collections': [collection_event(c).to_dict() for c in collections.order_by('created_at')],
            'generated_at': timezone.now().isoformat(),
        }


_aggregator: Optional[ProgressAggregator] = None


def get_aggregator() -> ProgressAggregator:
    global _aggregator
    if _aggregator is None:
        _aggregator = ProgressAggregator()
    return _aggregator
