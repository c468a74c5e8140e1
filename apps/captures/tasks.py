"""
Celery beat tasks for capture queue housekeeping.

Captures themselves run in the dedicated worker pool
(``manage.py run_capture_workers``), not in Celery; these periodic tasks
only keep the queue healthy.
"""

import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.utils import timezone

logger = logging.getLogger(__name__)


@shared_task(ignore_result=True)
def sweep_expired_leases():
    """
    Return jobs held by dead or stalled workers to the queue, and count
    any terminal outcome that was never recorded.
    """
    from .queue import get_job_queue

    queue = get_job_queue()
    reclaimed = queue.sweep_expired_leases()
    recovered = queue.aggregator.recover_unrecorded_outcomes()
    return {'reclaimed': reclaimed, 'outcomes_recovered': recovered}


@shared_task(ignore_result=True)
def purge_terminal_jobs(retention_days=None):
    """
    Delete finished jobs (and their images) older than the retention window.

    Collections are deleted once finalized and past the window; their jobs
    go with them.
    """
    from .models import CaptureJob, Collection
    from .storage import delete_capture

    retention_days = retention_days or settings.CAPTURE_RETENTION_DAYS
    cutoff = timezone.now() - timedelta(days=retention_days)

    expired_jobs = CaptureJob.objects.filter(
        state__in=CaptureJob.TERMINAL_STATES,
        completed_at__lt=cutoff,
    ).exclude(collection__finalized_at__isnull=True, collection__isnull=False)

    images_deleted = 0
    for image_path in expired_jobs.exclude(image_path='').values_list('image_path', flat=True):
        delete_capture(image_path)
        images_deleted += 1

    jobs_deleted, _ = expired_jobs.delete()
    collections_deleted, _ = Collection.objects.filter(
        finalized_at__lt=cutoff, jobs__isnull=True
    ).delete()

    logger.info(
        f"Retention purge: {jobs_deleted} jobs, {collections_deleted} collections, "
        f"{images_deleted} images older than {retention_days} days"
    )
    return {
        'jobs_deleted': jobs_deleted,
        'collections_deleted': collections_deleted,
        'images_deleted': images_deleted,
    }
