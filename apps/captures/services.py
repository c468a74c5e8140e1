"""
Admission of capture requests into the queue.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from apps.realtime.publisher import publish_progress

from .aggregator import collection_event, job_event
from .models import CaptureJob, Collection
from .queue import JobQueue, get_job_queue

logger = logging.getLogger(__name__)


def create_capture(owner, url: str, project_id, options: Optional[Dict[str, Any]] = None,
                   queue: Optional[JobQueue] = None) -> CaptureJob:
    """Enqueue a standalone screenshot."""
    queue = queue or get_job_queue()
    job = CaptureJob(
        url=url,
        owner=owner,
        project_id=project_id,
        kind=CaptureJob.KIND_NORMAL,
        options=options or {},
        stage='Queued',
    )
    queue.enqueue(job)
    publish_progress(owner.id, job_event(job))
    return job


def create_collection(owner, project_id, kind: str, urls: List[str], job_kind,
                      options_per_job: Optional[List[Dict[str, Any]]] = None,
                      collection_id=None, name: str = '', base_url: str = '',
                      discovery_set_id=None, queue: Optional[JobQueue] = None) -> Tuple[Collection, List[CaptureJob]]:
    """
    Create a collection and enqueue one job per URL in a single transaction.

    ``job_kind`` is one kind for every job or a list with one per URL.
    ``total_expected`` is the number of jobs enqueued and never changes.
    """
    if not urls:
        raise ValueError("A collection needs at least one URL")

    queue = queue or get_job_queue()
    options_per_job = options_per_job or [{} for _ in urls]
    kinds = [job_kind] * len(urls) if isinstance(job_kind, str) else list(job_kind)

    with transaction.atomic():
        collection_kwargs = {}
        if collection_id:
            collection_kwargs['id'] = collection_id
        collection = Collection.objects.create(
            owner=owner,
            project_id=project_id,
            kind=kind,
            name=name,
            base_url=base_url,
            total_expected=len(urls),
            discovery_set_id=discovery_set_id,
            **collection_kwargs,
        )
        jobs = [
            CaptureJob(
                url=url,
                owner=owner,
                project_id=project_id,
                collection=collection,
                kind=kind_of_job,
                options=job_options,
                stage='Queued',
            )
            for url, kind_of_job, job_options in zip(urls, kinds, options_per_job)
        ]
        queue.enqueue_many(jobs)

    logger.info(
        f"Created {kind} collection {collection.id} with {len(jobs)} jobs",
        extra={'collection_id': str(collection.id)},
    )
    publish_progress(owner.id, collection_event(collection))
    return collection, jobs


def plan_scroll_frames(auto_scroll: Dict[str, Any], base_options: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Options for one viewport capture per scroll step.

    The first frame is the top of the page; each later frame sits one
    ``step_size`` further down. The number of frames is fixed up front so
    the collection total never changes, and a frame past the end of a
    short page captures the bottom and says so in its metadata.
    """
    step_size = int(auto_scroll.get('step_size') or settings.CAPTURE_AUTO_SCROLL_STEP_SIZE)
    steps = int(auto_scroll.get('max_steps') or settings.CAPTURE_AUTO_SCROLL_STEPS)
    scroll = {
        'selector': auto_scroll.get('selector') or '',
        'step_size': step_size,
        'interval': int(auto_scroll.get('interval', settings.CAPTURE_AUTO_SCROLL_INTERVAL_MS)),
    }
    return [
        dict(
            base_options,
            scroll=scroll,
            scroll_index=index,
            scroll_position=(index - 1) * step_size,
            total_scrolls=steps,
            full_page=False,
        )
        for index in range(1, steps + 1)
    ]


def create_frameset(owner, url: str, project_id, frame_delays: Iterable[float],
                    options: Optional[Dict[str, Any]] = None,
                    auto_scroll: Optional[Dict[str, Any]] = None,
                    queue: Optional[JobQueue] = None) -> Tuple[Collection, List[CaptureJob]]:
    """
    Capture the same page several times, each after its own delay.

    Every frame is an independent job, so a slow or failed frame does not
    hold up the others. With ``auto_scroll`` enabled, scroll frames follow
    the timed frames in the same collection.
    """
    delays = [float(delay) for delay in frame_delays]
    total = len(delays)
    base_options = dict(options or {})
    per_job = [
        dict(base_options, frame_delay=delay, frame_index=index, total_frames=total)
        for index, delay in enumerate(delays)
    ]
    kinds = [CaptureJob.KIND_FRAME] * total

    if auto_scroll and auto_scroll.get('enabled', True):
        scroll_frames = plan_scroll_frames(auto_scroll, base_options)
        per_job.extend(scroll_frames)
        kinds.extend([CaptureJob.KIND_SCROLL] * len(scroll_frames))

    host = urlparse(url).hostname or url
    return create_collection(
        owner,
        project_id,
        kind=Collection.KIND_FRAMESET,
        urls=[url] * len(per_job),
        job_kind=kinds,
        options_per_job=per_job,
        name=f"Frames of {host} - {timezone.now():%Y-%m-%d}",
        base_url=url,
        queue=queue,
    )
