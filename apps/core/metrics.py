"""
Prometheus metrics for the capture service.

Cardinality guidelines:
- Labels MUST be low-cardinality (status enums, error codes, outcomes)
- FORBIDDEN label values: URLs, job/collection/user IDs, hostnames
- Per-job detail belongs in logs, not metrics

Usage:
    from apps.core.metrics import increment_captures_finished

    increment_captures_finished(status='completed')

Exposed through ``metrics_view`` mounted at /metrics/.
"""

import time
from contextlib import contextmanager
import logging

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

logger = logging.getLogger(__name__)

# ============================================================================
# Metric Definitions
# ============================================================================

captures_enqueued_total = Counter(
    'capture_jobs_enqueued_total',
    'Total capture jobs enqueued',
    ['kind']  # kind: normal/crawl/frame
)

captures_finished_total = Counter(
    'capture_jobs_finished_total',
    'Capture job terminal outcomes and retries',
    ['status']  # status: completed/failed/retried
)

capture_failures_total = Counter(
    'capture_failures_total',
    'Capture attempts that raised, by classified error code',
    ['error_code']
)

capture_duration_seconds = Histogram(
    'capture_duration_seconds',
    'Time spent inside the capture engine per attempt',
    buckets=[0.5, 1, 2, 5, 10, 20, 30, 60, 120]
)

lease_contention_total = Counter(
    'capture_lease_contention_total',
    'Lease attempts lost to another worker'
)

leases_reclaimed_total = Counter(
    'capture_leases_reclaimed_total',
    'Expired leases returned to the queue by the sweeper'
)

collections_finalized_total = Counter(
    'capture_collections_finalized_total',
    'Collections that reached a terminal status',
    ['status']  # status: completed/completed_with_errors
)

discovery_runs_total = Counter(
    'crawl_discovery_runs_total',
    'Crawl discovery runs',
    ['outcome']  # outcome: complete/truncated/error
)

discovery_pages_found = Histogram(
    'crawl_discovery_pages_found',
    'Candidate pages found per discovery run',
    buckets=[1, 5, 10, 25, 50, 100, 250]
)

progress_events_published_total = Counter(
    'progress_events_published_total',
    'Progress events handed to the broadcast hub',
    ['subject_kind']  # subject_kind: job/collection
)

progress_events_dropped_total = Counter(
    'progress_events_dropped_total',
    'Progress events dropped because a connection outbox was full'
)

progress_connections = Gauge(
    'progress_connections',
    'Live progress subscriber connections'
)

queue_depth = Gauge(
    'capture_queue_depth',
    'Capture jobs currently waiting in the queue'
)

# ============================================================================
# Helper Functions
# ============================================================================

def increment_captures_enqueued(kind='normal', count=1):
    captures_enqueued_total.labels(kind=kind).inc(count)

def increment_captures_finished(status='completed'):
    captures_finished_total.labels(status=status).inc()

def increment_capture_failure(error_code='UNKNOWN_ERROR'):
    capture_failures_total.labels(error_code=error_code).inc()

def increment_lease_contention():
    lease_contention_total.inc()

def increment_leases_reclaimed(count):
    if count:
        leases_reclaimed_total.inc(count)

def increment_collections_finalized(status='completed'):
    collections_finalized_total.labels(status=status).inc()

def record_discovery_run(pages_found, truncated=False, error=False):
    """Record the outcome of one crawl discovery."""
    if error:
        outcome = 'error'
    elif truncated:
        outcome = 'truncated'
    else:
        outcome = 'complete'
    discovery_runs_total.labels(outcome=outcome).inc()
    discovery_pages_found.observe(pages_found)

def increment_progress_published(subject_kind='job'):
    progress_events_published_total.labels(subject_kind=subject_kind).inc()

def increment_progress_dropped():
    progress_events_dropped_total.inc()

def set_progress_connections(count):
    progress_connections.set(count)

@contextmanager
def observe_capture_duration():
    """Context manager to time a capture engine call."""
    start = time.time()
    try:
        yield
    finally:
        capture_duration_seconds.observe(time.time() - start)

# ============================================================================
# Metrics View
# ============================================================================

def metrics_view(request):
    """
    Django view to expose Prometheus metrics.

    Returns metrics in Prometheus text format.
    """
    from django.db import DatabaseError
    from django.http import HttpResponse

    try:
        from apps.captures.models import CaptureJob
        queue_depth.set(CaptureJob.objects.filter(state=CaptureJob.STATE_QUEUED).count())
    except DatabaseError as e:
        logger.warning(f"Could not refresh queue depth gauge: {e}")

    return HttpResponse(generate_latest(), content_type=CONTENT_TYPE_LATEST)
