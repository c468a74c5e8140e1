"""
Capture job and collection models.

Phase 1: Queue state machine with lease columns.
Phase 2: Collections with counter aggregation and a finalize guard.
"""

from django.conf import settings
from django.db import models

from apps.core.models import BaseModel


class Collection(BaseModel):
    """
    A group of capture jobs reported as one unit: the pages selected from
    a crawl, or the frames of a frame set.

    ``total_expected`` is fixed when the jobs are enqueued. Counters are
    only ever changed by the progress aggregator with atomic increments,
    and ``finalized_at`` guards the single transition to a terminal status.
    """

    KIND_CRAWL = 'crawl'
    KIND_FRAMESET = 'frameset'

    KIND_CHOICES = [
        (KIND_CRAWL, 'Crawl'),
        (KIND_FRAMESET, 'Frame Set'),
    ]

    STATUS_PENDING = 'pending'
    STATUS_RUNNING = 'running'
    STATUS_COMPLETED = 'completed'
    STATUS_COMPLETED_WITH_ERRORS = 'completed_with_errors'

    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_RUNNING, 'Running'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_COMPLETED_WITH_ERRORS, 'Completed with errors'),
    ]

    TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_COMPLETED_WITH_ERRORS)

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='capture_collections',
        verbose_name='Owner',
        help_text='User whose sessions receive progress for this collection'
    )

    project_id = models.UUIDField(
        db_index=True,
        verbose_name='Project ID',
        help_text='Project the collection belongs to'
    )

    kind = models.CharField(
        max_length=20,
        choices=KIND_CHOICES,
        default=KIND_CRAWL,
        verbose_name='Kind',
        help_text='What produced the collection'
    )

    name = models.CharField(
        max_length=255,
        blank=True,
        verbose_name='Name',
        help_text='Display name, e.g. "Crawl of example.com - 2024-01-01"'
    )

    base_url = models.URLField(
        max_length=2048,
        blank=True,
        verbose_name='Base URL',
        help_text='Seed URL of the crawl or the framed page'
    )

    total_expected = models.PositiveIntegerField(
        verbose_name='Total Expected',
        help_text='Number of jobs enqueued for this collection (immutable)'
    )

    completed_count = models.PositiveIntegerField(
        default=0,
        verbose_name='Completed',
        help_text='Jobs that finished successfully'
    )

    failed_count = models.PositiveIntegerField(
        default=0,
        verbose_name='Failed',
        help_text='Jobs that failed terminally'
    )

    status = models.CharField(
        max_length=30,
        choices=STATUS_CHOICES,
        default=STATUS_PENDING,
        db_index=True,
        verbose_name='Status',
        help_text='Aggregate status of the collection'
    )

    stage = models.CharField(
        max_length=255,
        blank=True,
        verbose_name='Stage',
        help_text='Human-readable progress label'
    )

    finalized_at = models.DateTimeField(
        null=True,
        blank=True,
        verbose_name='Finalized At',
        help_text='When the terminal status was recorded (idempotency guard)'
    )

    discovery_set_id = models.UUIDField(
        null=True,
        blank=True,
        unique=True,
        verbose_name='Discovery Set ID',
        help_text='Discovery set this crawl collection was committed from'
    )

    class Meta:
        db_table = 'capture_collections'
        verbose_name = 'Collection'
        verbose_name_plural = 'Collections'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['owner', 'project_id'], name='capture_coll_owner_proj_idx'),
        ]

    def __str__(self):
        return f"{self.name or self.kind} ({self.completed_count + self.failed_count}/{self.total_expected})"

    @property
    def finished_count(self):
        return self.completed_count + self.failed_count

    @property
    def percent(self):
        if not self.total_expected:
            return 100
        return min(100, round(self.finished_count * 100 / self.total_expected))

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES


class CaptureJob(BaseModel):
    """
    One screenshot to take.

    Lifecycle: queued -> locked -> running -> completed | failed, with
    locked/running returning to queued when a lease expires or a
    retryable failure still has attempts left. All transitions go through
    conditional updates in ``apps.captures.queue``.
    """

    KIND_NORMAL = 'normal'
    KIND_CRAWL = 'crawl'
    KIND_FRAME = 'frame'
    KIND_SCROLL = 'scroll'

    KIND_CHOICES = [
        (KIND_NORMAL, 'Normal'),
        (KIND_CRAWL, 'Crawl page'),
        (KIND_FRAME, 'Frame'),
        (KIND_SCROLL, 'Scroll frame'),
    ]

    STATE_QUEUED = 'queued'
    STATE_LOCKED = 'locked'
    STATE_RUNNING = 'running'
    STATE_COMPLETED = 'completed'
    STATE_FAILED = 'failed'

    STATE_CHOICES = [
        (STATE_QUEUED, 'Queued'),
        (STATE_LOCKED, 'Locked'),
        (STATE_RUNNING, 'Running'),
        (STATE_COMPLETED, 'Completed'),
        (STATE_FAILED, 'Failed'),
    ]

    TERMINAL_STATES = (STATE_COMPLETED, STATE_FAILED)
    LEASED_STATES = (STATE_LOCKED, STATE_RUNNING)

    url = models.URLField(
        max_length=2048,
        verbose_name='URL',
        help_text='Page to capture'
    )

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='capture_jobs',
        verbose_name='Owner',
        help_text='User whose sessions receive progress for this job'
    )

    project_id = models.UUIDField(
        db_index=True,
        verbose_name='Project ID',
        help_text='Project the screenshot belongs to'
    )

    collection = models.ForeignKey(
        Collection,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name='jobs',
        verbose_name='Collection',
        help_text='Owning collection (null for standalone captures)'
    )

    kind = models.CharField(
        max_length=20,
        choices=KIND_CHOICES,
        default=KIND_NORMAL,
        verbose_name='Kind',
        help_text='Standalone, crawl page, timed frame or scroll frame capture'
    )

    options = models.JSONField(
        default=dict,
        blank=True,
        verbose_name='Options',
        help_text='Capture options (viewport, full_page, frame_delay, scroll_position, ...)'
    )

    state = models.CharField(
        max_length=20,
        choices=STATE_CHOICES,
        default=STATE_QUEUED,
        db_index=True,
        verbose_name='State',
        help_text='Queue state'
    )

    attempt_count = models.PositiveIntegerField(
        default=0,
        verbose_name='Attempts',
        help_text='Failed attempts so far'
    )

    max_attempts = models.PositiveIntegerField(
        default=3,
        verbose_name='Max Attempts',
        help_text='Attempts allowed before the job fails terminally (set at enqueue)'
    )

    locked_by = models.CharField(
        max_length=100,
        blank=True,
        verbose_name='Locked By',
        help_text='Worker currently holding the lease'
    )

    locked_until = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        verbose_name='Locked Until',
        help_text='Lease expiry, or retry-not-before time for queued jobs'
    )

    percent = models.PositiveSmallIntegerField(
        default=0,
        verbose_name='Percent',
        help_text='Last reported progress (0-100, never decreases within an attempt)'
    )

    stage = models.CharField(
        max_length=255,
        blank=True,
        verbose_name='Stage',
        help_text='Human-readable progress label'
    )

    error_code = models.CharField(
        max_length=50,
        blank=True,
        verbose_name='Error Code',
        help_text='Classified error code of the last failure'
    )

    error_message = models.TextField(
        blank=True,
        verbose_name='Error Message',
        help_text='Message of the last failure'
    )

    image_path = models.CharField(
        max_length=500,
        blank=True,
        verbose_name='Image Path',
        help_text='Storage name of the captured image'
    )

    metadata = models.JSONField(
        default=dict,
        blank=True,
        verbose_name='Metadata',
        help_text='Page title, dimensions, file size, capture time'
    )

    started_at = models.DateTimeField(
        null=True,
        blank=True,
        verbose_name='Started At',
        help_text='When the current attempt started running'
    )

    completed_at = models.DateTimeField(
        null=True,
        blank=True,
        verbose_name='Completed At',
        help_text='When the job reached a terminal state'
    )

    outcome_recorded_at = models.DateTimeField(
        null=True,
        blank=True,
        verbose_name='Outcome Recorded At',
        help_text='When the terminal outcome was counted (double-count guard)'
    )

    class Meta:
        db_table = 'capture_jobs'
        verbose_name = 'Capture Job'
        verbose_name_plural = 'Capture Jobs'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['state', 'locked_until', 'created_at'], name='capture_job_state_lease_idx'),
            models.Index(fields=['owner', 'project_id'], name='capture_job_owner_proj_idx'),
        ]

    def __str__(self):
        return f"{self.url} [{self.state}]"

    @property
    def is_terminal(self):
        return self.state in self.TERMINAL_STATES
