"""
Crawl discovery models.
"""

from datetime import timedelta
import uuid

from django.conf import settings
from django.db import models
from django.utils import timezone

from apps.core.models import BaseModel


def default_discovery_expiry():
    return timezone.now() + timedelta(minutes=settings.DISCOVERY_SET_TTL_MINUTES)


class DiscoveredURLSetQuerySet(models.QuerySet):

    def live(self):
        return self.filter(expires_at__gt=timezone.now())

    def expired(self):
        return self.filter(expires_at__lte=timezone.now())


class DiscoveredURLSet(BaseModel):
    """
    Candidate pages found by one crawl discovery, waiting for the user to
    pick which ones to capture.

    Consumed exactly once by commit_selection, which deletes the row after
    creating the collection. ``collection_id`` is reserved up front so the
    committed collection reuses it and progress subscribers can watch it
    from the moment discovery returns.
    """

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='discovered_url_sets',
        verbose_name='Owner',
        help_text='User who started the crawl'
    )

    project_id = models.UUIDField(
        db_index=True,
        verbose_name='Project ID',
        help_text='Project the resulting collection will belong to'
    )

    collection_id = models.UUIDField(
        default=uuid.uuid4,
        unique=True,
        verbose_name='Collection ID',
        help_text='ID the committed collection will be created with'
    )

    seed_url = models.URLField(
        max_length=2048,
        verbose_name='Seed URL',
        help_text='URL the breadth-first discovery started from'
    )

    candidate_urls = models.JSONField(
        default=list,
        blank=True,
        verbose_name='Candidate URLs',
        help_text='Canonical, deduplicated pages in discovery order (seed first)'
    )

    external_urls = models.JSONField(
        default=list,
        blank=True,
        verbose_name='External URLs',
        help_text='Off-origin links that were seen but not traversed'
    )

    max_depth = models.PositiveIntegerField(
        default=2,
        verbose_name='Max Depth',
        help_text='Link depth limit used for this discovery'
    )

    max_pages = models.PositiveIntegerField(
        default=50,
        verbose_name='Max Pages',
        help_text='Candidate page limit used for this discovery'
    )

    truncated = models.BooleanField(
        default=False,
        verbose_name='Truncated',
        help_text='Discovery stopped early on its page limit or time budget'
    )

    expires_at = models.DateTimeField(
        default=default_discovery_expiry,
        db_index=True,
        verbose_name='Expires At',
        help_text='Uncommitted sets are purged after this time'
    )

    objects = DiscoveredURLSetQuerySet.as_manager()

    class Meta:
        db_table = 'discovered_url_sets'
        verbose_name = 'Discovered URL Set'
        verbose_name_plural = 'Discovered URL Sets'
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.seed_url} ({len(self.candidate_urls)} pages)"

    @property
    def is_expired(self):
        return self.expires_at <= timezone.now()
