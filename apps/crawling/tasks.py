"""
Celery tasks for crawl discovery housekeeping.
"""

import logging

from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task(ignore_result=True)
def expire_discovery_sets():
    """Delete discovery sets that were never committed before their TTL."""
    from .discovery import purge_expired_discovery_sets

    deleted = purge_expired_discovery_sets()
    return {'deleted': deleted}
