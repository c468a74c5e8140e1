"""
Breadth-first crawl discovery and selection commit.

Discovery walks links from a seed URL and returns candidate pages; it
captures nothing. The candidates are stored as a DiscoveredURLSet until
the user commits a selection, which becomes a crawl Collection with one
capture job per selected page.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
from urllib.parse import urlparse

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from apps.captures.models import CaptureJob, Collection
from apps.captures.services import create_collection
from apps.core.metrics import record_discovery_run
from apps.core.security import validate_url_ssrf

from .exceptions import AlreadyCommitted, DiscoverySetNotFound, SelectionError
from .extractors import BS4LinkExtractor
from .fetchers import HTTPFetcher
from .interfaces import Fetcher, LinkExtractor
from .models import DiscoveredURLSet
from .utils import is_same_origin, normalize_url, origin_of

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryResult:
    seed_url: str
    candidate_urls: List[str] = field(default_factory=list)
    external_urls: List[str] = field(default_factory=list)
    truncated: bool = False
    pages_fetched: int = 0
    errors: Dict[str, str] = field(default_factory=dict)


class Discoverer:
    """
    Bounded breadth-first link discovery.

    - the seed is depth 0 and always the first candidate
    - pages at ``max_depth`` are recorded but not fetched
    - each canonical URL is recorded and fetched at most once
    - at most ``max_pages`` candidates, including the seed
    - off-origin links are recorded separately and not followed unless
      ``allow_off_origin`` is set
    - when the overall timeout passes, whatever was found so far is
      returned with ``truncated=True``
    """

    def __init__(self, fetcher: Optional[Fetcher] = None, extractor: Optional[LinkExtractor] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.fetcher = fetcher
        self.extractor = extractor or BS4LinkExtractor()
        self.clock = clock

    def discover(self, seed_url: str, max_depth: Optional[int] = None, max_pages: Optional[int] = None,
                 allow_off_origin: bool = False, timeout: Optional[float] = None) -> DiscoveryResult:
        max_depth = settings.CRAWL_MAX_DEPTH if max_depth is None else max_depth
        max_pages = settings.CRAWL_MAX_PAGES if max_pages is None else max_pages
        timeout = settings.CRAWL_TIMEOUT_SECONDS if timeout is None else timeout
        page_timeout = settings.CRAWL_PAGE_TIMEOUT_SECONDS

        seed = normalize_url(seed_url)
        validate_url_ssrf(seed)

        origin = origin_of(seed)
        deadline = self.clock() + timeout
        result = DiscoveryResult(seed_url=seed, candidate_urls=[seed])
        seen = {seed}
        external_seen = set()
        frontier = deque([(seed, 0)])

        fetcher = self.fetcher or HTTPFetcher(max_retries=settings.CRAWL_FETCH_RETRIES)
        try:
            while frontier:
                remaining = deadline - self.clock()
                if remaining <= 0:
                    result.truncated = True
                    logger.info(f"Discovery from {seed} hit its {timeout}s budget")
                    break

                url, depth = frontier.popleft()
                if depth >= max_depth:
                    continue

                fetched = fetcher.fetch(url, timeout=min(page_timeout, remaining))
                result.pages_fetched += 1
                if self.clock() >= deadline:
                    result.truncated = True
                if not fetched.success:
                    result.errors[url] = fetched.error or 'fetch failed'
                    logger.debug(f"Discovery could not fetch {url}: {fetched.error}")
                    continue

                for link in self.extractor.extract_links(fetched.html, fetched.final_url or url):
                    canonical = normalize_url(link.url)
                    if canonical in seen:
                        continue

                    if not allow_off_origin and not is_same_origin(canonical, origin):
                        if canonical not in external_seen:
                            external_seen.add(canonical)
                            result.external_urls.append(canonical)
                        continue

                    if len(result.candidate_urls) >= max_pages:
                        result.truncated = True
                        frontier.clear()
                        break

                    seen.add(canonical)
                    result.candidate_urls.append(canonical)
                    frontier.append((canonical, depth + 1))
        finally:
            if self.fetcher is None:
                fetcher.close()

        record_discovery_run(len(result.candidate_urls), truncated=result.truncated)
        logger.info(
            f"Discovery from {seed}: {len(result.candidate_urls)} candidates, "
            f"{len(result.external_urls)} external, {result.pages_fetched} fetched"
            f"{' (truncated)' if result.truncated else ''}"
        )
        return result


def start_crawl(owner, seed_url: str, project_id, max_depth: Optional[int] = None,
                max_pages: Optional[int] = None, allow_off_origin: bool = False,
                discoverer: Optional[Discoverer] = None) -> DiscoveredURLSet:
    """Run discovery and hold the candidates for selection."""
    discoverer = discoverer or Discoverer()
    max_depth = settings.CRAWL_MAX_DEPTH if max_depth is None else max_depth
    max_pages = settings.CRAWL_MAX_PAGES if max_pages is None else max_pages

    result = discoverer.discover(
        seed_url, max_depth=max_depth, max_pages=max_pages, allow_off_origin=allow_off_origin
    )
    return DiscoveredURLSet.objects.create(
        owner=owner,
        project_id=project_id,
        seed_url=result.seed_url,
        candidate_urls=result.candidate_urls,
        external_urls=result.external_urls,
        max_depth=max_depth,
        max_pages=max_pages,
        truncated=result.truncated,
    )


def _canonical_selection(selected_urls) -> List[str]:
    selection = []
    seen = set()
    for url in selected_urls:
        canonical = normalize_url(url)
        if canonical not in seen:
            seen.add(canonical)
            selection.append(canonical)
    return selection


def commit_selection(discovery_set_id, selected_urls, owner):
    """
    Turn a selection from a discovery set into a crawl collection.

    Exactly-once: the set is locked, consumed and deleted in one
    transaction, and Collection.discovery_set_id is unique, so a repeated
    or concurrent commit raises AlreadyCommitted and enqueues nothing.

    Returns (collection, jobs).
    """
    selection = _canonical_selection(selected_urls or [])
    if not selection:
        raise SelectionError("Select at least one URL", field='selected_urls')

    with transaction.atomic():
        try:
            discovery_set = DiscoveredURLSet.objects.select_for_update().get(
                id=discovery_set_id, owner=owner
            )
        except (DiscoveredURLSet.DoesNotExist, ValueError):
            if Collection.objects.filter(discovery_set_id=discovery_set_id, owner=owner).exists():
                raise AlreadyCommitted()
            raise DiscoverySetNotFound()

        if discovery_set.is_expired:
            raise DiscoverySetNotFound("Discovery set has expired; start a new crawl")

        candidates = set(discovery_set.candidate_urls)
        invalid = [url for url in selection if url not in candidates]
        if invalid:
            raise SelectionError(
                "Selected URLs were not found by this crawl",
                field='selected_urls',
                details={'invalid_urls': invalid},
            )

        host = urlparse(discovery_set.seed_url).hostname or discovery_set.seed_url
        try:
            with transaction.atomic():
                collection, jobs = create_collection(
                    owner,
                    discovery_set.project_id,
                    kind=Collection.KIND_CRAWL,
                    urls=selection,
                    job_kind=CaptureJob.KIND_CRAWL,
                    collection_id=discovery_set.collection_id,
                    name=f"Crawl of {host} - {timezone.now():%Y-%m-%d}",
                    base_url=discovery_set.seed_url,
                    discovery_set_id=discovery_set.id,
                )
        except IntegrityError:
            raise AlreadyCommitted()

        discovery_set.delete()

    logger.info(
        f"Committed {len(selection)} of {len(candidates)} discovered pages into collection {collection.id}",
        extra={'collection_id': str(collection.id)},
    )
    return collection, jobs


def purge_expired_discovery_sets() -> int:
    deleted, _ = DiscoveredURLSet.objects.expired().delete()
    if deleted:
        logger.info(f"Purged {deleted} expired discovery sets")
    return deleted
