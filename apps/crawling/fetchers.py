"""
HTTP fetcher for crawl discovery, using the requests library.

Discovery only needs page HTML to find links, so plain HTTP is enough;
screenshots themselves are rendered by the capture engine.
"""

import logging
import time
from typing import Callable, Dict, Optional

import requests
from django.conf import settings
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from apps.core.security import SSRFError, validate_url_ssrf

from .interfaces import Fetcher, FetchResult
from .utils import DomainRateLimiter, host_of

logger = logging.getLogger(__name__)


class HTTPFetcher(Fetcher):
    """
    requests-based fetcher with retries, per-domain politeness and SSRF
    validation of every URL before it is requested.

    The ``timeout`` given to ``fetch`` bounds the whole fetch, body
    included: the response is streamed and abandoned once the deadline
    passes. Server ``Retry-After`` headers are not honoured, so adapter
    retries only ever add the configured backoff.
    """

    DEFAULT_MAX_RETRIES = 2
    CHUNK_SIZE = 64 * 1024
    HTML_CONTENT_TYPES = ('text/html', 'application/xhtml+xml')

    def __init__(
        self,
        user_agent: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        rate_limiter: Optional[DomainRateLimiter] = None,
        headers: Optional[Dict[str, str]] = None,
        max_bytes: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.user_agent = user_agent or settings.CRAWLER_USER_AGENT
        self.timeout = timeout or settings.CRAWL_PAGE_TIMEOUT_SECONDS
        self.max_retries = max_retries
        self.rate_limiter = rate_limiter or DomainRateLimiter(
            default_delay=settings.CRAWL_REQUEST_DELAY
        )
        self.custom_headers = headers or {}
        self.max_bytes = max_bytes or settings.CRAWL_MAX_PAGE_BYTES
        self.clock = clock
        self.session = self._create_session()

    def _create_session(self) -> requests.Session:
        session = requests.Session()

        retry_strategy = Retry(
            total=self.max_retries,
            backoff_factor=0.5,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "HEAD"],
            respect_retry_after_header=False,
            raise_on_status=False,
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        session.headers.update({
            'User-Agent': self.user_agent,
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
            'Accept-Language': 'en-US,en;q=0.9',
        })
        session.headers.update(self.custom_headers)
        return session

    def fetch(self, url: str, timeout: Optional[float] = None) -> FetchResult:
        start_time = self.clock()
        timeout = timeout or self.timeout
        deadline = start_time + timeout

        def elapsed_ms():
            return int((self.clock() - start_time) * 1000)

        try:
            validate_url_ssrf(url)
        except SSRFError as e:
            logger.warning(f"SSRF blocked for {url}: {e}")
            return FetchResult(url=url, error=f"Security: {e}")

        self.rate_limiter.wait_if_needed(host_of(url))

        remaining = deadline - self.clock()
        if remaining <= 0:
            return FetchResult(url=url, error="Request timed out", fetch_time_ms=elapsed_ms())

        try:
            response = self.session.get(
                url,
                timeout=remaining,
                allow_redirects=True,
                stream=True,
            )
        except requests.Timeout:
            return FetchResult(url=url, error="Request timed out", fetch_time_ms=elapsed_ms())
        except requests.RequestException as e:
            return FetchResult(url=url, error=str(e), fetch_time_ms=elapsed_ms())

        with response:
            if response.status_code != 200:
                return FetchResult(
                    url=url,
                    status_code=response.status_code,
                    final_url=response.url,
                    error=f"HTTP {response.status_code}",
                    fetch_time_ms=elapsed_ms(),
                )

            content_type = response.headers.get('Content-Type', '').split(';')[0].strip().lower()
            if content_type and content_type not in self.HTML_CONTENT_TYPES:
                return FetchResult(
                    url=url,
                    status_code=response.status_code,
                    final_url=response.url,
                    error=f"Not HTML ({content_type})",
                    fetch_time_ms=elapsed_ms(),
                )

            try:
                body = self._read_body(response, deadline)
            except requests.RequestException as e:
                return FetchResult(url=url, status_code=response.status_code, error=str(e),
                                   fetch_time_ms=elapsed_ms())
            if body is None:
                logger.info(f"Fetch of {url} abandoned after {timeout}s")
                return FetchResult(
                    url=url,
                    status_code=response.status_code,
                    final_url=response.url,
                    error="Request timed out",
                    fetch_time_ms=elapsed_ms(),
                )

            charset_given = 'charset' in response.headers.get('Content-Type', '').lower()
            encoding = (response.encoding if charset_given else None) or 'utf-8'
            return FetchResult(
                url=url,
                html=body.decode(encoding, errors='replace'),
                status_code=response.status_code,
                final_url=response.url,
                fetch_time_ms=elapsed_ms(),
                headers=dict(response.headers),
            )

    def _read_body(self, response, deadline: float) -> Optional[bytes]:
        """Read the body until done, ``max_bytes`` or the deadline (None)."""
        chunks = []
        size = 0
        for chunk in response.iter_content(chunk_size=self.CHUNK_SIZE):
            if self.clock() > deadline:
                return None
            chunks.append(chunk)
            size += len(chunk)
            if size >= self.max_bytes:
                break
        return b''.join(chunks)[:self.max_bytes]

    def close(self) -> None:
        if self.session:
            self.session.close()
