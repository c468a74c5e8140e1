"""
URL canonicalization, origin checks and per-domain politeness for
crawl discovery.
"""

import logging
import threading
import time
from collections import defaultdict
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse, parse_qsl, urlencode

logger = logging.getLogger(__name__)


# =============================================================================
# URL Canonicalization
# =============================================================================

class URLNormalizer:
    """
    Reduce URLs to the canonical form used for visit-once and selection
    checks.

    - scheme and host lower-cased
    - default ports (80/443) removed
    - fragment removed
    - trailing slash removed except on the root path
    - tracking parameters (utm_*, fbclid, ...) removed
    - remaining query parameters sorted; they stay significant
    """

    TRACKING_PARAMS = {
        'utm_source', 'utm_medium', 'utm_campaign', 'utm_term', 'utm_content',
        'utm_id', 'utm_source_platform', 'utm_creative_format',
        'fbclid', 'gclid', 'gclsrc', 'dclid',
        'msclkid', 'mc_eid', 'mc_cid',
        '_ga', '_gl', '_hsenc', '_hsmi',
        'mkt_tok', 'trk', 'trkInfo', 'igshid',
    }

    DEFAULT_PORTS = {
        'http': 80,
        'https': 443,
    }

    def __init__(self, extra_tracking_params: Optional[set] = None):
        self.tracking_params = {p.lower() for p in self.TRACKING_PARAMS}
        if extra_tracking_params:
            self.tracking_params.update(p.lower() for p in extra_tracking_params)

    def normalize(self, url: str) -> str:
        """
        Normalize a URL to its canonical form.

        Returns the input unchanged when it cannot be parsed.
        """
        if not url:
            return url

        try:
            parsed = urlparse(url.strip())
            port = parsed.port
        except ValueError as e:
            logger.debug(f"Could not normalize URL {url!r}: {e}")
            return url

        scheme = parsed.scheme.lower()
        host = (parsed.hostname or '').lower()

        netloc = host
        if port and self.DEFAULT_PORTS.get(scheme) != port:
            netloc = f"{host}:{port}"

        path = parsed.path or '/'
        if path != '/' and path.endswith('/'):
            path = path.rstrip('/') or '/'

        query = self._normalize_query(parsed.query)

        return urlunparse((scheme, netloc, path, parsed.params, query, ''))

    def _normalize_query(self, query: str) -> str:
        if not query:
            return ''
        params = [
            (k, v) for k, v in parse_qsl(query, keep_blank_values=True)
            if k.lower() not in self.tracking_params
            and not k.lower().startswith('utm_')
        ]
        return urlencode(sorted(params))


default_normalizer = URLNormalizer()


def normalize_url(url: str) -> str:
    """Convenience function to normalize a URL using default settings."""
    return default_normalizer.normalize(url)


def origin_of(url: str) -> str:
    """scheme://host[:port] of a URL, canonicalized."""
    parsed = urlparse(normalize_url(url))
    return f"{parsed.scheme}://{parsed.netloc}"


def is_same_origin(url: str, origin: str) -> bool:
    return origin_of(url) == origin


def host_of(url: str) -> str:
    return (urlparse(url).hostname or '').lower()


# =============================================================================
# Per-Domain Rate Limiting
# =============================================================================

class DomainRateLimiter:
    """
    Thread-safe per-domain rate limiter.

    Enforces a minimum delay between requests to the same domain.
    """

    def __init__(self, default_delay: float = 0.5, domain_delays: Optional[Dict[str, float]] = None):
        self.default_delay = default_delay
        self.domain_delays = domain_delays or {}
        self._last_request_times: Dict[str, float] = defaultdict(float)
        self._lock = threading.Lock()

    def get_delay_for_domain(self, domain: str) -> float:
        return self.domain_delays.get(domain.lower(), self.default_delay)

    def wait_if_needed(self, domain: str) -> float:
        """
        Sleep until the domain may be requested again.

        Returns:
            Actual time waited in seconds
        """
        domain = domain.lower()
        required_delay = self.get_delay_for_domain(domain)

        with self._lock:
            wait_time = max(0, required_delay - (time.time() - self._last_request_times[domain]))
            if wait_time > 0:
                logger.debug(f"Rate limiting {domain}: waiting {wait_time:.2f}s")
                time.sleep(wait_time)
            self._last_request_times[domain] = time.time()
            return wait_time

    def reset(self, domain: Optional[str] = None) -> None:
        with self._lock:
            if domain:
                self._last_request_times.pop(domain.lower(), None)
            else:
                self._last_request_times.clear()
