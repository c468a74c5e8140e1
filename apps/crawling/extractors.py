"""
BeautifulSoup-based link extraction for crawl discovery.
"""

import logging
from typing import List, Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from .interfaces import ExtractedLink, LinkExtractor

logger = logging.getLogger(__name__)


class BS4LinkExtractor(LinkExtractor):
    """
    Extracts every navigable http(s) link from a page.

    Skips javascript:, mailto:, tel: and in-page anchors, and links to
    static assets that cannot be captured as pages.
    """

    SKIP_PREFIXES = ('javascript:', 'mailto:', 'tel:', '#', 'data:')

    ASSET_EXTENSIONS = (
        '.pdf', '.jpg', '.jpeg', '.png', '.gif', '.svg', '.webp', '.ico',
        '.css', '.js', '.xml', '.json', '.zip', '.gz', '.mp3', '.mp4',
        '.woff', '.woff2',
    )

    def __init__(self, asset_extensions: Optional[List[str]] = None):
        self.asset_extensions = tuple(asset_extensions) if asset_extensions else self.ASSET_EXTENSIONS

    def extract_links(self, html: str, base_url: str) -> List[ExtractedLink]:
        if not html:
            return []

        soup = BeautifulSoup(html, 'html.parser')

        # <base href> changes how relative links resolve
        base_tag = soup.find('base', href=True)
        if base_tag:
            base_url = urljoin(base_url, base_tag['href'])

        links = []
        seen = set()
        for anchor in soup.find_all('a', href=True):
            href = anchor['href'].strip()
            if not href or href.lower().startswith(self.SKIP_PREFIXES):
                continue

            full_url = urljoin(base_url, href)
            parsed = urlparse(full_url)
            if parsed.scheme not in ('http', 'https'):
                continue
            if parsed.path.lower().endswith(self.asset_extensions):
                continue
            if full_url in seen:
                continue
            seen.add(full_url)

            text = anchor.get_text(strip=True)
            links.append(ExtractedLink(url=full_url, text=text[:200] if text else None))

        return links
