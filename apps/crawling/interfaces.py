"""
Crawler interfaces for discovery.

Fetcher retrieves HTML, LinkExtractor pulls links out of it. The
discoverer only depends on these contracts so tests can swap in fakes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class FetchResult:
    """Result of a fetch operation."""
    url: str
    html: Optional[str] = None
    status_code: Optional[int] = None
    final_url: Optional[str] = None  # After redirects
    error: Optional[str] = None
    fetch_time_ms: int = 0
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.html is not None and self.error is None


@dataclass
class ExtractedLink:
    """A link extracted from a page."""
    url: str
    text: Optional[str] = None


class Fetcher(ABC):
    """Retrieves HTML content from URLs."""

    @abstractmethod
    def fetch(self, url: str, timeout: Optional[float] = None) -> FetchResult:
        """
        Fetch content from a URL.

        Never raises for network or HTTP errors; those are reported on
        the returned FetchResult.
        """
        pass

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class LinkExtractor(ABC):
    """Extracts absolute http(s) links from an HTML document."""

    @abstractmethod
    def extract_links(self, html: str, base_url: str) -> List[ExtractedLink]:
        pass
