"""
Rate limiting for capture endpoints.

Rates come from REST_FRAMEWORK['DEFAULT_THROTTLE_RATES']; each class
falls back to its own default when the scope is not configured.

    class CaptureCreateView(APIView):
        throttle_classes = [CaptureEndpointThrottle]
"""

from django.core.exceptions import ImproperlyConfigured
from rest_framework.throttling import UserRateThrottle
import logging

logger = logging.getLogger(__name__)


class _DefaultedRateThrottle(UserRateThrottle):
    default_rate = '60/minute'

    def get_rate(self):
        try:
            return super().get_rate()
        except ImproperlyConfigured:
            return self.default_rate


class CaptureEndpointThrottle(_DefaultedRateThrottle):
    """
    Throttle for requests that enqueue capture jobs.

    Applies to POST /api/captures/ (single captures and frame sets).
    """
    scope = 'capture'
    default_rate = '30/minute'


class CrawlEndpointThrottle(_DefaultedRateThrottle):
    """
    Throttle for crawl discovery, which fetches external pages inline.

    Applies to POST /api/crawls/.
    """
    scope = 'crawl'
    default_rate = '5/minute'


class CommitEndpointThrottle(_DefaultedRateThrottle):
    scope = 'commit'
    default_rate = '10/minute'


DEFAULT_THROTTLE_RATES = {
    'capture': '30/minute',
    'crawl': '5/minute',
    'commit': '10/minute',
}
