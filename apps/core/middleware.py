"""
Request correlation for the capture service.

Every HTTP request gets a request id (taken from X-Request-ID when it is a
valid UUID, generated otherwise). The id lives in thread-local storage so
log records, Celery task headers and capture workers can carry it.

    MIDDLEWARE = [
        ...
        'apps.core.middleware.RequestIDMiddleware',
    ]
"""

import uuid
import threading
import logging
from django.utils.deprecation import MiddlewareMixin

logger = logging.getLogger(__name__)

_request_context = threading.local()


def get_request_id():
    """Current request id, or None outside of a request/task context."""
    return getattr(_request_context, 'request_id', None)


def get_request_context():
    return {
        'request_id': getattr(_request_context, 'request_id', None),
        'user_id': getattr(_request_context, 'user_id', None),
        'worker_id': getattr(_request_context, 'worker_id', None),
    }


def set_request_context(request_id, user_id=None, worker_id=None):
    """
    Set correlation context for the current thread.

    Used by Celery tasks and capture worker threads, which have no
    HTTP request to derive it from.
    """
    _request_context.request_id = request_id
    _request_context.user_id = user_id
    _request_context.worker_id = worker_id


def clear_request_context():
    _request_context.request_id = None
    _request_context.user_id = None
    _request_context.worker_id = None


class RequestIDMiddleware(MiddlewareMixin):
    """Attach a request id to each request and echo it in the response."""

    REQUEST_ID_HEADER = 'HTTP_X_REQUEST_ID'
    RESPONSE_HEADER = 'X-Request-ID'

    def process_request(self, request):
        request_id = request.META.get(self.REQUEST_ID_HEADER)
        if request_id:
            try:
                uuid.UUID(request_id)
            except (ValueError, TypeError):
                request_id = str(uuid.uuid4())
        else:
            request_id = str(uuid.uuid4())

        user_id = None
        if hasattr(request, 'user') and request.user.is_authenticated:
            user_id = str(request.user.id)

        set_request_context(request_id, user_id=user_id)
        request.request_id = request_id
        return None

    def process_response(self, request, response):
        request_id = getattr(request, 'request_id', None)
        if request_id:
            response[self.RESPONSE_HEADER] = request_id
        clear_request_context()
        return response


class RequestIDFilter(logging.Filter):
    """
    Logging filter that adds request_id and worker_id to log records.

    Referenced from LOGGING['filters'] so the verbose formatter can use
    {request_id} and {worker_id}.
    """

    def filter(self, record):
        context = get_request_context()
        record.request_id = context['request_id'] or '-'
        if not hasattr(record, 'worker_id'):
            record.worker_id = context['worker_id'] or '-'
        return True


def celery_request_id_headers():
    """
    Headers to pass to Celery tasks for correlation.

        task.apply_async(args=[...], headers=celery_request_id_headers())
    """
    request_id = get_request_id()
    if request_id:
        return {'request_id': request_id}
    return {}


def setup_celery_request_context(headers):
    """Restore request context inside a Celery task from its headers."""
    request_id = (headers or {}).get('request_id')
    set_request_context(request_id or str(uuid.uuid4()))
