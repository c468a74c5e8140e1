"""
Capture pipeline error taxonomy.

Engine failures are split into transient (worth another attempt) and
permanent (retrying cannot help). Anything unrecognised is treated as
transient and bounded by the job's attempt limit.
"""

import random
from typing import Optional, Tuple

from django.conf import settings
from rest_framework import status

from apps.core.exceptions import PipelineException, ErrorCode


class CaptureError(Exception):
    """Base class for errors raised while capturing a page."""

    error_code = ErrorCode.UNKNOWN_ERROR
    retryable = True

    def __init__(self, message: str = '', code: Optional[ErrorCode] = None):
        super().__init__(message)
        if code is not None:
            self.error_code = code


class TransientCaptureError(CaptureError):
    """Timeouts, network resets, browser crashes."""
    error_code = ErrorCode.NETWORK_ERROR
    retryable = True


class PermanentCaptureError(CaptureError):
    """Invalid or blocked URLs, pages that cannot be rendered."""
    error_code = ErrorCode.RENDER_ERROR
    retryable = False


class QueueContention(Exception):
    """Another worker claimed the job first. Internal to the queue."""
    pass


class AlreadyTerminal(Exception):
    """A completion or failure arrived for a job that is already terminal."""

    def __init__(self, job_id, state):
        super().__init__(f"Job {job_id} is already {state}")
        self.job_id = job_id
        self.state = state


class JobNotFound(PipelineException):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = ErrorCode.NOT_FOUND
    default_detail = "Capture job not found"


class CollectionNotFound(PipelineException):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = ErrorCode.NOT_FOUND
    default_detail = "Collection not found"


# =============================================================================
# Classification & retry policy
# =============================================================================

RETRY_POLICIES = {
    ErrorCode.NETWORK_TIMEOUT: {'backoff_factor': 1, 'jitter': 0.5},
    ErrorCode.CAPTURE_TIMEOUT: {'backoff_factor': 1, 'jitter': 0.5},
    ErrorCode.NETWORK_ERROR: {'backoff_factor': 1, 'jitter': 0.5},
    ErrorCode.DNS_ERROR: {'backoff_factor': 2, 'jitter': 1},
    ErrorCode.STORAGE_ERROR: {'backoff_factor': 1, 'jitter': 0.5},
    ErrorCode.UNKNOWN_ERROR: {'backoff_factor': 1, 'jitter': 0.5},
}

NON_RETRIABLE_ERRORS = {
    ErrorCode.INVALID_URL,
    ErrorCode.SSRF_BLOCKED,
    ErrorCode.RENDER_ERROR,
    ErrorCode.SSL_ERROR,
}

MAX_BACKOFF_SECONDS = 3600


def classify_capture_error(exc: BaseException) -> Tuple[ErrorCode, str, bool]:
    """
    Map an exception from a capture attempt to (error_code, message, retryable).
    """
    from apps.core.security import SSRFError

    message = str(exc) or type(exc).__name__

    if isinstance(exc, CaptureError):
        code = exc.error_code
        return code, message, exc.retryable and code not in NON_RETRIABLE_ERRORS

    if isinstance(exc, SSRFError):
        return ErrorCode.SSRF_BLOCKED, message, False

    exc_type = type(exc).__name__
    lowered = message.lower()

    if exc_type in ('TimeoutError', 'ConnectTimeout', 'ReadTimeout', 'Timeout'):
        return ErrorCode.NETWORK_TIMEOUT, message, True
    if exc_type in ('ConnectionError', 'ConnectionResetError', 'ConnectionRefusedError'):
        return ErrorCode.NETWORK_ERROR, message, True
    if 'ssl' in lowered or 'certificate' in lowered:
        return ErrorCode.SSL_ERROR, message, False
    if 'name_not_resolved' in lowered or 'name resolution' in lowered:
        return ErrorCode.DNS_ERROR, message, True
    if exc_type == 'OSError':
        return ErrorCode.STORAGE_ERROR, message, True

    return ErrorCode.UNKNOWN_ERROR, message, True


def retry_delay_seconds(error_code, attempt_count: int) -> int:
    """
    Delay before a failed job is offered to workers again.

    Exponential in the number of failed attempts with jitter, capped at an
    hour. A zero base backoff disables the delay entirely.
    """
    base = settings.CAPTURE_RETRY_BACKOFF_SECONDS
    if base <= 0:
        return 0

    policy = RETRY_POLICIES.get(error_code, RETRY_POLICIES[ErrorCode.UNKNOWN_ERROR])
    exponent = max(attempt_count - 1, 0)
    backoff = min(base * policy['backoff_factor'] * (2 ** exponent), MAX_BACKOFF_SECONDS)
    jitter = random.uniform(0, base * policy['jitter'])
    return int(min(backoff + jitter, MAX_BACKOFF_SECONDS))


class LeaseLost(Exception):
    """The worker's lease on a job was swept while it was still capturing."""
    pass
