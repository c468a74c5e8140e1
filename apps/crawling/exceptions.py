"""
Crawl discovery exceptions.
"""

from rest_framework import status

from apps.core.exceptions import PipelineException, ErrorCode


class DiscoverySetNotFound(PipelineException):
    """The discovery set does not exist, has expired, or belongs to someone else."""
    status_code = status.HTTP_404_NOT_FOUND
    error_code = ErrorCode.NOT_FOUND
    default_detail = "Discovery set not found"


class AlreadyCommitted(PipelineException):
    """The discovery set was already turned into a collection."""
    status_code = status.HTTP_409_CONFLICT
    error_code = ErrorCode.ALREADY_COMMITTED
    default_detail = "Discovery set has already been committed"


class SelectionError(PipelineException):
    """Selected URLs are empty or not a subset of the discovered candidates."""
    status_code = status.HTTP_400_BAD_REQUEST
    error_code = ErrorCode.INVALID_SELECTION
    default_detail = "Invalid URL selection"
