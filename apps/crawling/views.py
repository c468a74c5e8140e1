"""
API views for crawl discovery and selection commit.

POST /api/crawls/                 - Discover candidate pages from a seed URL
GET  /api/crawls/{id}/            - Re-read an uncommitted discovery set
POST /api/crawls/{id}/commit/     - Capture the selected pages as a collection
"""

import logging

from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.captures.serializers import CollectionSerializer
from apps.core.throttling import CommitEndpointThrottle, CrawlEndpointThrottle

from .discovery import commit_selection, start_crawl
from .exceptions import DiscoverySetNotFound
from .models import DiscoveredURLSet
from .serializers import (
    CommitSelectionSerializer,
    CrawlStartSerializer,
    DiscoveredURLSetSerializer,
)

logger = logging.getLogger(__name__)


class CrawlStartView(APIView):
    """
    Run a bounded discovery crawl and return the candidate pages.

    Nothing is captured yet; the response carries a discovery_set_id that
    must be committed with a selection.
    """
    permission_classes = [IsAuthenticated]
    throttle_classes = [CrawlEndpointThrottle]

    def post(self, request):
        serializer = CrawlStartSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        discovery_set = start_crawl(
            request.user,
            data['seed_url'],
            data['project_id'],
            max_depth=data['max_depth'],
            max_pages=data['max_pages'],
            allow_off_origin=data['allow_off_origin'],
        )
        return Response(
            DiscoveredURLSetSerializer(discovery_set).data,
            status=status.HTTP_201_CREATED,
        )


class CrawlDetailView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, pk):
        discovery_set = (
            DiscoveredURLSet.objects.live()
            .filter(pk=pk, owner=request.user)
            .first()
        )
        if discovery_set is None:
            raise DiscoverySetNotFound()
        return Response(DiscoveredURLSetSerializer(discovery_set).data)


class CrawlCommitView(APIView):
    """
    Commit a selection of discovered pages.

    Returns 201 with the collection and its job ids. A second commit of the
    same discovery set returns 409 ALREADY_COMMITTED.
    """
    permission_classes = [IsAuthenticated]
    throttle_classes = [CommitEndpointThrottle]

    def post(self, request, pk):
        serializer = CommitSelectionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        collection, jobs = commit_selection(
            pk, serializer.validated_data['selected_urls'], request.user
        )
        payload = CollectionSerializer(collection).data
        payload['collection_id'] = str(collection.id)
        payload['job_ids'] = [str(job.id) for job in jobs]
        return Response(payload, status=status.HTTP_201_CREATED)
