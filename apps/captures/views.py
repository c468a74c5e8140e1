"""
API views for screenshot captures, collections and progress reconciliation.

POST /api/captures/                 - Enqueue a capture (or a frameset)
GET  /api/captures/?project_id=     - List the caller's captures
GET  /api/captures/{id}/            - Capture job details
GET  /api/collections/{id}/         - Collection with its jobs
GET  /api/progress/state/           - Snapshot for client reconciliation
"""

import logging
import uuid

from rest_framework import mixins, status, viewsets
from rest_framework.pagination import PageNumberPagination
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.core.exceptions import ValidationError
from apps.core.throttling import CaptureEndpointThrottle

from .aggregator import get_aggregator
from .exceptions import CollectionNotFound, JobNotFound
from .models import CaptureJob, Collection
from .serializers import (
    CaptureCreateSerializer,
    CaptureJobSerializer,
    CollectionDetailSerializer,
)
from .services import create_capture, create_frameset

logger = logging.getLogger(__name__)


class CapturePagination(PageNumberPagination):
    page_size = 25
    page_size_query_param = 'page_size'
    max_page_size = 100


class CaptureJobViewSet(mixins.CreateModelMixin,
                        mixins.ListModelMixin,
                        mixins.RetrieveModelMixin,
                        viewsets.GenericViewSet):
    """
    Capture jobs owned by the caller.

    Creating returns 202 as soon as the job is queued; progress arrives
    over the progress socket.
    """
    permission_classes = [IsAuthenticated]
    pagination_class = CapturePagination
    serializer_class = CaptureJobSerializer

    def get_throttles(self):
        if self.action == 'create':
            return [CaptureEndpointThrottle()]
        return []

    def get_queryset(self):
        queryset = CaptureJob.objects.filter(owner=self.request.user)

        project_id = self.request.query_params.get('project_id')
        if project_id:
            queryset = queryset.filter(project_id=project_id)

        state = self.request.query_params.get('status')
        if state:
            queryset = queryset.filter(state=state)

        collection_id = self.request.query_params.get('collection')
        if collection_id:
            queryset = queryset.filter(collection_id=collection_id)

        return queryset

    def get_object(self):
        try:
            return self.get_queryset().get(pk=self.kwargs['pk'])
        except (CaptureJob.DoesNotExist, ValueError):
            raise JobNotFound()

    def create(self, request, *args, **kwargs):
        serializer = CaptureCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        options = dict(data.get('options') or {})
        auto_scroll = data.get('auto_scroll')
        if auto_scroll and not auto_scroll.get('enabled'):
            auto_scroll = None

        if data.get('frames') or auto_scroll:
            collection, jobs = create_frameset(
                request.user,
                data['url'],
                data['project_id'],
                data.get('frames') or [0],
                options=options,
                auto_scroll=auto_scroll,
            )
            return Response(
                {
                    'collection_id': str(collection.id),
                    'job_ids': [str(job.id) for job in jobs],
                },
                status=status.HTTP_202_ACCEPTED,
            )

        job = create_capture(request.user, data['url'], data['project_id'], options=options)
        return Response({'job_id': str(job.id)}, status=status.HTTP_202_ACCEPTED)


class CollectionDetailView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, pk):
        collection = (
            Collection.objects.filter(pk=pk, owner=request.user)
            .prefetch_related('jobs')
            .first()
        )
        if collection is None:
            raise CollectionNotFound()
        return Response(CollectionDetailSerializer(collection).data)


class ProgressStateView(APIView):
    """
    Current state of the caller's jobs and collections.

    Clients call this after every (re)connect of the progress socket and
    replace their local state with the result.
    """
    permission_classes = [IsAuthenticated]

    def get(self, request):
        project_id = request.query_params.get('project_id') or None
        if project_id:
            try:
                uuid.UUID(project_id)
            except ValueError:
                raise ValidationError("project_id must be a UUID", field='project_id')
        return Response(get_aggregator().snapshot(request.user, project_id=project_id))
