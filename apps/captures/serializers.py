"""
Serializers for capture jobs and collections.
"""

from rest_framework import serializers

from apps.core.exceptions import SSRFBlockedError
from apps.core.security import SSRFError, validate_url_ssrf

from .models import CaptureJob, Collection

MAX_SCROLL_STEPS = 50


class AutoScrollSerializer(serializers.Serializer):
    """Each step becomes one scroll frame in the capture's frameset."""

    enabled = serializers.BooleanField(default=True)
    selector = serializers.CharField(required=False, allow_blank=True, max_length=500)
    step_size = serializers.IntegerField(required=False, min_value=1, max_value=10000)
    interval = serializers.IntegerField(required=False, min_value=0, max_value=5000)
    max_steps = serializers.IntegerField(required=False, min_value=1, max_value=MAX_SCROLL_STEPS)


class CaptureCreateSerializer(serializers.Serializer):
    """
    Input for POST /api/captures/.

    ``frames`` is a list of delays in seconds; when given, the page is
    captured once per delay as a frameset collection. Enabled
    ``auto_scroll`` adds scroll frames to that collection, with a single
    immediate frame when no delays are given.
    """

    url = serializers.URLField(max_length=2048)
    project_id = serializers.UUIDField()
    frames = serializers.ListField(
        child=serializers.FloatField(min_value=0, max_value=300),
        required=False,
        allow_empty=False,
        max_length=50,
    )
    auto_scroll = AutoScrollSerializer(required=False)
    options = serializers.DictField(required=False, default=dict)

    def validate_url(self, value):
        try:
            validate_url_ssrf(value)
        except SSRFError as e:
            raise SSRFBlockedError(str(e), field='url')
        return value


class CaptureJobSerializer(serializers.ModelSerializer):
    job_id = serializers.UUIDField(source='id', read_only=True)
    status = serializers.CharField(source='state', read_only=True)
    error = serializers.SerializerMethodField()
    image_url = serializers.SerializerMethodField()

    class Meta:
        model = CaptureJob
        fields = [
            'job_id',
            'url',
            'project_id',
            'collection',
            'kind',
            'status',
            'percent',
            'stage',
            'attempt_count',
            'max_attempts',
            'error',
            'image_path',
            'image_url',
            'metadata',
            'options',
            'created_at',
            'started_at',
            'completed_at',
        ]
        read_only_fields = fields

    def get_error(self, obj):
        if not obj.error_code:
            return None
        return {'code': obj.error_code, 'message': obj.error_message}

    def get_image_url(self, obj):
        if not obj.image_path:
            return None
        from django.core.files.storage import default_storage
        return default_storage.url(obj.image_path)


class CollectionSerializer(serializers.ModelSerializer):
    collection_id = serializers.UUIDField(source='id', read_only=True)
    percent = serializers.IntegerField(read_only=True)

    class Meta:
        model = Collection
        fields = [
            'collection_id',
            'project_id',
            'kind',
            'name',
            'base_url',
            'status',
            'stage',
            'percent',
            'total_expected',
            'completed_count',
            'failed_count',
            'created_at',
            'finalized_at',
        ]
        read_only_fields = fields


class CollectionDetailSerializer(CollectionSerializer):
    jobs = CaptureJobSerializer(many=True, read_only=True)

    class Meta(CollectionSerializer.Meta):
        fields = CollectionSerializer.Meta.fields + ['jobs']
        read_only_fields = fields
