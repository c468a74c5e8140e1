"""
Serializers for crawl discovery endpoints.
"""

from django.conf import settings
from rest_framework import serializers

from apps.core.exceptions import SSRFBlockedError
from apps.core.security import SSRFError, validate_url_ssrf

from .models import DiscoveredURLSet


class CrawlStartSerializer(serializers.Serializer):
    """Input for POST /api/crawls/."""

    seed_url = serializers.URLField(max_length=2048)
    project_id = serializers.UUIDField()
    max_depth = serializers.IntegerField(required=False, min_value=0, max_value=5)
    max_pages = serializers.IntegerField(required=False, min_value=1, max_value=500)
    allow_off_origin = serializers.BooleanField(required=False, default=False)

    def validate_seed_url(self, value):
        try:
            validate_url_ssrf(value)
        except SSRFError as e:
            raise SSRFBlockedError(str(e), field='seed_url')
        return value

    def validate(self, attrs):
        attrs.setdefault('max_depth', settings.CRAWL_MAX_DEPTH)
        attrs.setdefault('max_pages', settings.CRAWL_MAX_PAGES)
        return attrs


class DiscoveredURLSetSerializer(serializers.ModelSerializer):
    discovery_set_id = serializers.UUIDField(source='id', read_only=True)

    class Meta:
        model = DiscoveredURLSet
        fields = [
            'discovery_set_id',
            'collection_id',
            'project_id',
            'seed_url',
            'candidate_urls',
            'external_urls',
            'max_depth',
            'max_pages',
            'truncated',
            'expires_at',
            'created_at',
        ]
        read_only_fields = fields


class CommitSelectionSerializer(serializers.Serializer):
    """Input for POST /api/crawls/{id}/commit/."""

    selected_urls = serializers.ListField(
        child=serializers.CharField(max_length=2048),
        allow_empty=True,
    )
