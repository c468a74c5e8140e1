from django.contrib import admin

from .models import DiscoveredURLSet


@admin.register(DiscoveredURLSet)
class DiscoveredURLSetAdmin(admin.ModelAdmin):
    """Admin configuration for uncommitted discovery sets."""

    list_display = [
        'seed_url',
        'owner',
        'project_id',
        'candidate_count',
        'truncated',
        'expires_at',
        'created_at',
    ]
    list_filter = ['truncated', 'created_at']
    search_fields = ['seed_url']
    readonly_fields = ['id', 'collection_id', 'created_at', 'updated_at']

    def candidate_count(self, obj):
        return len(obj.candidate_urls)
    candidate_count.short_description = 'Candidates'
