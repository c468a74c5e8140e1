from django.contrib import admin
from django.utils.html import format_html

from .models import CaptureJob, Collection


class CaptureJobInline(admin.TabularInline):
    model = CaptureJob
    extra = 0
    fields = ['url', 'state', 'percent', 'attempt_count', 'error_code', 'image_path']
    readonly_fields = fields
    can_delete = False
    show_change_link = True


@admin.register(Collection)
class CollectionAdmin(admin.ModelAdmin):
    """Admin configuration for Collection model."""

    list_display = [
        'name',
        'kind',
        'owner',
        'status',
        'progress',
        'created_at',
        'finalized_at',
    ]
    list_filter = ['kind', 'status', 'created_at']
    search_fields = ['name', 'base_url']
    readonly_fields = [
        'id', 'total_expected', 'completed_count', 'failed_count',
        'finalized_at', 'discovery_set_id', 'created_at', 'updated_at',
    ]
    inlines = [CaptureJobInline]

    def progress(self, obj):
        return f"{obj.finished_count}/{obj.total_expected}"
    progress.short_description = 'Finished'


@admin.register(CaptureJob)
class CaptureJobAdmin(admin.ModelAdmin):
    """Admin configuration for CaptureJob model."""

    STATE_COLORS = {
        CaptureJob.STATE_QUEUED: '#6c757d',
        CaptureJob.STATE_LOCKED: '#17a2b8',
        CaptureJob.STATE_RUNNING: '#007bff',
        CaptureJob.STATE_COMPLETED: '#28a745',
        CaptureJob.STATE_FAILED: '#dc3545',
    }

    list_display = [
        'url',
        'kind',
        'state_badge',
        'percent',
        'attempt_count',
        'locked_by',
        'error_code',
        'created_at',
    ]
    list_filter = ['state', 'kind', 'error_code', 'created_at']
    search_fields = ['url', 'locked_by']
    raw_id_fields = ['collection']
    readonly_fields = [
        'id', 'locked_by', 'locked_until', 'started_at', 'completed_at',
        'outcome_recorded_at', 'created_at', 'updated_at',
    ]

    def state_badge(self, obj):
        return format_html(
            '<span style="background:{};color:#fff;padding:2px 6px;border-radius:3px">{}</span>',
            self.STATE_COLORS.get(obj.state, '#6c757d'),
            obj.get_state_display(),
        )
    state_badge.short_description = 'State'
