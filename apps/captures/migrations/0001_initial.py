# Generated migration for capture jobs and collections

from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone
import uuid


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Collection',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, help_text='Unique identifier (UUID)', primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now, editable=False, help_text='Timestamp when record was created', verbose_name='Created At')),
                ('updated_at', models.DateTimeField(auto_now=True, help_text='Timestamp when record was last updated', verbose_name='Updated At')),
                ('project_id', models.UUIDField(db_index=True, help_text='Project the collection belongs to', verbose_name='Project ID')),
                ('kind', models.CharField(choices=[('crawl', 'Crawl'), ('frameset', 'Frame Set')], default='crawl', help_text='What produced the collection', max_length=20, verbose_name='Kind')),
                ('name', models.CharField(blank=True, help_text='Display name, e.g. "Crawl of example.com - 2024-01-01"', max_length=255, verbose_name='Name')),
                ('base_url', models.URLField(blank=True, help_text='Seed URL of the crawl or the framed page', max_length=2048, verbose_name='Base URL')),
                ('total_expected', models.PositiveIntegerField(help_text='Number of jobs enqueued for this collection (immutable)', verbose_name='Total Expected')),
                ('completed_count', models.PositiveIntegerField(default=0, help_text='Jobs that finished successfully', verbose_name='Completed')),
                ('failed_count', models.PositiveIntegerField(default=0, help_text='Jobs that failed terminally', verbose_name='Failed')),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('running', 'Running'), ('completed', 'Completed'), ('completed_with_errors', 'Completed with errors')], db_index=True, default='pending', help_text='Aggregate status of the collection', max_length=30, verbose_name='Status')),
                ('stage', models.CharField(blank=True, help_text='Human-readable progress label', max_length=255, verbose_name='Stage')),
                ('finalized_at', models.DateTimeField(blank=True, help_text='When the terminal status was recorded (idempotency guard)', null=True, verbose_name='Finalized At')),
                ('discovery_set_id', models.UUIDField(blank=True, help_text='Discovery set this crawl collection was committed from', null=True, unique=True, verbose_name='Discovery Set ID')),
                ('owner', models.ForeignKey(help_text='User whose sessions receive progress for this collection', on_delete=django.db.models.deletion.CASCADE, related_name='capture_collections', to=settings.AUTH_USER_MODEL, verbose_name='Owner')),
            ],
            options={
                'verbose_name': 'Collection',
                'verbose_name_plural': 'Collections',
                'db_table': 'capture_collections',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='CaptureJob',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, help_text='Unique identifier (UUID)', primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now, editable=False, help_text='Timestamp when record was created', verbose_name='Created At')),
                ('updated_at', models.DateTimeField(auto_now=True, help_text='Timestamp when record was last updated', verbose_name='Updated At')),
                ('url', models.URLField(help_text='Page to capture', max_length=2048, verbose_name='URL')),
                ('project_id', models.UUIDField(db_index=True, help_text='Project the screenshot belongs to', verbose_name='Project ID')),
                ('kind', models.CharField(choices=[('normal', 'Normal'), ('crawl', 'Crawl page'), ('frame', 'Frame')], default='normal', help_text='Standalone, crawl page or frame capture', max_length=20, verbose_name='Kind')),
                ('options', models.JSONField(blank=True, default=dict, help_text='Capture options (viewport, full_page, frame_delay, auto_scroll, ...)', verbose_name='Options')),
                ('state', models.CharField(choices=[('queued', 'Queued'), ('locked', 'Locked'), ('running', 'Running'), ('completed', 'Completed'), ('failed', 'Failed')], db_index=True, default='queued', help_text='Queue state', max_length=20, verbose_name='State')),
                ('attempt_count', models.PositiveIntegerField(default=0, help_text='Failed attempts so far', verbose_name='Attempts')),
                ('max_attempts', models.PositiveIntegerField(default=3, help_text='Attempts allowed before the job fails terminally (set at enqueue)', verbose_name='Max Attempts')),
                ('locked_by', models.CharField(blank=True, help_text='Worker currently holding the lease', max_length=100, verbose_name='Locked By')),
                ('locked_until', models.DateTimeField(blank=True, db_index=True, help_text='Lease expiry, or retry-not-before time for queued jobs', null=True, verbose_name='Locked Until')),
                ('percent', models.PositiveSmallIntegerField(default=0, help_text='Last reported progress (0-100, never decreases within an attempt)', verbose_name='Percent')),
                ('stage', models.CharField(blank=True, help_text='Human-readable progress label', max_length=255, verbose_name='Stage')),
                ('error_code', models.CharField(blank=True, help_text='Classified error code of the last failure', max_length=50, verbose_name='Error Code')),
                ('error_message', models.TextField(blank=True, help_text='Message of the last failure', verbose_name='Error Message')),
                ('image_path', models.CharField(blank=True, help_text='Storage name of the captured image', max_length=500, verbose_name='Image Path')),
                ('metadata', models.JSONField(blank=True, default=dict, help_text='Page title, dimensions, file size, capture time', verbose_name='Metadata')),
                ('started_at', models.DateTimeField(blank=True, help_text='When the current attempt started running', null=True, verbose_name='Started At')),
                ('completed_at', models.DateTimeField(blank=True, help_text='When the job reached a terminal state', null=True, verbose_name='Completed At')),
                ('outcome_recorded_at', models.DateTimeField(blank=True, help_text='When the terminal outcome was counted (double-count guard)', null=True, verbose_name='Outcome Recorded At')),
                ('collection', models.ForeignKey(blank=True, help_text='Owning collection (null for standalone captures)', null=True, on_delete=django.db.models.deletion.CASCADE, related_name='jobs', to='captures.collection', verbose_name='Collection')),
                ('owner', models.ForeignKey(help_text='User whose sessions receive progress for this job', on_delete=django.db.models.deletion.CASCADE, related_name='capture_jobs', to=settings.AUTH_USER_MODEL, verbose_name='Owner')),
            ],
            options={
                'verbose_name': 'Capture Job',
                'verbose_name_plural': 'Capture Jobs',
                'db_table': 'capture_jobs',
                'ordering': ['-created_at'],
            },
        ),
        migrations.AddIndex(
            model_name='collection',
            index=models.Index(fields=['owner', 'project_id'], name='capture_coll_owner_proj_idx'),
        ),
        migrations.AddIndex(
            model_name='capturejob',
            index=models.Index(fields=['state', 'locked_until', 'created_at'], name='capture_job_state_lease_idx'),
        ),
        migrations.AddIndex(
            model_name='capturejob',
            index=models.Index(fields=['owner', 'project_id'], name='capture_job_owner_proj_idx'),
        ),
    ]
