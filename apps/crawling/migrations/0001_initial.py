# Generated migration for crawl discovery sets

from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone
import uuid

import apps.crawling.models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='DiscoveredURLSet',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, help_text='Unique identifier (UUID)', primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now, editable=False, help_text='Timestamp when record was created', verbose_name='Created At')),
                ('updated_at', models.DateTimeField(auto_now=True, help_text='Timestamp when record was last updated', verbose_name='Updated At')),
                ('project_id', models.UUIDField(db_index=True, help_text='Project the resulting collection will belong to', verbose_name='Project ID')),
                ('collection_id', models.UUIDField(default=uuid.uuid4, help_text='ID the committed collection will be created with', unique=True, verbose_name='Collection ID')),
                ('seed_url', models.URLField(help_text='URL the breadth-first discovery started from', max_length=2048, verbose_name='Seed URL')),
                ('candidate_urls', models.JSONField(blank=True, default=list, help_text='Canonical, deduplicated pages in discovery order (seed first)', verbose_name='Candidate URLs')),
                ('external_urls', models.JSONField(blank=True, default=list, help_text='Off-origin links that were seen but not traversed', verbose_name='External URLs')),
                ('max_depth', models.PositiveIntegerField(default=2, help_text='Link depth limit used for this discovery', verbose_name='Max Depth')),
                ('max_pages', models.PositiveIntegerField(default=50, help_text='Candidate page limit used for this discovery', verbose_name='Max Pages')),
                ('truncated', models.BooleanField(default=False, help_text='Discovery stopped early on its page limit or time budget', verbose_name='Truncated')),
                ('expires_at', models.DateTimeField(db_index=True, default=apps.crawling.models.default_discovery_expiry, help_text='Uncommitted sets are purged after this time', verbose_name='Expires At')),
                ('owner', models.ForeignKey(help_text='User who started the crawl', on_delete=django.db.models.deletion.CASCADE, related_name='discovered_url_sets', to=settings.AUTH_USER_MODEL, verbose_name='Owner')),
            ],
            options={
                'verbose_name': 'Discovered URL Set',
                'verbose_name_plural': 'Discovered URL Sets',
                'db_table': 'discovered_url_sets',
                'ordering': ['-created_at'],
            },
        ),
    ]
