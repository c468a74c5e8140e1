# Scroll frame captures

from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('captures', '0001_initial'),
    ]

    operations = [
        migrations.AlterField(
            model_name='capturejob',
            name='kind',
            field=models.CharField(choices=[('normal', 'Normal'), ('crawl', 'Crawl page'), ('frame', 'Frame'), ('scroll', 'Scroll frame')], default='normal', help_text='Standalone, crawl page, timed frame or scroll frame capture', max_length=20, verbose_name='Kind'),
        ),
        migrations.AlterField(
            model_name='capturejob',
            name='options',
            field=models.JSONField(blank=True, default=dict, help_text='Capture options (viewport, full_page, frame_delay, scroll_position, ...)', verbose_name='Options'),
        ),
    ]
