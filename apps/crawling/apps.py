from django.apps import AppConfig


class CrawlingConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.crawling'
    verbose_name = 'Crawl Discovery'
