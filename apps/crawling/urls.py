"""
URL patterns for crawl discovery.
"""

from django.urls import path

from .views import CrawlCommitView, CrawlDetailView, CrawlStartView

app_name = 'crawling'

urlpatterns = [
    path('', CrawlStartView.as_view(), name='crawl-start'),
    path('<uuid:pk>/', CrawlDetailView.as_view(), name='crawl-detail'),
    path('<uuid:pk>/commit/', CrawlCommitView.as_view(), name='crawl-commit'),
]
