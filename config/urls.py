"""
URL configuration for the capture service.
"""

from django.contrib import admin
from django.urls import path, include
from django.conf import settings
from django.conf.urls.static import static

from apps.captures.urls import collection_urlpatterns, progress_urlpatterns
from apps.core.urls import auth_urlpatterns

urlpatterns = [
    path('admin/', admin.site.urls),
    # JWT auth
    path('api/auth/', include((auth_urlpatterns, 'auth'))),
    # Captures and collections
    path('api/captures/', include('apps.captures.urls')),
    path('api/collections/', include((collection_urlpatterns, 'collections'))),
    # Crawl discovery and selection
    path('api/crawls/', include('apps.crawling.urls')),
    # Progress reconciliation snapshot
    path('api/progress/', include((progress_urlpatterns, 'progress'))),
    # Health, status and metrics
    path('', include('apps.core.urls')),
]

# Serve captured screenshots in development
if settings.DEBUG:
    urlpatterns += static(settings.MEDIA_URL, document_root=settings.MEDIA_ROOT)

admin.site.site_header = "Capture Service Administration"
admin.site.site_title = "Capture Service Admin"
admin.site.index_title = "Capture jobs, collections and discovery sets"
