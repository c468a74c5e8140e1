"""
URL patterns for captures, collections and progress state.
"""

from django.urls import path, include
from config.routers import SafeDefaultRouter

from .views import CaptureJobViewSet, CollectionDetailView, ProgressStateView

app_name = 'captures'

router = SafeDefaultRouter()
router.register(r'', CaptureJobViewSet, basename='capture')

urlpatterns = [
    path('', include(router.urls)),
]

# Mounted at /api/collections/
collection_urlpatterns = [
    path('<uuid:pk>/', CollectionDetailView.as_view(), name='collection-detail'),
]

# Mounted at /api/progress/
progress_urlpatterns = [
    path('state/', ProgressStateView.as_view(), name='progress-state'),
]
