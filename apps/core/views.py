"""
Health, status and auth endpoints.
"""

import logging

from django.conf import settings
from django.db import DatabaseError, connection
from django.db.models import Count
from django.http import JsonResponse
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

logger = logging.getLogger(__name__)


def check_database():
    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
    except DatabaseError as e:
        logger.error(f"Health check: database unavailable: {e}")
        return {'status': 'unhealthy', 'message': str(e)}
    return {'status': 'healthy'}


def check_progress_relay():
    if settings.PROGRESS_PUBLISHER != 'redis':
        return {'status': 'healthy', 'message': 'in-process hub'}

    import redis
    try:
        redis.Redis.from_url(settings.PROGRESS_REDIS_URL, socket_timeout=2).ping()
    except redis.RedisError as e:
        logger.error(f"Health check: progress relay unavailable: {e}")
        return {'status': 'unhealthy', 'message': str(e)}
    return {'status': 'healthy'}


HEALTH_CHECKS = {
    'database': check_database,
    'progress_relay': check_progress_relay,
}


@method_decorator(csrf_exempt, name='dispatch')
class HealthCheckView(View):
    """
    GET /health/ - Run all health checks
    GET /health/<check_name>/ - Run one check
    """

    def get(self, request, check_name=None):
        if check_name:
            check = HEALTH_CHECKS.get(check_name)
            if check is None:
                return JsonResponse({'status': 'unknown', 'message': f"No check named {check_name}"}, status=404)
            result = check()
            return JsonResponse(result, status=200 if result['status'] == 'healthy' else 503)

        checks = {name: check() for name, check in HEALTH_CHECKS.items()}
        healthy = all(result['status'] == 'healthy' for result in checks.values())
        return JsonResponse(
            {'status': 'healthy' if healthy else 'unhealthy', 'checks': checks},
            status=200 if healthy else 503,
        )


@method_decorator(csrf_exempt, name='dispatch')
class LivenessView(View):
    """Returns 200 if the application is running."""

    def get(self, request):
        return JsonResponse({"status": "alive"})


@method_decorator(csrf_exempt, name='dispatch')
class ReadinessView(View):

    def get(self, request):
        db_check = check_database()
        if db_check['status'] == 'healthy':
            return JsonResponse({"status": "ready"})
        return JsonResponse({"status": "not_ready", "reason": db_check['message']}, status=503)


@method_decorator(csrf_exempt, name='dispatch')
class StatusView(View):
    """
    Application status summary.

    GET /status/ - queue depth per state and collections in flight
    """

    def get(self, request):
        from apps.captures.models import CaptureJob, Collection

        try:
            by_state = dict(
                CaptureJob.objects.values_list('state').annotate(count=Count('id')).order_by()
            )
            active_collections = Collection.objects.filter(finalized_at__isnull=True).count()
        except DatabaseError as e:
            logger.error(f"Status: could not read queue state: {e}")
            by_state, active_collections = {}, -1

        return JsonResponse({
            "application": "Capture Service",
            "version": settings.VERSION,
            "environment": getattr(settings, 'ENVIRONMENT', 'development'),
            "health": check_database()['status'],
            "queue": {state: by_state.get(state, 0) for state, _ in CaptureJob.STATE_CHOICES},
            "active_collections": active_collections,
        })


class CurrentUserView(APIView):
    """GET /api/auth/me/ - the authenticated user."""
    permission_classes = [IsAuthenticated]

    def get(self, request):
        user = request.user
        return Response({
            'id': user.pk,
            'username': user.get_username(),
            'email': user.email,
        })
