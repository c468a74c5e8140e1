"""
Development settings for the capture service.
"""

from .base import *

DEBUG = True

ALLOWED_HOSTS = ['localhost', '127.0.0.1', '[::1]', 'testserver']

SECURE_SSL_REDIRECT = False
SESSION_COOKIE_SECURE = False
CSRF_COOKIE_SECURE = False

DEBUG_PROPAGATE_EXCEPTIONS = True

# Single-process development: workers and socket server share the hub
PROGRESS_PUBLISHER = os.getenv('PROGRESS_PUBLISHER', 'local')

LOGGING['root']['level'] = 'DEBUG'
LOGGING['loggers']['apps']['level'] = 'DEBUG'

# Plain file handler, no rotation (Windows file locking issue)
LOGGING['handlers']['file'] = {
    'class': 'logging.FileHandler',
    'filename': BASE_DIR / 'logs' / 'capture.log',
    'formatter': 'verbose',
    'filters': ['request_id'],
    'mode': 'a',
}
