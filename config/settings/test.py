"""
Test settings for the capture service.

In-memory SQLite, eager Celery, in-process progress hub and console-only
logging so the suite needs neither Redis nor Playwright.
"""

from .base import *

DEBUG = False

ALLOWED_HOSTS = ['testserver', 'localhost']

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
    }
}

PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']

CELERY_TASK_ALWAYS_EAGER = True
CELERY_BROKER_URL = 'memory://'
CELERY_RESULT_BACKEND = 'cache+memory://'

PROGRESS_PUBLISHER = 'local'

CAPTURE_RETRY_BACKOFF_SECONDS = 0
CAPTURE_POLL_INTERVAL_SECONDS = 0.01
CRAWL_REQUEST_DELAY = 0

# Tests use reserved example domains that should not hit DNS
SSRF_RESOLVE_DNS = False

REST_FRAMEWORK['DEFAULT_THROTTLE_RATES'] = {
    'capture': '10000/minute',
    'crawl': '10000/minute',
    'commit': '10000/minute',
}

STORAGES['default'] = {
    'BACKEND': 'django.core.files.storage.InMemoryStorage',
}
STORAGES['staticfiles'] = {
    'BACKEND': 'django.contrib.staticfiles.storage.StaticFilesStorage',
}

LOGGING['handlers'].pop('file')
LOGGING['root']['level'] = 'WARNING'
LOGGING['loggers']['django']['handlers'] = ['console']
LOGGING['loggers']['apps']['level'] = 'WARNING'
# Let pytest's caplog see application records
LOGGING['loggers']['apps']['propagate'] = True
LOGGING['loggers']['apps']['handlers'] = []
