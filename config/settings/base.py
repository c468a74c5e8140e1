"""
Django settings for the capture service.
Base settings shared across all environments.
"""

import os
from datetime import timedelta
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Build paths inside the project
BASE_DIR = Path(__file__).resolve().parent.parent.parent
(BASE_DIR / 'logs').mkdir(exist_ok=True)

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = os.getenv('SECRET_KEY', 'django-insecure-change-this-in-production')

# Application definition
INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',

    # Third-party apps
    'rest_framework',
    'rest_framework_simplejwt',
    'django_celery_beat',

    # Capture service apps
    'apps.core',
    'apps.captures',
    'apps.crawling',
    'apps.realtime',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'whitenoise.middleware.WhiteNoiseMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
    'apps.core.middleware.RequestIDMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'config.wsgi.application'

# Database
# Use SQLite for development if no PostgreSQL configured
if os.getenv('DB_NAME'):
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.postgresql',
            'NAME': os.getenv('DB_NAME'),
            'USER': os.getenv('DB_USER'),
            'PASSWORD': os.getenv('DB_PASSWORD'),
            'HOST': os.getenv('DB_HOST', 'localhost'),
            'PORT': os.getenv('DB_PORT', '5432'),
            'CONN_MAX_AGE': int(os.getenv('DB_CONN_MAX_AGE', '60')),
            'CONN_HEALTH_CHECKS': True,
            'OPTIONS': {
                'connect_timeout': 10,
            },
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }

AUTH_PASSWORD_VALIDATORS = [
    {'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator'},
    {'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator'},
    {'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator'},
    {'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator'},
]

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

# Static files
STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'
STORAGES = {
    'default': {
        'BACKEND': 'django.core.files.storage.FileSystemStorage',
    },
    'staticfiles': {
        'BACKEND': 'whitenoise.storage.CompressedManifestStaticFilesStorage',
    },
}

# Captured screenshots are written through default_storage
MEDIA_URL = '/media/'
MEDIA_ROOT = BASE_DIR / 'media'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# Celery Configuration
CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', 'redis://localhost:6379/0')
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_TIME_LIMIT = 600
CELERY_TASK_SOFT_TIME_LIMIT = 540
CELERY_TASK_ALWAYS_EAGER = os.getenv('CELERY_TASK_ALWAYS_EAGER', 'False').lower() == 'true'
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BROKER_CONNECTION_RETRY_ON_STARTUP = True
CELERY_TASK_ACKS_LATE = True
CELERY_WORKER_PREFETCH_MULTIPLIER = 1

# Celery Beat - housekeeping for the capture queue
CELERY_BEAT_SCHEDULER = 'django_celery_beat.schedulers:DatabaseScheduler'
CELERY_BEAT_SCHEDULE = {
    'sweep-expired-capture-leases': {
        'task': 'apps.captures.tasks.sweep_expired_leases',
        'schedule': 30.0,
    },
    'purge-terminal-capture-jobs-daily': {
        'task': 'apps.captures.tasks.purge_terminal_jobs',
        'schedule': 86400.0,
    },
    'expire-discovery-sets': {
        'task': 'apps.crawling.tasks.expire_discovery_sets',
        'schedule': 600.0,
    },
}

# Redis Configuration
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')

CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.redis.RedisCache',
        'LOCATION': REDIS_URL,
    }
}

# Django REST Framework
REST_FRAMEWORK = {
    'DEFAULT_PAGINATION_CLASS': 'rest_framework.pagination.PageNumberPagination',
    'PAGE_SIZE': 25,
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework_simplejwt.authentication.JWTAuthentication',
        'rest_framework.authentication.SessionAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAuthenticated',
    ],
    'DEFAULT_THROTTLE_RATES': {
        'capture': os.getenv('THROTTLE_CAPTURE_RATE', '30/minute'),
        'crawl': os.getenv('THROTTLE_CRAWL_RATE', '5/minute'),
        'commit': os.getenv('THROTTLE_COMMIT_RATE', '10/minute'),
    },
    'EXCEPTION_HANDLER': 'apps.core.exceptions.pipeline_exception_handler',
}

# Simple JWT Configuration (HTTP API and progress socket share tokens)
SIMPLE_JWT = {
    'ACCESS_TOKEN_LIFETIME': timedelta(minutes=60),
    'REFRESH_TOKEN_LIFETIME': timedelta(days=7),
    'ALGORITHM': 'HS256',
    'SIGNING_KEY': SECRET_KEY,
    'AUTH_HEADER_TYPES': ('Bearer',),
    'AUTH_HEADER_NAME': 'HTTP_AUTHORIZATION',
    'USER_ID_FIELD': 'id',
    'USER_ID_CLAIM': 'user_id',
    'TOKEN_TYPE_CLAIM': 'token_type',
    'JTI_CLAIM': 'jti',
}

# Logging
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'filters': {
        'request_id': {
            '()': 'apps.core.middleware.RequestIDFilter',
        },
    },
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} [{request_id}] [{worker_id}] {name} {message}',
            'style': '{',
        },
        'simple': {
            'format': '{levelname} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
            'filters': ['request_id'],
        },
        'file': {
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': BASE_DIR / 'logs' / 'capture.log',
            'maxBytes': 1024 * 1024 * 5,  # 5MB
            'backupCount': 5,
            'formatter': 'verbose',
            'filters': ['request_id'],
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'INFO',
    },
    'loggers': {
        'django': {
            'handlers': ['console', 'file'],
            'level': 'INFO',
            'propagate': False,
        },
        'apps': {
            'handlers': ['console', 'file'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}


# =============================================================================
# Capture Queue & Workers
# =============================================================================

# Number of capture worker threads per run_capture_workers process
CAPTURE_WORKER_CONCURRENCY = int(os.getenv('CAPTURE_WORKER_CONCURRENCY', '5'))

# How long a leased job stays invisible to other workers without a heartbeat
CAPTURE_LEASE_SECONDS = int(os.getenv('CAPTURE_LEASE_SECONDS', '120'))

# Hard limit on one capture engine call; must be shorter than the lease
CAPTURE_TIMEOUT_SECONDS = int(os.getenv('CAPTURE_TIMEOUT_SECONDS', '60'))

CAPTURE_MAX_ATTEMPTS = int(os.getenv('CAPTURE_MAX_ATTEMPTS', '3'))

# Base delay before a retryable failure is offered to workers again
CAPTURE_RETRY_BACKOFF_SECONDS = int(os.getenv('CAPTURE_RETRY_BACKOFF_SECONDS', '30'))

# Idle sleep between empty lease polls
CAPTURE_POLL_INTERVAL_SECONDS = float(os.getenv('CAPTURE_POLL_INTERVAL_SECONDS', '2'))

# Terminal jobs older than this are purged
CAPTURE_RETENTION_DAYS = int(os.getenv('CAPTURE_RETENTION_DAYS', '30'))

CAPTURE_VIEWPORT = {
    'width': int(os.getenv('CAPTURE_VIEWPORT_WIDTH', '1920')),
    'height': int(os.getenv('CAPTURE_VIEWPORT_HEIGHT', '1080')),
}

CAPTURE_ENGINE = os.getenv('CAPTURE_ENGINE', 'apps.captures.engine.PlaywrightCaptureEngine')

CAPTURE_STORAGE_PREFIX = os.getenv('CAPTURE_STORAGE_PREFIX', 'captures')

# Auto-scroll: one viewport frame per step, planned when the request is accepted
CAPTURE_AUTO_SCROLL_STEPS = int(os.getenv('CAPTURE_AUTO_SCROLL_STEPS', '10'))
CAPTURE_AUTO_SCROLL_STEP_SIZE = int(os.getenv('CAPTURE_AUTO_SCROLL_STEP_SIZE', '500'))
CAPTURE_AUTO_SCROLL_INTERVAL_MS = int(os.getenv('CAPTURE_AUTO_SCROLL_INTERVAL_MS', '1000'))


# =============================================================================
# Crawl Discovery
# =============================================================================

CRAWL_MAX_DEPTH = int(os.getenv('CRAWL_MAX_DEPTH', '2'))
CRAWL_MAX_PAGES = int(os.getenv('CRAWL_MAX_PAGES', '50'))

# Overall discovery budget; results are returned truncated when exceeded
CRAWL_TIMEOUT_SECONDS = int(os.getenv('CRAWL_TIMEOUT_SECONDS', '60'))
CRAWL_PAGE_TIMEOUT_SECONDS = int(os.getenv('CRAWL_PAGE_TIMEOUT_SECONDS', '30'))
CRAWL_REQUEST_DELAY = float(os.getenv('CRAWL_REQUEST_DELAY', '0.5'))
# Adapter retries for each discovery fetch
CRAWL_FETCH_RETRIES = int(os.getenv('CRAWL_FETCH_RETRIES', '0'))
CRAWL_MAX_PAGE_BYTES = int(os.getenv('CRAWL_MAX_PAGE_BYTES', str(5 * 1024 * 1024)))
CRAWLER_USER_AGENT = os.getenv(
    'CRAWLER_USER_AGENT',
    'CaptureBot/1.0 (Website screenshot service)'
)

# Uncommitted discovery results are discarded after this
DISCOVERY_SET_TTL_MINUTES = int(os.getenv('DISCOVERY_SET_TTL_MINUTES', '60'))


# =============================================================================
# Real-time Progress
# =============================================================================

# 'redis' relays events from worker processes to the socket server;
# 'local' publishes straight into the in-process hub
PROGRESS_PUBLISHER = os.getenv('PROGRESS_PUBLISHER', 'redis')
PROGRESS_REDIS_URL = os.getenv('PROGRESS_REDIS_URL', REDIS_URL)
PROGRESS_REDIS_CHANNEL_PREFIX = os.getenv('PROGRESS_REDIS_CHANNEL_PREFIX', 'capture-progress')

# Per-connection outbox; oldest events are dropped when full
PROGRESS_OUTBOX_SIZE = int(os.getenv('PROGRESS_OUTBOX_SIZE', '256'))

PROGRESS_WS_HOST = os.getenv('PROGRESS_WS_HOST', '0.0.0.0')
PROGRESS_WS_PORT = int(os.getenv('PROGRESS_WS_PORT', '8765'))


# =============================================================================
# Security
# =============================================================================

SSRF_ALLOW_LOCALHOST = os.getenv('SSRF_ALLOW_LOCALHOST', 'false').lower() == 'true'
SSRF_ALLOW_PRIVATE_IPS = os.getenv('SSRF_ALLOW_PRIVATE_IPS', 'false').lower() == 'true'
SSRF_RESOLVE_DNS = os.getenv('SSRF_RESOLVE_DNS', 'true').lower() == 'true'
SSRF_BLOCKED_DOMAINS = [d for d in os.getenv('SSRF_BLOCKED_DOMAINS', '').split(',') if d]

VERSION = os.getenv('APP_VERSION', '1.0.0')
