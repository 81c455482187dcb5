"""
Django settings for lead_sync project.
"""
import os
import sys
import logging
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.getenv('DJANGO_SECRET_KEY', 'dev-secret-key-change-in-production')
DEBUG = os.getenv('DEBUG', 'True').lower() == 'true'
ALLOWED_HOSTS = os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',')

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'crm',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'lead_sync.urls'

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

ASGI_APPLICATION = 'lead_sync.asgi.application'

RUNNING_TESTS = (
    os.getenv('USE_SQLITE_FOR_TESTS', '').lower() == 'true'
    or any('pytest' in arg for arg in sys.argv)
    or bool(os.getenv('PYTEST_CURRENT_TEST'))
)

# Document store (system of record for leads)
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.postgresql',
        'NAME': os.getenv('DB_NAME', 'lead_sync'),
        'USER': os.getenv('DB_USER', 'postgres'),
        'PASSWORD': os.getenv('DB_PASSWORD', 'postgres'),
        'HOST': os.getenv('DB_HOST', 'localhost'),
        'PORT': os.getenv('DB_PORT', '5432'),
    }
}

# Lease lock store, shared by every process instance
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')
CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
    },
    'locks': {
        'BACKEND': 'django.core.cache.backends.redis.RedisCache',
        'LOCATION': os.getenv('LOCK_REDIS_URL', REDIS_URL),
        'KEY_PREFIX': 'lead_locks',
    },
}

# Use SQLite and local memory for tests to avoid requiring running services
if RUNNING_TESTS:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': os.getenv('SQLITE_NAME', ':memory:'),
        }
    }
    CACHES['locks'] = {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'lead-locks',
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

STATIC_URL = 'static/'
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# Celery configuration (best-effort side effects)
CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', REDIS_URL)
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', REDIS_URL)
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
if RUNNING_TESTS:
    CELERY_BROKER_URL = 'memory://'
    CELERY_RESULT_BACKEND = 'cache+memory://'
    CELERY_TASK_ALWAYS_EAGER = True

# Spreadsheet (operational mirror for agents)
SPREADSHEET_ID = os.getenv('SPREADSHEET_ID', '')
SHEETS_API_URL = os.getenv('SHEETS_API_URL', 'https://sheets.googleapis.com/v4/spreadsheets')
SHEETS_ACCESS_TOKEN = os.getenv('SHEETS_ACCESS_TOKEN', '')
SHEETS_LEADS_TAB = os.getenv('SHEETS_LEADS_TAB', 'Sheet5')
SHEETS_TIMEOUT_SECONDS = float(os.getenv('SHEETS_TIMEOUT_SECONDS', '15'))

# Document store
DOCUMENT_STORE_ENABLED = os.getenv('DOCUMENT_STORE_ENABLED', 'true').lower() != 'false'
DOCUMENT_STORE_TIMEOUT_SECONDS = float(os.getenv('DOCUMENT_STORE_TIMEOUT_SECONDS', '5'))
BUSINESS_ID_PREFIX = os.getenv('BUSINESS_ID_PREFIX', 'CG')
BUSINESS_ID_WIDTH = int(os.getenv('BUSINESS_ID_WIDTH', '5'))

# Pending-write retry queue
RETRY_POLL_INTERVAL_SECONDS = float(os.getenv('RETRY_POLL_INTERVAL_SECONDS', '10'))
RETRY_MAX_ATTEMPTS = int(os.getenv('RETRY_MAX_ATTEMPTS', '5'))
RETRY_BACKOFF_SCHEDULE = [
    float(step) for step in os.getenv('RETRY_BACKOFF_SCHEDULE', '0,15,60,300,900').split(',')
]

# Lease lock
LOCK_POLL_INTERVAL_SECONDS = float(os.getenv('LOCK_POLL_INTERVAL_SECONDS', '0.05'))
LOCK_MAX_ATTEMPTS = int(os.getenv('LOCK_MAX_ATTEMPTS', '60'))
LOCK_TTL_SECONDS = int(os.getenv('LOCK_TTL_SECONDS', '30'))
LOCK_STORE_TIMEOUT_SECONDS = float(os.getenv('LOCK_STORE_TIMEOUT_SECONDS', '2'))
LOCK_STRICT = os.getenv('LOCK_STRICT', 'false').lower() == 'true'

# Phone identity
PHONE_MATCH_DIGITS = int(os.getenv('PHONE_MATCH_DIGITS', '10'))
PHONE_MIN_DIGITS = int(os.getenv('PHONE_MIN_DIGITS', '10'))

# Inbound event de-duplication window
EVENT_DEDUP_WINDOW_SECONDS = float(os.getenv('EVENT_DEDUP_WINDOW_SECONDS', '3600'))

# Calling platform contact sync
CALLING_API_URL = os.getenv('CALLING_API_URL', 'https://api-smartflo.tatateleservices.com')
CALLING_API_KEY = os.getenv('CALLING_API_KEY', '')
CALLING_CONTACT_GROUP_ID = os.getenv('CALLING_CONTACT_GROUP_ID', '')
CALLING_TIMEOUT_SECONDS = float(os.getenv('CALLING_TIMEOUT_SECONDS', '10'))

# Webhook authentication (optional)
WEBHOOK_SHARED_SECRET = os.getenv('WEBHOOK_SHARED_SECRET', None)

# Logging configuration
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {message}',
            'style': '{',
        },
        'raw': {
            'format': '{message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
        'dead_letter': {
            'class': 'logging.StreamHandler',
            'formatter': 'raw',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'INFO',
    },
    'loggers': {
        'crm': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
        'crm.dead_letter': {
            'handlers': ['dead_letter'],
            'level': 'CRITICAL',
            'propagate': False,
        },
    },
}

# REST Framework configuration
REST_FRAMEWORK = {
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
    'DEFAULT_PARSER_CLASSES': [
        'rest_framework.parsers.JSONParser',
    ],
}

if not RUNNING_TESTS:
    _missing = [
        name for name in ('SPREADSHEET_ID', 'SHEETS_ACCESS_TOKEN', 'CALLING_API_KEY')
        if not globals()[name]
    ]
    if _missing:
        logger.warning(f"Missing environment variables: {_missing}")
