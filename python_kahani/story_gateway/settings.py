"""
Django settings for story_gateway project.
"""
import os
import sys
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

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
    'trials',
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

ROOT_URLCONF = 'story_gateway.urls'

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

ASGI_APPLICATION = 'story_gateway.asgi.application'

RUNNING_TESTS = (
    os.getenv('USE_SQLITE_FOR_TESTS', '').lower() == 'true'
    or any('pytest' in arg for arg in sys.argv)
    or bool(os.getenv('PYTEST_CURRENT_TEST'))
)

# Database configuration
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.postgresql',
        'NAME': os.getenv('DB_NAME', 'story_gateway'),
        'USER': os.getenv('DB_USER', 'postgres'),
        'PASSWORD': os.getenv('DB_PASSWORD', 'postgres'),
        'HOST': os.getenv('DB_HOST', 'localhost'),
        'PORT': os.getenv('DB_PORT', '5432'),
    }
}

# Use SQLite for tests to avoid requiring a running PostgreSQL server
if RUNNING_TESTS:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': os.getenv('SQLITE_NAME', ':memory:'),
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

STATIC_URL = 'static/'
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# Downloaded voice notes land here (Django default storage)
MEDIA_ROOT = os.getenv('MEDIA_ROOT', str(BASE_DIR / 'media'))
MEDIA_URL = 'media/'

# Celery configuration
CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', 'redis://localhost:6379/0')
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'

SCHEDULER_TICK_SECONDS = int(os.getenv('SCHEDULER_TICK_SECONDS', '60'))
CELERY_BEAT_SCHEDULE = {
    'conversation-scheduler-tick': {
        'task': 'trials.tasks.run_scheduler_tick',
        'schedule': float(SCHEDULER_TICK_SECONDS),
    },
}

if RUNNING_TESTS:
    CELERY_BROKER_URL = 'memory://'
    CELERY_RESULT_BACKEND = 'cache+memory://'
    CELERY_TASK_ALWAYS_EAGER = True
    CELERY_TASK_EAGER_PROPAGATES = True

# Twilio WhatsApp configuration
TWILIO_ACCOUNT_SID = os.getenv('TWILIO_ACCOUNT_SID', '')
TWILIO_AUTH_TOKEN = os.getenv('TWILIO_AUTH_TOKEN', '')
TWILIO_WHATSAPP_NUMBER = os.getenv('TWILIO_WHATSAPP_NUMBER', '')
WHATSAPP_BUSINESS_NUMBER = os.getenv(
    'WHATSAPP_BUSINESS_NUMBER_E164',
    TWILIO_WHATSAPP_NUMBER.lstrip('+') or '919876543210'
)
DEFAULT_COUNTRY_CODE = os.getenv('DEFAULT_COUNTRY_CODE', '91')

# Gateway network behaviour
GATEWAY_TIMEOUT_SECONDS = float(os.getenv('GATEWAY_TIMEOUT_SECONDS', '30'))
GATEWAY_RETRY_MAX_ATTEMPTS = int(os.getenv('GATEWAY_RETRY_MAX_ATTEMPTS', '4'))
GATEWAY_RETRY_BASE_DELAY = float(os.getenv('GATEWAY_RETRY_BASE_DELAY', '1.0'))
GATEWAY_RETRY_MAX_DELAY = float(os.getenv('GATEWAY_RETRY_MAX_DELAY', '30'))
MAX_MEDIA_BYTES = int(os.getenv('MAX_MEDIA_BYTES', str(16 * 1024 * 1024)))

# Conversation timing (seconds)
READINESS_RETRY_BASE_SECONDS = int(os.getenv('READINESS_RETRY_BASE_SECONDS', str(6 * 3600)))
READINESS_RETRY_MAX_SECONDS = int(os.getenv('READINESS_RETRY_MAX_SECONDS', str(48 * 3600)))
MAX_READINESS_RETRIES = int(os.getenv('MAX_READINESS_RETRIES', '3'))
QUESTION_REPLY_WINDOW_SECONDS = int(os.getenv('QUESTION_REPLY_WINDOW_SECONDS', str(24 * 3600)))
REMINDER_INTERVAL_SECONDS = int(os.getenv('REMINDER_INTERVAL_SECONDS', str(48 * 3600)))
MAX_QUESTION_REMINDERS = int(os.getenv('MAX_QUESTION_REMINDERS', '2'))
NEXT_QUESTION_DELAY_SECONDS = int(os.getenv('NEXT_QUESTION_DELAY_SECONDS', '0'))
SEND_CLAIM_SECONDS = int(os.getenv('SEND_CLAIM_SECONDS', '120'))
DOWNLOAD_STALE_SECONDS = int(os.getenv('DOWNLOAD_STALE_SECONDS', '600'))

# Story content
STORY_BRAND_NAME = os.getenv('STORY_BRAND_NAME', 'Kahani')
STORY_AGENT_NAME = os.getenv('STORY_AGENT_NAME', 'Vaani')
STORY_QUESTIONS = [
    'What do you remember about your first day of school?',
    'How did your family celebrate Diwali when you were young?',
    'Which song always takes you back, and why?',
    'Tell us about the home you grew up in.',
    'What is one piece of advice you would pass on to your grandchildren?',
]

# Logging configuration
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'INFO',
    },
    'loggers': {
        'trials': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
        'twilio.http_client': {
            'handlers': ['console'],
            'level': 'WARNING',
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
