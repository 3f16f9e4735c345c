"""Registro Django settings."""

import os
from pathlib import Path
from typing import Iterable

import django
from django.core.exceptions import ImproperlyConfigured
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(BASE_DIR / ".env")


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.environ.get(name) or "").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return default


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        raise ImproperlyConfigured(f"{name} must be an integer, got {raw!r}.")


def _env_list(name: str, default: Iterable[str] | None = None) -> list[str]:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return list(default or [])
    return [item.strip() for item in raw.split(",") if item.strip()]


DEBUG = _env_bool("DJANGO_DEBUG", default=True)  # default True for local; set False in production
SECRET_KEY = (os.environ.get("DJANGO_SECRET_KEY") or "").strip() or "dev-change-in-production-registro"
if not DEBUG and not (os.environ.get("DJANGO_SECRET_KEY") or "").strip():
    raise ImproperlyConfigured("DJANGO_SECRET_KEY must be set when DJANGO_DEBUG is false.")

ALLOWED_HOSTS = _env_list(
    "DJANGO_ALLOWED_HOSTS",
    default=[
        "registro.pelicanotv.com",
        "localhost",
        "127.0.0.1",
    ],
)

CSRF_TRUSTED_ORIGINS = _env_list(
    "DJANGO_CSRF_TRUSTED_ORIGINS",
    default=["https://registro.pelicanotv.com"],
)

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'bingo',
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

ROOT_URLCONF = 'registro.urls'

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

WSGI_APPLICATION = 'registro.wsgi.application'

# SQLite: timeout reduces lock wait; WAL via connection_created in bingo.apps.
# Campaign tickers write from background threads; PostgreSQL is preferred in production.
DATABASES = {
    'default': {
        'ENGINE': os.environ.get('DB_ENGINE', 'django.db.backends.sqlite3'),
        'NAME': os.environ.get('DB_NAME') or (BASE_DIR / 'db.sqlite3'),
        'USER': os.environ.get('DB_USER', ''),
        'PASSWORD': os.environ.get('DB_PASSWORD', ''),
        'HOST': os.environ.get('DB_HOST', ''),
        'PORT': os.environ.get('DB_PORT', ''),
        'CONN_MAX_AGE': 0,
    }
}
if DATABASES['default']['ENGINE'].endswith('sqlite3'):
    DATABASES['default']['OPTIONS'] = {'timeout': 15}
    if django.VERSION >= (5, 1):
        # Writers take the lock at BEGIN so busy_timeout applies to table claims.
        DATABASES['default']['OPTIONS']['transaction_mode'] = 'IMMEDIATE'
    # File-backed test DB: threaded tests need separate connections to one store.
    DATABASES['default']['TEST'] = {
        'NAME': os.environ.get('DB_TEST_NAME') or str(BASE_DIR / 'test_db.sqlite3'),
    }

AUTH_PASSWORD_VALIDATORS = [
    {'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator'},
    {'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator'},
    {'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator'},
    {'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator'},
]

LANGUAGE_CODE = 'es'
TIME_ZONE = 'America/Guayaquil'
USE_I18N = True
USE_TZ = True

STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

# Media: uploaded table photos and campaign images.
MEDIA_URL = os.environ.get('MEDIA_URL', '/media/')
MEDIA_ROOT = BASE_DIR / 'media'

SECURE_PROXY_SSL_HEADER = ('HTTP_X_FORWARDED_PROTO', 'https')

# Security defaults
SESSION_COOKIE_SECURE = not DEBUG
CSRF_COOKIE_SECURE = not DEBUG
SESSION_COOKIE_HTTPONLY = True
CSRF_COOKIE_HTTPONLY = True
SECURE_CONTENT_TYPE_NOSNIFF = True
X_FRAME_OPTIONS = "DENY"
SECURE_SSL_REDIRECT = _env_bool("DJANGO_SECURE_SSL_REDIRECT", default=not DEBUG)

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# WhatsApp gateway (REST bridge in front of the WhatsApp Web session).
BINGO_GATEWAY_URL = (os.environ.get('BINGO_GATEWAY_URL') or 'http://127.0.0.1:3001').strip().rstrip('/')
BINGO_GATEWAY_TOKEN = (os.environ.get('BINGO_GATEWAY_TOKEN') or '').strip()
BINGO_GATEWAY_TIMEOUT = _env_int('BINGO_GATEWAY_TIMEOUT', 30)

# Public base URL used to build absolute links for stored files.
BINGO_PUBLIC_BASE_URL = (os.environ.get('BINGO_PUBLIC_BASE_URL') or 'https://registro.pelicanotv.com').strip().rstrip('/')
BINGO_TABLE_FILE_BASE_URL = (os.environ.get('BINGO_TABLE_FILE_BASE_URL') or f'{BINGO_PUBLIC_BASE_URL}/tablas').strip().rstrip('/')
BINGO_TABLE_FILE_FALLBACK_BASES = _env_list(
    'BINGO_TABLE_FILE_FALLBACK_BASES',
    default=['https://pelicanotvcanal.com'],
)

BINGO_OTP_TTL_MINUTES = _env_int('BINGO_OTP_TTL_MINUTES', 5)
BINGO_TABLE_ARTIFACT_DELAY_SECONDS = _env_int('BINGO_TABLE_ARTIFACT_DELAY_SECONDS', 8)
BINGO_EXPOSE_DEBUG_OTP = _env_bool('BINGO_EXPOSE_DEBUG_OTP', default=False)

# Document classifier: vision model used to transcribe uploaded table photos.
OPENAI_API_KEY = (os.environ.get('OPENAI_API_KEY') or '').strip()
BINGO_OCR_MODEL = (os.environ.get('BINGO_OCR_MODEL') or 'gpt-4o-mini').strip()

LOGS_DIR = BASE_DIR / 'logs'
LOGS_DIR.mkdir(exist_ok=True)

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} [{levelname}] {name}: {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
        'campaigns_file': {
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': str(LOGS_DIR / 'campaigns.log'),
            'maxBytes': 5 * 1024 * 1024,  # 5 MB
            'backupCount': 3,
            'formatter': 'verbose',
            'encoding': 'utf-8',
        },
        'transport_file': {
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': str(LOGS_DIR / 'transport.log'),
            'maxBytes': 2 * 1024 * 1024,  # 2 MB
            'backupCount': 2,
            'formatter': 'verbose',
            'encoding': 'utf-8',
        },
    },
    'loggers': {
        'bingo.services.campaigns': {
            'handlers': ['console', 'campaigns_file'],
            'level': 'INFO',
            'propagate': False,
        },
        'bingo.services.transport': {
            'handlers': ['console', 'transport_file'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}
