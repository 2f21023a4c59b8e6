import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'y', 'on')


def env_list(name, default):
    value = os.environ.get(name)
    if not value:
        return list(default)
    return [item.strip() for item in value.split(',') if item.strip()]


SECRET_KEY = os.environ.get('LIBRARYHUB_SECRET_KEY', 'django-insecure-libraryhub-dev-key')
DEBUG = env_bool('LIBRARYHUB_DEBUG', True)
ALLOWED_HOSTS = env_list('LIBRARYHUB_ALLOWED_HOSTS', ['localhost', '127.0.0.1', 'testserver'])

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'import_export',
    'circulation',
    'notifications',
    'relay',
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

ROOT_URLCONF = 'libraryhub.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'libraryhub.wsgi.application'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.environ.get('LIBRARYHUB_DB_PATH', str(BASE_DIR / 'db.sqlite3')),
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

LANGUAGE_CODE = 'en-us'
TIME_ZONE = os.environ.get('LIBRARYHUB_TIME_ZONE', 'Asia/Manila')
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'
LOGIN_URL = 'admin:login'

# Record store (hosted realtime database). Without a database URL the
# process-local memory backend is used.
FIREBASE_DATABASE_URL = os.environ.get('FIREBASE_DATABASE_URL', '')
RECORD_STORE = {
    'BACKEND': 'firebase' if FIREBASE_DATABASE_URL else 'memory',
    'DATABASE_URL': FIREBASE_DATABASE_URL,
    'AUTH_TOKEN': os.environ.get('FIREBASE_AUTH_TOKEN', ''),
    'TIMEOUT': float(os.environ.get('FIREBASE_TIMEOUT', '10')),
}

# Outbound mail used by the relay endpoints
EMAIL_BACKEND = os.environ.get('EMAIL_BACKEND', 'django.core.mail.backends.smtp.EmailBackend')
EMAIL_HOST = os.environ.get('EMAIL_HOST', 'smtp.gmail.com')
EMAIL_PORT = int(os.environ.get('EMAIL_PORT', '587'))
EMAIL_USE_TLS = env_bool('EMAIL_USE_TLS', True)
EMAIL_HOST_USER = os.environ.get('EMAIL_USER', '')
EMAIL_HOST_PASSWORD = os.environ.get('EMAIL_APP_PASSWORD', '')
DEFAULT_FROM_EMAIL = os.environ.get(
    'DEFAULT_FROM_EMAIL', f'Library Management System <{EMAIL_HOST_USER or "library@localhost"}>'
)
RELAY_ANNOUNCEMENT_BATCH_SIZE = 50
RELAY_TEST_RECIPIENT = os.environ.get('RELAY_TEST_RECIPIENT', EMAIL_HOST_USER)

# Notification delivery, tried in order
NOTIFICATION_CHANNELS = env_list('LIBRARYHUB_NOTIFICATION_CHANNELS', ['relay', 'emailjs'])
MAIL_RELAY_URL = os.environ.get('MAIL_RELAY_URL', 'http://localhost:3001')
MAIL_RELAY_TIMEOUT = float(os.environ.get('MAIL_RELAY_TIMEOUT', '10'))
EMAILJS = {
    'API_URL': os.environ.get('EMAILJS_API_URL', 'https://api.emailjs.com/api/v1.0/email/send'),
    'SERVICE_ID': os.environ.get('EMAILJS_SERVICE_ID', ''),
    'TEMPLATE_ID': os.environ.get('EMAILJS_TEMPLATE_ID', 'template_announcement'),
    'PUBLIC_KEY': os.environ.get('EMAILJS_PUBLIC_KEY', ''),
}

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name}: {message}',
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
        'level': 'WARNING',
    },
    'loggers': {
        'circulation': {'level': os.environ.get('LIBRARYHUB_LOG_LEVEL', 'INFO')},
        'notifications': {'level': os.environ.get('LIBRARYHUB_LOG_LEVEL', 'INFO')},
        'records': {'level': os.environ.get('LIBRARYHUB_LOG_LEVEL', 'INFO')},
        'relay': {'level': os.environ.get('LIBRARYHUB_LOG_LEVEL', 'INFO')},
    },
}
