from .base import *

DEBUG = False

SECRET_KEY = "test-secret-key"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

ALLOWED_HOSTS = ["testserver"]

CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BROKER_URL = "memory://"

MPESA_CONSUMER_KEY = "test-key"
MPESA_CONSUMER_SECRET = "test-secret"
MPESA_PASSKEY = "test-passkey"
MPESA_SHORTCODE = "174379"
MPESA_ENV = "sandbox"
MPESA_CALLBACK_BASE_URL = "https://shop.example.com"
