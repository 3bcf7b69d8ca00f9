"""Django settings for the storefront web project.

Values are read from the environment with development defaults. Application
code reads optional knobs with ``getattr(settings, NAME, default)`` so tests
can override them through the pytest-django ``settings`` fixture.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-secret-key")
DEBUG = os.getenv("DJANGO_DEBUG", "0") == "1"
ALLOWED_HOSTS = os.getenv("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",")

INSTALLED_APPS = [
    "rest_framework",
    "apps.cart",
    "apps.checkout",
    "apps.monitoring",
]

MIDDLEWARE = [
    "gateway.middleware.RequestIdMiddleware",
    "gateway.middleware.CartScopeMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "config.urls"
WSGI_APPLICATION = "config.wsgi.application"

# The web tier keeps no relational state; carts live in the cache.
DATABASES = {}

CACHES = {
    "default": {
        "BACKEND": os.getenv("CACHE_BACKEND", "django.core.cache.backends.locmem.LocMemCache"),
        "LOCATION": os.getenv("CACHE_LOCATION", "storefront"),
    }
}

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.AllowAny"],
    "UNAUTHENTICATED_USER": None,
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_PARSER_CLASSES": ["rest_framework.parsers.JSONParser"],
    "DEFAULT_THROTTLE_RATES": {
        "cart_read": os.getenv("THROTTLE_CART_READ", "300/min"),
        "cart_write": os.getenv("THROTTLE_CART_WRITE", "120/min"),
    },
}

USE_TZ = True
TIME_ZONE = "UTC"

# ---- Cart ----
CART_STORAGE_KEY = os.getenv("CART_STORAGE_KEY", "storefront_cart")
CART_COOKIE_NAME = os.getenv("CART_COOKIE_NAME", "cart_id")
CART_COOKIE_MAX_AGE = int(os.getenv("CART_COOKIE_MAX_AGE", str(60 * 60 * 24 * 30)))
CART_STORAGE_TIMEOUT = int(os.getenv("CART_STORAGE_TIMEOUT", str(60 * 60 * 24 * 30)))

# ---- Downstream services ----
USE_HTTP_ADAPTERS = os.getenv("USE_HTTP_ADAPTERS", "1") == "1"
ORDERS_BASE_URL = os.getenv("ORDERS_BASE_URL", "http://orders:9002")
PAYMENTS_BASE_URL = os.getenv("PAYMENTS_BASE_URL", "http://payments:9003")
SHIPPING_BASE_URL = os.getenv("SHIPPING_BASE_URL", "http://shipping:9004")

HTTP_TIMEOUT_SECS = float(os.getenv("HTTP_TIMEOUT_SECS", "5"))
HTTP_RETRY_MAX = int(os.getenv("HTTP_RETRY_MAX", "3"))
HTTP_RETRY_BACKOFF_BASE = float(os.getenv("HTTP_RETRY_BACKOFF_BASE", "0.15"))
HTTP_RETRY_MAX_SLEEP = float(os.getenv("HTTP_RETRY_MAX_SLEEP", "0.5"))
HTTP_CIRCUIT_FAIL_THRESHOLD = int(os.getenv("HTTP_CIRCUIT_FAIL_THRESHOLD", "5"))
HTTP_CIRCUIT_RESET_TIMEOUT = float(os.getenv("HTTP_CIRCUIT_RESET_TIMEOUT", "30"))

# ---- Checkout ----
CHECKOUT_CURRENCY = os.getenv("CHECKOUT_CURRENCY", "USD")
SAFEKEY_POLL_INTERVAL_SECS = float(os.getenv("SAFEKEY_POLL_INTERVAL_SECS", "2"))
SAFEKEY_AUTH_TIMEOUT_SECS = float(os.getenv("SAFEKEY_AUTH_TIMEOUT_SECS", "120"))
CRYPTO_POLL_INTERVAL_SECS = float(os.getenv("CRYPTO_POLL_INTERVAL_SECS", "5"))
CRYPTO_POLL_CEILING_SECS = float(os.getenv("CRYPTO_POLL_CEILING_SECS", str(30 * 60)))

APPLE_PAY = {
    "merchant_name": os.getenv("APPLE_PAY_MERCHANT_NAME", "Storefront"),
    "country_code": os.getenv("APPLE_PAY_COUNTRY_CODE", "US"),
    "supported_networks": ["visa", "masterCard", "amex", "discover"],
    "domain_name": os.getenv("APPLE_PAY_DOMAIN", "localhost"),
}
GOOGLE_PAY = {
    "environment": os.getenv("GOOGLE_PAY_ENVIRONMENT", "TEST"),
    "merchant_id": os.getenv("GOOGLE_PAY_MERCHANT_ID", "sandbox_merchant"),
    "merchant_name": os.getenv("GOOGLE_PAY_MERCHANT_NAME", "Storefront"),
    "supported_networks": ["VISA", "MASTERCARD", "AMEX", "DISCOVER"],
    "gateway": os.getenv("GOOGLE_PAY_GATEWAY", "stripe"),
    "gateway_merchant_id": os.getenv("GOOGLE_PAY_GATEWAY_MERCHANT_ID", ""),
}

STORE_ADDRESS = {
    "first_name": "Storefront",
    "last_name": "Shipping",
    "address1": os.getenv("STORE_ADDRESS1", "1 Warehouse Way"),
    "address2": "",
    "city": os.getenv("STORE_CITY", "Napa"),
    "state": os.getenv("STORE_STATE", "CA"),
    "postal_code": os.getenv("STORE_POSTAL_CODE", "94559"),
    "country": "US",
    "phone": os.getenv("STORE_PHONE", "555-000-0000"),
}

# ---- Logging ----
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "request_context": {"()": "gateway.logging_filters.RequestIdFilter"},
    },
    "formatters": {
        "json": {
            "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
            "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(cart_scope)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "filters": ["request_context"],
        },
    },
    "loggers": {
        "cart": {"handlers": ["console"], "level": os.getenv("LOG_LEVEL", "INFO"), "propagate": True},
        "checkout": {"handlers": ["console"], "level": os.getenv("LOG_LEVEL", "INFO"), "propagate": True},
    },
}
