"""Django settings for the marketplace orders service.

Every tunable is read from the environment with a development default so
the same module serves local runs, containers and the test-suite.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.getenv("SECRET_KEY", "dev-insecure-marketplace-orders")
DEBUG = _env_bool("DEBUG", True)
ALLOWED_HOSTS = [h for h in os.getenv("ALLOWED_HOSTS", "*").split(",") if h]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "rest_framework",
    "apps.orders",
    "apps.monitoring",
]

MIDDLEWARE = [
    "gateway.middleware.RequestContextMiddleware",
    "gateway.middleware.ApiSizeLimitMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "config.urls"
WSGI_APPLICATION = "config.wsgi.application"

# ---- Database ----
if os.getenv("DB_ENGINE", "sqlite") == "postgres":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "HOST": os.getenv("DB_HOST", "orders-db"),
            "PORT": os.getenv("DB_PORT", "5432"),
            "NAME": os.getenv("DB_NAME", "orders"),
            "USER": os.getenv("DB_USER", "orders_user"),
            "PASSWORD": os.getenv("DB_PASSWORD", "orders-pass"),
            "ATOMIC_REQUESTS": False,
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.getenv("DB_NAME", str(BASE_DIR / "db.sqlite3")),
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "UTC"

# ---- DRF ----
REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": [],
    "UNAUTHENTICATED_USER": None,
    "DEFAULT_THROTTLE_RATES": {
        "carts": os.getenv("THROTTLE_CARTS", "600/min"),
        "orders_list": os.getenv("THROTTLE_ORDERS_LIST", "600/min"),
        "orders_create": os.getenv("THROTTLE_ORDERS_CREATE", "120/min"),
        "orders_detail": os.getenv("THROTTLE_ORDERS_DETAIL", "1200/min"),
        "orders_transition": os.getenv("THROTTLE_ORDERS_TRANSITION", "300/min"),
        "payment_poll": os.getenv("THROTTLE_PAYMENT_POLL", "1200/min"),
        "seller_orders": os.getenv("THROTTLE_SELLER_ORDERS", "600/min"),
    },
}

CACHES = {
    "default": {"BACKEND": "django.core.cache.backends.locmem.LocMemCache"},
}

# ---- Payment gateway / adapters ----
USE_HTTP_ADAPTERS = _env_bool("USE_HTTP_ADAPTERS", False)
PAYMENT_GATEWAY_BASE_URL = os.getenv("PAYMENT_GATEWAY_BASE_URL", "http://payments:9002")
PAYMENT_PAGE_URL = os.getenv(
    "PAYMENT_PAGE_URL",
    "http://localhost:9002/pay?orderId={order_id}&buyerId={buyer_id}",
)
PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET", "")

HTTP_TIMEOUT_SECS = float(os.getenv("HTTP_TIMEOUT_SECS", "3.0"))
HTTP_RETRY_MAX = int(os.getenv("HTTP_RETRY_MAX", "3"))
HTTP_RETRY_BACKOFF_BASE = float(os.getenv("HTTP_RETRY_BACKOFF_BASE", "0.15"))
HTTP_RETRY_MAX_SLEEP = float(os.getenv("HTTP_RETRY_MAX_SLEEP", "0.5"))
HTTP_CIRCUIT_FAIL_THRESHOLD = int(os.getenv("HTTP_CIRCUIT_FAIL_THRESHOLD", "5"))
HTTP_CIRCUIT_RESET_TIMEOUT = float(os.getenv("HTTP_CIRCUIT_RESET_TIMEOUT", "30.0"))

# ---- Payment polling ----
PAYMENT_POLL_INTERVAL_SECS = float(os.getenv("PAYMENT_POLL_INTERVAL_SECS", "5"))
PAYMENT_POLL_MAX_ATTEMPTS = int(os.getenv("PAYMENT_POLL_MAX_ATTEMPTS", "60"))
PAYMENT_POLL_ERROR_BUDGET = int(os.getenv("PAYMENT_POLL_ERROR_BUDGET", "5"))

# ---- Inventory / lifecycle policy ----
STOCK_MAX_UNITS = int(os.getenv("STOCK_MAX_UNITS", "1000000"))

# Which order statuses may still be cancelled. Cancelling after "shipped" is a
# business decision; add it here only if returns are handled downstream.
ORDER_CANCELLABLE_STATUSES = [
    s.strip()
    for s in os.getenv("ORDER_CANCELLABLE_STATUSES", "draft,pending_payment,paid,processing").split(",")
    if s.strip()
]

API_MAX_BYTES = int(os.getenv("API_MAX_BYTES", str(1 * 1024 * 1024)))

# ---- Logging ----
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "request_context": {"()": "gateway.logging_filters.RequestContextFilter"},
    },
    "formatters": {
        "json": {
            "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
            "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(user_id)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "filters": ["request_context"],
        },
    },
    "root": {"handlers": ["console"], "level": LOG_LEVEL},
    "loggers": {
        "django": {"handlers": ["console"], "level": os.getenv("DJANGO_LOG_LEVEL", "WARNING"), "propagate": False},
        "apps": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
    },
}
