import re
from datetime import timedelta
from pathlib import Path

import structlog
from celery.schedules import crontab
from decouple import Csv, config
from dj_database_url import parse as db_url

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

# Security - Fail Fast: no default forces explicit configuration
SECRET_KEY = config("SECRET_KEY")

DEBUG = config("DEBUG", default=False, cast=bool)

ALLOWED_HOSTS = config("ALLOWED_HOSTS", default="127.0.0.1,localhost", cast=Csv())

# Application definition
INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    # Third-party
    "rest_framework",
    "corsheaders",
    "django_filters",
    "drf_spectacular",
    # Local Apps (Modules)
    "modules.core",
    "modules.tenants",
    "modules.inventory",
    "modules.carts",
    "modules.promotions",
    "modules.shipping",
    "modules.orders",
    "modules.payments",
    "modules.loyalty",
    "modules.notifications",
    "modules.commissions",
]

MIDDLEWARE = [
    "corsheaders.middleware.CorsMiddleware",
    "django.middleware.security.SecurityMiddleware",
    "modules.core.middleware.CorrelationIdMiddleware",
    "modules.tenants.middleware.TenantMiddleware",
    "whitenoise.middleware.WhiteNoiseMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "config.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "config.wsgi.application"

# Database - SQLite for local runs; production sets DATABASE_URL (Postgres/MySQL)
DATABASES = {
    "default": config(
        "DATABASE_URL", default=f'sqlite:///{BASE_DIR / "db.sqlite3"}', cast=db_url
    )
}

# Cache - Redis
REDIS_URL = config("REDIS_URL", default="redis://localhost:6379/0")

CACHES = {
    "default": {
        "BACKEND": "django_redis.cache.RedisCache",
        "LOCATION": REDIS_URL,
        "OPTIONS": {
            "CLIENT_CLASS": "django_redis.client.DefaultClient",
        },
    }
}

# Password validation
AUTH_PASSWORD_VALIDATORS = [
    {
        "NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"
    },
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]

# Internationalization
LANGUAGE_CODE = config("LANGUAGE_CODE", default="en-us")
TIME_ZONE = config("TIME_ZONE", default="Asia/Ho_Chi_Minh")
USE_I18N = True
USE_TZ = True

# ---------------------------------------------------------------------------
# Celery (async tasks via Redis)
# ---------------------------------------------------------------------------
CELERY_BROKER_URL = config("CELERY_BROKER_URL", default="redis://localhost:6379/0")
CELERY_RESULT_BACKEND = config(
    "CELERY_RESULT_BACKEND", default="redis://localhost:6379/0"
)
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = TIME_ZONE

CELERY_BEAT_SCHEDULE = {
    "outbox-dispatch-pending": {
        "task": "core.outbox.dispatch_pending",
        "schedule": config("OUTBOX_POLL_SECONDS", default=10, cast=float),
    },
    "outbox-purge-processed": {
        "task": "core.outbox.purge_processed",
        "schedule": crontab(minute=15, hour=3),
    },
    "orders-expire-unpaid": {
        "task": "orders.expire_unpaid_orders",
        "schedule": crontab(minute="*"),
    },
    "inventory-prune-logs": {
        "task": "inventory.prune_logs",
        "schedule": crontab(minute=45, hour=3),
    },
}

# Static files (CSS, JavaScript, Images)
STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

# Default primary key field type
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# DRF configuration: fail closed, everything requires auth by default
REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework_simplejwt.authentication.JWTAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_THROTTLE_CLASSES": [
        "rest_framework.throttling.AnonRateThrottle",
        "rest_framework.throttling.UserRateThrottle",
        "rest_framework.throttling.ScopedRateThrottle",
    ],
    "DEFAULT_THROTTLE_RATES": {
        "anon": "1000/hour",
        "user": "1000/hour",
        "order_placement": "10/minute",
        "order_listing": "100/minute",
        "payment_webhook": "600/minute",
    },
    "DEFAULT_PAGINATION_CLASS": "modules.core.pagination.StandardResultsSetPagination",
    "PAGE_SIZE": config("DEFAULT_PAGE_SIZE", default=20, cast=int),
    "DEFAULT_FILTER_BACKENDS": ["django_filters.rest_framework.DjangoFilterBackend"],
    "DEFAULT_RENDERER_CLASSES": [
        "rest_framework.renderers.JSONRenderer",
    ],
    "DEFAULT_SCHEMA_CLASS": "drf_spectacular.openapi.AutoSchema",
}

if DEBUG:
    REST_FRAMEWORK["DEFAULT_RENDERER_CLASSES"].append(
        "rest_framework.renderers.BrowsableAPIRenderer"
    )

# ---------------------------------------------------------------------------
# SimpleJWT
# ---------------------------------------------------------------------------
SIMPLE_JWT = {
    "ALGORITHM": "HS256",
    "SIGNING_KEY": SECRET_KEY,
    "AUTH_HEADER_TYPES": ("Bearer",),
    "ACCESS_TOKEN_LIFETIME": timedelta(minutes=15),
    "REFRESH_TOKEN_LIFETIME": timedelta(days=1),
}

# CORS
CORS_ALLOWED_ORIGINS = config(
    "CORS_ALLOWED_ORIGINS", default="http://localhost:3000", cast=Csv()
)

# CSRF
CSRF_TRUSTED_ORIGINS = config(
    "CSRF_TRUSTED_ORIGINS", default="http://localhost:3000", cast=Csv()
)

# ---------------------------------------------------------------------------
# drf-spectacular (OpenAPI / Swagger)
# ---------------------------------------------------------------------------
SPECTACULAR_SETTINGS = {
    "TITLE": "Commerce Backend API",
    "DESCRIPTION": "Order placement, payment webhooks and fulfilment for multi-tenant storefronts.",
    "VERSION": "1.0.0",
    "SERVE_INCLUDE_SCHEMA": False,
    "SECURITY": [{"BearerAuth": []}],
    "APPEND_COMPONENTS": {
        "securitySchemes": {
            "BearerAuth": {
                "type": "http",
                "scheme": "bearer",
                "bearerFormat": "JWT",
            }
        }
    },
}

# ---------------------------------------------------------------------------
# Orders / Inventory
# ---------------------------------------------------------------------------
ORDER_PLACEMENT_TIMEOUT_SECONDS = config(
    "ORDER_PLACEMENT_TIMEOUT_SECONDS", default=5, cast=int
)
PAYMENT_TIMEOUT_MINUTES = config("PAYMENT_TIMEOUT_MINUTES", default=15, cast=int)
DEFAULT_SHIPPING_FEE = config("DEFAULT_SHIPPING_FEE", default="30000")
INVENTORY_LOG_RETENTION_DAYS = config(
    "INVENTORY_LOG_RETENTION_DAYS", default=365, cast=int
)

# ---------------------------------------------------------------------------
# Transactional Outbox
# ---------------------------------------------------------------------------
OUTBOX_BATCH_SIZE = config("OUTBOX_BATCH_SIZE", default=50, cast=int)
OUTBOX_MAX_ATTEMPTS = config("OUTBOX_MAX_ATTEMPTS", default=5, cast=int)
OUTBOX_RETRY_BASE_SECONDS = config("OUTBOX_RETRY_BASE_SECONDS", default=30, cast=int)
OUTBOX_RETENTION_DAYS = config("OUTBOX_RETENTION_DAYS", default=7, cast=int)
OUTBOX_DISPATCH_ON_COMMIT = config(
    "OUTBOX_DISPATCH_ON_COMMIT", default=True, cast=bool
)

# ---------------------------------------------------------------------------
# Commissions / Loyalty
# ---------------------------------------------------------------------------
DEFAULT_PLATFORM_FEE_PERCENT = config("DEFAULT_PLATFORM_FEE_PERCENT", default="1.0")
DEFAULT_COMMISSION_RATE_PERCENT = config(
    "DEFAULT_COMMISSION_RATE_PERCENT", default="5"
)
AFFILIATE_TIER_1_RATE = config("AFFILIATE_TIER_1_RATE", default="0.05")
AFFILIATE_TIER_2_RATE = config("AFFILIATE_TIER_2_RATE", default="0.02")
LOYALTY_AMOUNT_PER_POINT = config("LOYALTY_AMOUNT_PER_POINT", default=1000, cast=int)

# ---------------------------------------------------------------------------
# Payment gateways
# ---------------------------------------------------------------------------
VNPAY_TMN_CODE = config("VNPAY_TMN_CODE", default="")
VNPAY_HASH_SECRET = config("VNPAY_HASH_SECRET", default="")
VNPAY_URL = config(
    "VNPAY_URL", default="https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
)
VNPAY_RETURN_URL = config(
    "VNPAY_RETURN_URL", default="http://localhost:3000/checkout/vnpay-return"
)

MOMO_PARTNER_CODE = config("MOMO_PARTNER_CODE", default="")
MOMO_ACCESS_KEY = config("MOMO_ACCESS_KEY", default="")
MOMO_SECRET_KEY = config("MOMO_SECRET_KEY", default="")
MOMO_API_URL = config(
    "MOMO_API_URL", default="https://test-payment.momo.vn/v2/gateway/api/create"
)
MOMO_REDIRECT_URL = config(
    "MOMO_REDIRECT_URL", default="http://localhost:3000/checkout/momo-return"
)
MOMO_IPN_URL = config(
    "MOMO_IPN_URL", default="http://localhost:8000/api/v1/payments/momo/ipn/"
)
PAYMENT_HTTP_TIMEOUT_SECONDS = config(
    "PAYMENT_HTTP_TIMEOUT_SECONDS", default=10, cast=float
)

# ---------------------------------------------------------------------------
# Shipping carrier
# ---------------------------------------------------------------------------
SHIPPING_API_URL = config(
    "SHIPPING_API_URL",
    default="https://dev-online-gateway.ghn.vn/shiip/public-api",
)
SHIPPING_API_TOKEN = config("SHIPPING_API_TOKEN", default="")
SHIPPING_SHOP_ID = config("SHIPPING_SHOP_ID", default="")
SHIPPING_WEBHOOK_TOKEN = config("SHIPPING_WEBHOOK_TOKEN", default="")
SHIPPING_TIMEOUT_SECONDS = config("SHIPPING_TIMEOUT_SECONDS", default=5, cast=float)
SHIPPING_DEFAULT_WEIGHT_GRAMS = config(
    "SHIPPING_DEFAULT_WEIGHT_GRAMS", default=500, cast=int
)

# ---------------------------------------------------------------------------
# Structured Logging (structlog + Django LOGGING)
# ---------------------------------------------------------------------------
SENSITIVE_PATTERN = re.compile(
    r"(\b\d{13,19}\b)"  # card / account numbers
    r"|(password|passwd|secret|token|authorization|signature|securehash)"
    r"""([=:]\s*["']?)([^\s,}"'&]+)""",
    re.IGNORECASE,
)

SENSITIVE_KEYS = frozenset(
    {
        "password",
        "secret",
        "secret_key",
        "access_key",
        "token",
        "signature",
        "vnp_securehash",
        "authorization",
    }
)


def mask_sensitive_data(_, __, event_dict):
    """Processor that masks secrets, signatures and tokens in log values."""
    for key, value in list(event_dict.items()):
        if key.lower() in SENSITIVE_KEYS and value:
            event_dict[key] = "***MASKED***"
        elif isinstance(value, str):
            event_dict[key] = SENSITIVE_PATTERN.sub("***MASKED***", value)
    return event_dict


# Shared processors used by both structlog and stdlib logging
_shared_processors = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso"),
    mask_sensitive_data,
    structlog.processors.StackInfoRenderer(),
    structlog.processors.UnicodeDecoder(),
]

structlog.configure(
    processors=[
        *_shared_processors,
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ],
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "json": {
            "()": structlog.stdlib.ProcessorFormatter,
            "processors": [
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            "foreign_pre_chain": _shared_processors,
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": config("LOG_LEVEL", default="INFO"),
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "django.server": {
            "handlers": ["console"],
            "level": "WARNING",
            "propagate": False,
        },
    },
}
