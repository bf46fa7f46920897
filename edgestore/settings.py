"""
Django settings for the edge device metadata store.

Only the database and logging are configured; the project serves no
HTTP traffic.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("EDGE_SECRET_KEY", "edgestore-local-only")

DEBUG = os.environ.get("EDGE_DEBUG", "false").lower() == "true"

INSTALLED_APPS = [
    "devicetwin",
]

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("EDGE_DB_PATH", str(BASE_DIR / "edge.sqlite3")),
        "OPTIONS": {
            "timeout": 20,
        },
        # File-backed so test threads get separate connections that wait on
        # the busy timeout instead of failing on shared-cache table locks.
        "TEST": {
            "NAME": os.environ.get(
                "EDGE_TEST_DB_PATH", str(BASE_DIR / "test_edge.sqlite3")
            ),
        },
    }
}

# Alias the device metadata store runs its statements on
DEVICE_META_DB_ALIAS = os.environ.get("DEVICE_META_DB_ALIAS", "default")

USE_TZ = True

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        },
    },
    "loggers": {
        "devicetwin": {
            "handlers": ["console"],
            "level": os.environ.get("EDGE_LOG_LEVEL", "INFO"),
        },
    },
}
