"""
Settings lookups for the device metadata store.

Values come from the Django settings module, with defaults for anything
the project leaves out.
"""

from django.conf import settings
from django.db import DEFAULT_DB_ALIAS


def get_database_alias() -> str:
    """Database alias the default store issues its statements on."""
    return getattr(settings, "DEVICE_META_DB_ALIAS", DEFAULT_DB_ALIAS)
