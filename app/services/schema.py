"""Idempotent provisioning of the bookmarks schema.

Runs once at service start and again whenever a client calls
``POST /api/init-db``. Creating tables that already exist is a no-op, so
concurrent or repeated calls are harmless.
"""

import logging

from sqlalchemy import inspect

from app.extensions import db

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ('user_profiles', 'bookmarks')


def missing_tables():
    existing = set(inspect(db.engine).get_table_names())
    return [name for name in REQUIRED_TABLES if name not in existing]


def ensure_schema() -> bool:
    """Create any missing tables and indexes.

    Returns:
        bool: True if something was created, False if the schema was
        already in place.
    """
    missing = missing_tables()
    if not missing:
        return False

    # Importing registers the models on the metadata
    from app.models import bookmark, user_profile  # noqa: F401

    db.create_all()
    logger.info('Created tables: %s', ', '.join(missing))
    return True
