"""Programmatic Alembic access for the dispatch database.

The migration scripts ship next to the package in the project root, so the
config is built in code from the database URL instead of relying on the
working directory. Repositories call :func:`upgrade_head` on start; a database
that is already at head is left untouched without taking the migration lock.
"""

from __future__ import annotations

import logging
from pathlib import Path

import sqlalchemy as sa
from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy.pool import NullPool

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(db_url: str) -> Config:
    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    # ConfigParser interpolation treats '%' specially; URL-encoded passwords contain it.
    config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    return config


def head_revision(db_url: str) -> str | None:
    return ScriptDirectory.from_config(alembic_config(db_url)).get_current_head()


def current_revision(db_url: str) -> str | None:
    """Revision stamped in the database, None for an empty database."""

    engine = sa.create_engine(db_url, poolclass=NullPool)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def upgrade_head(db_url: str) -> None:
    """Apply migrations up to head unless the database is already there."""

    head = head_revision(db_url)
    current = current_revision(db_url)
    if current is not None and current == head:
        return
    logger.info("Migrating dispatch database from %s to %s", current or "empty", head)
    command.upgrade(alembic_config(db_url), "head")
