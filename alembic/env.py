"""
Alembic environment for the migration service schema.

The database URL comes from the same resolver the app uses
(MIGRATE_DATABASE_URL, then config/migrate_config*.json, then data/migrate.db)
unless alembic.ini sets sqlalchemy.url explicitly.
"""

from __future__ import annotations

import sys
from logging.config import fileConfig
from pathlib import Path

from sqlalchemy import create_engine
from sqlmodel import SQLModel

from alembic import context

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

import src.db.models as _models  # noqa: F401, E402
from src.db.engine import _make_absolute_sqlite_url, _resolve_db_url  # noqa: E402

target_metadata = SQLModel.metadata


def _db_url() -> str:
    url = config.get_main_option("sqlalchemy.url", default="")
    if not url or url.startswith("driver://"):
        url = _resolve_db_url()
    return _make_absolute_sqlite_url(url)


def run_migrations_offline() -> None:
    context.configure(
        url=_db_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(_db_url())
    with engine.connect() as connection:
        # SQLite cannot ALTER most columns in place; batch mode rebuilds the table
        context.configure(connection=connection, target_metadata=target_metadata, render_as_batch=True)
        with context.begin_transaction():
            context.run_migrations()
    engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
