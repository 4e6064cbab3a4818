"""Alembic environment for the BellyBox billing store.

The URL comes from ``ALEMBIC_DATABASE_URL`` when set, else from
:class:`~billing_engine.config.EngineSettings` (``BILLING_DATABASE_URL`` or
its default), and is switched to a synchronous driver with
:func:`~billing_engine.state.database.sync_database_url`.

Revisions are tracked in ``billing_alembic_version`` so the billing schema
can share a database with other services.
"""

from __future__ import annotations

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from billing_engine.config import load_settings
from billing_engine.state.database import sync_database_url
from billing_engine.state.tables import Base

VERSION_TABLE = "billing_alembic_version"

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _database_url() -> str:
    url = os.environ.get("ALEMBIC_DATABASE_URL") or load_settings().database_url
    return sync_database_url(url)


def _configure(**kwargs: object) -> None:
    context.configure(
        target_metadata=Base.metadata,
        version_table=VERSION_TABLE,
        compare_type=True,
        compare_server_default=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Write the migration SQL without connecting (``alembic upgrade --sql``)."""
    _configure(url=_database_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(_database_url(), poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            # SQLite cannot ALTER most constraints in place.
            _configure(connection=connection, render_as_batch=connection.dialect.name == "sqlite")
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
