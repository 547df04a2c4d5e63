"""Alembic migration environment for the reference content store.

The database URL comes from the same settings chain the CLI uses
(``.env`` / environment / ``config.toml``), with ``.env.local`` loaded last so
local overrides win. Async driver suffixes are swapped for sync drivers.
"""

import pathlib
from logging.config import fileConfig

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import create_engine

_ROOT = pathlib.Path(__file__).resolve().parents[1]

load_dotenv(dotenv_path=_ROOT / ".env")
if (_ROOT / ".env.local").exists():
    load_dotenv(dotenv_path=_ROOT / ".env.local", override=True)

from Contentporter import models  # noqa: F401,E402
from Contentporter.config import load_settings  # noqa: E402
from Contentporter.db import Base  # noqa: E402

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)
target_metadata = Base.metadata


def _sync_db_url() -> str:
    """Map the configured async URL onto a sync driver.

    - Postgres: ``postgresql+psycopg://`` (psycopg v3)
    - SQLite: builtin pysqlite
    """
    url = load_settings().database_url
    if url.startswith("postgresql"):
        rest = url.split("://", 1)[1]
        return f"postgresql+psycopg://{rest}"
    return url.replace("+aiosqlite", "")


def run_migrations_offline() -> None:
    context.configure(url=_sync_db_url(), target_metadata=target_metadata, literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = create_engine(_sync_db_url())
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
