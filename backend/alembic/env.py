"""
Alembic environment
===================
Migrations run on a synchronous engine; the asyncpg URL used by the
application is rewritten to psycopg2 here.

Usage:
  alembic upgrade head
  alembic revision --autogenerate -m "description"
"""
import os
from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool
from alembic import context

# ── alembic.ini logging ──────────────────────────────────────────────────
config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# ── ORM metadata ─────────────────────────────────────────────────────────
# importing the schemas package registers every table for autogenerate
from hestia.db.base import Base  # noqa: E402
import hestia.db.schemas  # noqa: E402,F401

target_metadata = Base.metadata

# ── DATABASE_URL override ────────────────────────────────────────────────
_db_url = os.environ.get(
    "DATABASE_URL",
    config.get_main_option("sqlalchemy.url", ""),
)
_sync_url = (
    _db_url
    .replace("postgresql+asyncpg://", "postgresql+psycopg2://")
    .replace("sqlite+aiosqlite:///", "sqlite:///")
)
config.set_main_option("sqlalchemy.url", _sync_url)


def run_migrations_offline() -> None:
    """
    Offline mode: emit SQL without a connection.
    Usage: alembic upgrade head --sql
    """
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=False,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """
    Online mode: apply to the configured database.
    Usage: alembic upgrade head
    """
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            compare_server_default=True,
            # SQLite has no ALTER COLUMN
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
