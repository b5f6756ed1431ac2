"""Migrations for the payment ledger tables.

The database URL comes from the app settings unless overridden with
``alembic -x database_url=...``. Online runs go through the same engine
factory as the service, so Postgres URLs get the asyncpg driver and
sslmode handling.
"""
import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy.engine import Connection

from ledger.infra.db.base import Base, async_pg_url_without_sslmode, normalize_async_pg_url
from ledger.infra.db.models import payments  # noqa: F401  registers the ledger tables
from ledger.infra.db.session import create_engine
from ledger.settings import settings

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _database_url() -> str:
    return context.get_x_argument(as_dictionary=True).get("database_url") or settings.database_url


def _configure(**kwargs) -> None:
    context.configure(target_metadata=target_metadata, compare_type=True, **kwargs)


def run_migrations_offline() -> None:
    """Emit the migration SQL without connecting."""
    _configure(
        url=async_pg_url_without_sslmode(normalize_async_pg_url(_database_url())),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def _run_with_connection(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = create_engine(_database_url())
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_run_with_connection)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
