import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

import billo.models  # noqa: F401  registers every table on Base.metadata
from billo.core.config import settings
from billo.core.database import Base, CachingDisabledConnection, get_async_url

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _configure(connection) -> None:
    context.configure(connection=connection, target_metadata=Base.metadata, compare_type=True)
    with context.begin_transaction():
        context.run_migrations()


async def migrate() -> None:
    # Migrations go over the direct connection; pgBouncer cannot hold DDL transactions
    engine = create_async_engine(
        get_async_url(settings.direct_database_url or settings.database_url),
        poolclass=NullPool,
        connect_args={"statement_cache_size": 0, "connection_class": CachingDisabledConnection},
    )
    async with engine.connect() as connection:
        await connection.run_sync(_configure)
    await engine.dispose()


if context.is_offline_mode():
    raise SystemExit("billo migrations run online only: alembic upgrade head")
asyncio.run(migrate())
