import os
from logging.config import fileConfig

from dotenv import load_dotenv
from sqlalchemy import engine_from_config, pool
from alembic import context

from cost_metering.database.models import Base
from cost_metering.config import settings

load_dotenv()

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

SYNC_DRIVERS = {
    "postgres": "postgresql+psycopg2",
    "postgresql": "postgresql+psycopg2",
    "postgresql+asyncpg": "postgresql+psycopg2",
    "sqlite+aiosqlite": "sqlite",
}


def to_sync_url(database_url: str) -> str:
    """Swap the async driver for the synchronous one migrations run on"""
    scheme, sep, rest = database_url.partition("://")
    return f"{SYNC_DRIVERS.get(scheme, scheme)}{sep}{rest}"


def include_object(obj, name, type_, reflected, compare_to):
    # The ledger may share a database with other services; only diff our tables
    if type_ == "table":
        return name in target_metadata.tables
    return True


def configure_context(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        include_object=include_object,
        compare_type=True,
        compare_server_default=True,
        **kwargs
    )


database_url = config.get_main_option("sqlalchemy.url") or os.getenv("DATABASE_URL") or settings.database_url
config.set_main_option("sqlalchemy.url", to_sync_url(database_url))


def run_migrations_offline() -> None:
    """Emit SQL for the cost tables without connecting"""
    configure_context(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        # SQLite cannot ALTER most constraints in place
        configure_context(connection=connection, render_as_batch=connection.dialect.name == "sqlite")

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
