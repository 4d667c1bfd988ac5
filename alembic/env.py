# alembic/env.py
"""
Migration environment for the gatherpay schema.

The URL comes from the application settings (`DATABASE_URL`) so migrations
and the running service always target the same database; `sqlalchemy.url`
in alembic.ini is only the local fallback.
"""

from logging.config import fileConfig

from sqlalchemy import create_engine, pool

from alembic import context

from gatherpay.config import settings
from gatherpay.infrastructure.db.models import Base
from gatherpay.infrastructure.db.uow import normalize_database_url

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _database_url() -> str:
    return normalize_database_url(settings.DATABASE_URL or config.get_main_option("sqlalchemy.url"))


def _configure_kwargs(dialect_name: str) -> dict:
    # SQLite cannot ALTER constraints in place; batch mode recreates the table.
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "render_as_batch": dialect_name == "sqlite",
    }


def run_migrations_offline() -> None:
    url = _database_url()
    context.configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_kwargs(url.split(":", 1)[0].split("+", 1)[0]),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(_database_url(), poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            context.configure(connection=connection, **_configure_kwargs(connection.dialect.name))
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
