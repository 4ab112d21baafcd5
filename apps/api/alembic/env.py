"""
Alembic environment: migraciones del ledger.
Usa DATABASE_SYNC_URL (psycopg2); si está vacía se deriva de DATABASE_URL
cambiando el driver asíncrono por el síncrono.
"""

import os
import sys
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

# Añadir apps/api al path para importar modelos y config
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from core.config import get_settings  # noqa: E402
from models.base import Base  # noqa: E402

# Importar todos los modelos para que Alembic los detecte en autogenerate
import models  # noqa: F401, E402

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

_ASYNC_DRIVERS = {"+asyncpg": "+psycopg2", "+aiosqlite": ""}


def _sync_url() -> str:
    settings = get_settings()
    if settings.DATABASE_SYNC_URL:
        return settings.DATABASE_SYNC_URL
    url = settings.DATABASE_URL
    for async_driver, sync_driver in _ASYNC_DRIVERS.items():
        url = url.replace(async_driver, sync_driver)
    return url


config.set_main_option("sqlalchemy.url", _sync_url())


def run_migrations_offline() -> None:
    """Genera SQL sin conectarse a la BD (útil para revisión o CI)."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
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
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            # SQLite no soporta ALTER de constraints: batch mode
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
