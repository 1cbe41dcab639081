"""Alembic environment configuration for the pipeline tables."""

from __future__ import annotations

import logging
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool
from sqlalchemy.engine.url import make_url
from sqlmodel import SQLModel

import leadsignal.models  # noqa: F401 - ensure models are imported
from leadsignal.config import settings
from leadsignal.core.database import coerce_sync_database_url

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("leadsignal.alembic")
logger.setLevel(logging.INFO)
target_metadata = SQLModel.metadata


def _resolve_database_config() -> tuple[str, dict]:
    candidates = [
        ("environment variable", os.environ.get("DATABASE_URL")),
        ("alembic.ini", config.get_main_option("sqlalchemy.url")),
        ("app settings", settings.database_url),
    ]
    for source, value in candidates:
        if not value:
            continue
        sync_url, connect_args, _ = coerce_sync_database_url(make_url(value))
        rendered = make_url(sync_url).render_as_string(hide_password=True)
        logger.info("Alembic resolved DATABASE_URL from %s: %s", source, rendered)
        config.print_stdout(f"[Alembic] DATABASE_URL source={source}: {rendered}")
        return sync_url, connect_args
    raise RuntimeError("DATABASE_URL must be set to run migrations.")


def run_migrations_offline() -> None:
    """Run migrations offline (e.g., CI)."""
    url, _ = _resolve_database_config()
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url, connect_args = _resolve_database_config()
    connectable = create_engine(url, connect_args=connect_args, poolclass=pool.NullPool)
    try:
        with connectable.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                compare_type=True,
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
