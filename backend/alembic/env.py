"""Migrations for the label store.

The URL comes from `sqlalchemy.url` when set, otherwise from the same
Settings the ingestion job reads (DATABASE_URL, SKYWATCH_CONFIG_YAML and `.env`).
"""

from __future__ import annotations

import os
import sys
from logging.config import fileConfig

from alembic import context

BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if BACKEND_DIR not in sys.path:
    sys.path.insert(0, BACKEND_DIR)

import store.models  # noqa: E402,F401  (register tables on Base.metadata)
from store.core.base import Base  # noqa: E402
from store.core.config import load_settings  # noqa: E402
from store.core.db import create_db_engine  # noqa: E402

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)


def database_url() -> str:
    return config.get_main_option("sqlalchemy.url") or load_settings().database_url


def _render_as_batch(url: str) -> bool:
    # SQLite cannot ALTER most constraints in place; batch mode rebuilds the table.
    return url.startswith("sqlite")


def run_offline(url: str) -> None:
    context.configure(
        url=url,
        target_metadata=Base.metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        render_as_batch=_render_as_batch(url),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_online(url: str) -> None:
    engine = create_db_engine(url)
    try:
        with engine.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=Base.metadata,
                compare_type=True,
                render_as_batch=_render_as_batch(url),
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_offline(database_url())
else:
    run_online(database_url())
