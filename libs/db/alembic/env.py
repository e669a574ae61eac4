# ruff: noqa: I001
"""
Alembic environment for the `db` library.

The database URL comes from `DATABASE_URL` (optionally loaded from a `.env` in
the working directory or the repository root) and falls back to
`sqlalchemy.url` in alembic.ini. Targets the AFAS tables in `db.metadata`.
"""

from __future__ import annotations

import os
from pathlib import Path
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool
from dotenv import load_dotenv

import db as _db_pkg


def _load_dotenv_candidates() -> None:  # pragma: no cover - side-effectful
    # repo root: libs/db/alembic/env.py -> ../../..
    for p in (Path.cwd() / ".env", Path(__file__).resolve().parents[3] / ".env"):
        if p.is_file():
            load_dotenv(dotenv_path=p, override=False)


_load_dotenv_candidates()

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

db_url_maybe = os.getenv("DATABASE_URL") or config.get_main_option("sqlalchemy.url")
if not db_url_maybe:
    raise RuntimeError(
        "DATABASE_URL is not set. Provide it via environment or set "
        "'sqlalchemy.url' in alembic.ini."
    )
db_url: str = db_url_maybe
config.set_main_option("sqlalchemy.url", db_url)

target_metadata = _db_pkg.metadata


def run_migrations_offline() -> None:
    """Emit SQL for the migrations without a live connection."""
    context.configure(
        url=db_url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    section = config.get_section(config.config_ini_section) or {}
    section["sqlalchemy.url"] = db_url
    connectable = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
