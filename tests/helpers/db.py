"""DB helpers for tests: bootstrap a temporary SQLite DB with the AFAS tables."""

from __future__ import annotations

import os
from pathlib import Path

from db.client import get_engine, init_schema


def bootstrap_sqlite_db(db_file: Path, *, set_default_env: bool = False) -> str:
    """Create a SQLite database file, initialize schema, and return the URL.

    Using a file-backed SQLite DB ensures multiple SQLAlchemy connections share
    the same state (in-memory DBs are per-connection by default).
    """

    url = f"sqlite+pysqlite:///{db_file}"
    db_file.parent.mkdir(parents=True, exist_ok=True)
    get_engine(database_url=url)
    init_schema(database_url=url)

    if set_default_env:
        os.environ.setdefault("DATABASE_URL", url)
    return url
