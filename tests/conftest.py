"""Pytest configuration for test isolation.

The dataset cache writes JSON documents under ``./.cache`` by default, and the
shared ``db`` engine is a process-wide singleton bound to the first
``DATABASE_URL`` it sees. Either would leak state between tests (a later test
could hit a cache written by an earlier one and skip the stubbed fetch path,
or reuse an engine bound to another test's SQLite file).

Each test therefore gets its own cache root and a fresh engine.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parents[1]
sys.path[:0] = [
    p
    for p in [str(_ROOT / "packages"), str(_ROOT / "libs" / "db" / "src"), str(_ROOT)]
    if p not in sys.path
]

from db.client import reset_engine  # noqa: E402


@pytest.fixture(autouse=True)
def _isolate_cache_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Point ``AFAS_CACHE_DIR`` at the test's own temporary directory."""

    cache_root = tmp_path / "cache"
    cache_root.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("AFAS_CACHE_DIR", os.fspath(cache_root))
    monkeypatch.delenv("AFAS_CACHE_TTL_HOURS", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)


@pytest.fixture(autouse=True)
def _fresh_engine():
    reset_engine()
    yield
    reset_engine()
