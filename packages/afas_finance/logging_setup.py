"""Logging for ``afas_finance``.

Every module logs through ``get_logger("afas_finance.<module>")`` with
``area:event key=value`` messages, e.g. ``cache:hit backend=db key=afas:...``
or ``afas_fetch:page_done skip=0 rows=20000``. Nothing is printed until an entrypoint
calls :func:`configure_logging`; the Typer CLI does so in its root callback.

Environment:

- ``AFAS_FINANCE_LOG_LEVEL``: level name or number (default ``INFO``).
- ``AFAS_FINANCE_LOG_FORMAT``: ``logging.Formatter`` format string.

The OpenAI SDK, its HTTP stack and SQLAlchemy log per request or statement.
They are held at ``WARNING`` unless the package itself runs at ``DEBUG``.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import IO

_PKG_LOGGER_NAME = "afas_finance"
_LEVEL_ENV = "AFAS_FINANCE_LOG_LEVEL"
_FORMAT_ENV = "AFAS_FINANCE_LOG_FORMAT"
_DEFAULT_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
_CHATTY_LOGGERS: tuple[str, ...] = ("openai", "httpx", "httpcore", "sqlalchemy.engine", "alembic")
_CONFIGURED = False


def resolve_level(level: int | str | None = None) -> int:
    """Turn ``level`` (or ``AFAS_FINANCE_LOG_LEVEL``) into a numeric level.

    Unknown names fall back to ``INFO``.
    """

    if level is None:
        level = os.getenv(_LEVEL_ENV)
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        name = level.strip().upper()
        if name.isdigit():
            return int(name)
        numeric = logging.getLevelNamesMapping().get(name)
        if numeric is not None:
            return numeric
    return logging.INFO


def _quiet_dependencies(package_level: int) -> None:
    if package_level <= logging.DEBUG:
        return
    for name in _CHATTY_LOGGERS:
        dep = logging.getLogger(name)
        if dep.level == logging.NOTSET or dep.level < logging.WARNING:
            dep.setLevel(logging.WARNING)


def configure_logging(
    level: int | str | None = None,
    *,
    fmt: str | None = None,
    stream: IO[str] = sys.stderr,
) -> None:
    """Attach one stream handler to the ``afas_finance`` logger.

    Idempotent: later calls are no-ops. ``fmt`` defaults to
    ``AFAS_FINANCE_LOG_FORMAT`` and then to ``"%(asctime)s %(name)s
    %(levelname)s %(message)s"``.
    """

    global _CONFIGURED
    if _CONFIGURED:
        return

    pkg_logger = logging.getLogger(_PKG_LOGGER_NAME)
    for h in list(pkg_logger.handlers):
        if isinstance(h, logging.NullHandler):
            pkg_logger.removeHandler(h)

    resolved = resolve_level(level)
    handler = logging.StreamHandler(stream)
    handler.setLevel(resolved)
    handler.setFormatter(logging.Formatter(fmt or os.getenv(_FORMAT_ENV) or _DEFAULT_FORMAT))

    pkg_logger.setLevel(resolved)
    pkg_logger.addHandler(handler)
    # Avoid double emission via the root logger.
    pkg_logger.propagate = False
    _quiet_dependencies(resolved)

    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    """Return ``logging.getLogger(name)``; silent until configured."""

    pkg_logger = logging.getLogger(_PKG_LOGGER_NAME)
    if not _CONFIGURED and not pkg_logger.handlers:
        pkg_logger.addHandler(logging.NullHandler())
    return logging.getLogger(name)
