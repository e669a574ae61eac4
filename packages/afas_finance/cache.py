"""Tiered cache for fetched AFAS datasets.

This module provides:

- ``compress_records`` / ``decompress_records``: gzip + base64 codec for the
  row list (AFAS datasets run into tens of thousands of rows).
- ``CacheBackend``: the interface every tier implements.
- ``DatabaseCacheBackend``: table ``afas_data_cache`` via the shared ``db``
  library (upsert per key).
- ``FileCacheBackend``: one JSON document per key under the cache root.
- ``FallbackCache``: composition that reads tier by tier and writes to all.
- ``load_or_fetch``: cache hit or fetch + save.

File layout (relative to the cache root, default: ``./.cache``):

  ``<cache_root>/afas/<sha256(key)>.json``

Atomicity: file writes target ``.tmp`` first and then ``os.replace`` into place.
"""

from __future__ import annotations

import base64
import binascii
import contextlib
import gzip
import hashlib
import json
import os
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from .logging_setup import get_logger
from .models import CacheFile

# Bump only when the on-disk cache JSON shape changes.
SCHEMA_VERSION: int = 1

DEFAULT_TTL_HOURS: float = 24.0
_TTL_ENV: str = "AFAS_CACHE_TTL_HOURS"
_CACHE_DIR_ENV: str = "AFAS_CACHE_DIR"

_logger = get_logger("afas_finance.cache")


# ----------------------------------------------------------------------------
# Payload codec
# ----------------------------------------------------------------------------


def compress_records(records: Sequence[Any]) -> str:
    data = json.dumps(list(records), ensure_ascii=False, separators=(",", ":"))
    return base64.b64encode(gzip.compress(data.encode("utf-8"))).decode("ascii")


def decompress_records(text: str) -> list[dict[str, Any]]:
    """Decode a payload produced by :func:`compress_records`.

    Raises ``ValueError`` when the payload is not valid base64/gzip/JSON or
    does not hold a JSON array.
    """

    try:
        raw = gzip.decompress(base64.b64decode(text.encode("ascii"), validate=True))
        decoded = json.loads(raw.decode("utf-8"))
    except (binascii.Error, OSError, EOFError, UnicodeError, json.JSONDecodeError) as e:
        raise ValueError("Cache payload is not a valid compressed record list") from e
    if not isinstance(decoded, list):
        raise ValueError("Cache payload must decode to a JSON array")
    return decoded


def default_ttl_hours() -> float:
    raw = os.getenv(_TTL_ENV)
    if raw and raw.strip():
        try:
            value = float(raw)
        except ValueError:
            _logger.warning("cache:invalid_ttl value=%r using=%.1f", raw, DEFAULT_TTL_HOURS)
            return DEFAULT_TTL_HOURS
        if value > 0:
            return value
    return DEFAULT_TTL_HOURS


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


# ----------------------------------------------------------------------------
# Entry and interface
# ----------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CacheEntry:
    records: list[dict[str, Any]]
    record_count: int
    last_refreshed: datetime
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or _utcnow()) >= _as_utc(self.expires_at)

    @classmethod
    def fresh(cls, records: Sequence[dict[str, Any]], ttl_hours: float) -> CacheEntry:
        now = _utcnow()
        return cls(
            records=list(records),
            record_count=len(records),
            last_refreshed=now,
            expires_at=now + timedelta(hours=ttl_hours),
        )


class CacheBackend(Protocol):
    """A cache tier. ``load`` returns ``None`` for a miss or an expired entry."""

    name: str

    def load(self, key: str) -> CacheEntry | None: ...

    def save(self, key: str, records: Sequence[dict[str, Any]], ttl_hours: float) -> CacheEntry: ...

    def clear(self, key: str) -> None: ...


# ----------------------------------------------------------------------------
# Database tier
# ----------------------------------------------------------------------------


class DatabaseCacheBackend:
    """Cache rows in ``afas_data_cache`` (one row per key)."""

    name = "database"

    def __init__(self, database_url: str | None = None) -> None:
        self._database_url = database_url

    def load(self, key: str) -> CacheEntry | None:
        # Imported lazily so file-only setups do not need a configured database.
        from db.client import session_scope
        from db.models.afas import AfasDataCache

        with session_scope(database_url=self._database_url) as session:
            row = session.get(AfasDataCache, key)
            if row is None:
                return None
            entry = CacheEntry(
                records=decompress_records(row.payload),
                record_count=row.record_count,
                last_refreshed=_as_utc(row.last_refreshed),
                expires_at=_as_utc(row.expires_at),
            )
        if entry.is_expired():
            _logger.debug("cache:expired backend=%s key=%s", self.name, key)
            return None
        return entry

    def save(self, key: str, records: Sequence[dict[str, Any]], ttl_hours: float) -> CacheEntry:
        from db.client import session_scope, upsert_insert
        from db.models.afas import AfasDataCache

        entry = CacheEntry.fresh(records, ttl_hours)
        values = {
            "cache_key": key,
            "payload": compress_records(entry.records),
            "record_count": entry.record_count,
            "last_refreshed": entry.last_refreshed,
            "expires_at": entry.expires_at,
        }
        with session_scope(database_url=self._database_url) as session:
            stmt = upsert_insert(session, AfasDataCache).values(values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[AfasDataCache.cache_key],
                set_={
                    "payload": stmt.excluded.payload,
                    "record_count": stmt.excluded.record_count,
                    "last_refreshed": stmt.excluded.last_refreshed,
                    "expires_at": stmt.excluded.expires_at,
                },
            )
            session.execute(stmt)
        return entry

    def clear(self, key: str) -> None:
        from sqlalchemy import delete

        from db.client import session_scope
        from db.models.afas import AfasDataCache

        with session_scope(database_url=self._database_url) as session:
            session.execute(delete(AfasDataCache).where(AfasDataCache.cache_key == key))


# ----------------------------------------------------------------------------
# File tier
# ----------------------------------------------------------------------------


def _get_cache_root() -> Path:
    """Return the cache root directory.

    Default: ``./.cache`` under the current working directory.
    Override: ``AFAS_CACHE_DIR`` environment variable (absolute or relative).
    """

    root = os.getenv(_CACHE_DIR_ENV)
    if root and root.strip():
        return Path(root).expanduser().resolve()
    return (Path.cwd() / ".cache").resolve()


class FileCacheBackend:
    """Cache each key as a JSON document on local disk."""

    name = "file"

    def __init__(self, root: str | Path | None = None) -> None:
        self._root = Path(root).expanduser().resolve() if root is not None else None

    def _path(self, key: str) -> Path:
        # Hashing the key keeps arbitrary keys out of the filesystem namespace.
        d = (self._root or _get_cache_root()) / "afas"
        d.mkdir(parents=True, exist_ok=True)
        return d / f"{hashlib.sha256(key.encode('utf-8')).hexdigest()}.json"

    def load(self, key: str) -> CacheEntry | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            parsed = CacheFile.model_validate_json(path.read_text(encoding="utf-8"))
            records = decompress_records(parsed.payload)
        except (OSError, UnicodeDecodeError, ValidationError, ValueError):
            _logger.debug(
                "cache:read_failed; treating as miss backend=%s key=%s path=%s",
                self.name,
                key,
                os.fspath(path),
                exc_info=True,
            )
            return None

        if parsed.schema_version != SCHEMA_VERSION or parsed.cache_key != key:
            return None
        entry = CacheEntry(
            records=records,
            record_count=parsed.record_count,
            last_refreshed=_as_utc(parsed.last_refreshed),
            expires_at=_as_utc(parsed.expires_at),
        )
        if entry.is_expired():
            _logger.debug("cache:expired backend=%s key=%s", self.name, key)
            return None
        return entry

    def save(self, key: str, records: Sequence[dict[str, Any]], ttl_hours: float) -> CacheEntry:
        entry = CacheEntry.fresh(records, ttl_hours)
        path = self._path(key)
        tmp = path.with_suffix(path.suffix + ".tmp")
        doc = CacheFile(
            schema_version=SCHEMA_VERSION,
            cache_key=key,
            record_count=entry.record_count,
            last_refreshed=entry.last_refreshed,
            expires_at=entry.expires_at,
            payload=compress_records(entry.records),
        )

        # Write atomically, cleaning up the temp file on failure
        try:
            tmp.write_text(doc.model_dump_json(), encoding="utf-8")
            os.replace(tmp, path)
        except Exception:
            with contextlib.suppress(FileNotFoundError):
                tmp.unlink()
            raise
        return entry

    def clear(self, key: str) -> None:
        with contextlib.suppress(FileNotFoundError):
            self._path(key).unlink()


# ----------------------------------------------------------------------------
# Composition
# ----------------------------------------------------------------------------


class FallbackCache:
    """Try backends in order on read; write to every backend.

    A failing backend is logged and skipped. ``save`` raises ``RuntimeError``
    only when no backend accepted the write.
    """

    name = "fallback"

    def __init__(self, *backends: CacheBackend) -> None:
        if not backends:
            raise ValueError("FallbackCache requires at least one backend")
        self._backends: tuple[CacheBackend, ...] = backends

    @property
    def backends(self) -> tuple[CacheBackend, ...]:
        return self._backends

    def load(self, key: str) -> CacheEntry | None:
        for backend in self._backends:
            try:
                entry = backend.load(key)
            except Exception as e:  # noqa: BLE001 - next tier takes over
                _logger.warning(
                    "cache:load_failed backend=%s key=%s error=%s", backend.name, key, e.__class__.__name__
                )
                continue
            if entry is not None:
                _logger.info(
                    "cache:hit backend=%s key=%s records=%d", backend.name, key, entry.record_count
                )
                return entry
        _logger.info("cache:miss key=%s", key)
        return None

    def save(self, key: str, records: Sequence[dict[str, Any]], ttl_hours: float) -> CacheEntry:
        saved: CacheEntry | None = None
        last_error: Exception | None = None
        for backend in self._backends:
            try:
                entry = backend.save(key, records, ttl_hours)
            except Exception as e:  # noqa: BLE001
                last_error = e
                _logger.warning(
                    "cache:save_failed backend=%s key=%s error=%s", backend.name, key, e.__class__.__name__
                )
                continue
            saved = saved or entry
        if saved is None:
            raise RuntimeError(f"No cache backend accepted key {key!r}") from last_error
        return saved

    def clear(self, key: str) -> None:
        for backend in self._backends:
            try:
                backend.clear(key)
            except Exception as e:  # noqa: BLE001
                _logger.warning(
                    "cache:clear_failed backend=%s key=%s error=%s", backend.name, key, e.__class__.__name__
                )


def load_or_fetch(
    cache: CacheBackend,
    key: str,
    fetch: Callable[[], Sequence[dict[str, Any]]],
    ttl_hours: float | None = None,
    *,
    force_refresh: bool = False,
) -> CacheEntry:
    """Return the cached entry for ``key`` or fetch, save and return fresh data.

    A failed save is logged; the freshly fetched data is still returned.
    """

    ttl = ttl_hours if ttl_hours is not None else default_ttl_hours()
    if not force_refresh:
        hit = cache.load(key)
        if hit is not None:
            return hit

    records = list(fetch())
    try:
        return cache.save(key, records, ttl)
    except Exception as e:  # noqa: BLE001 - fetched data is still usable
        _logger.warning("cache:not_saved key=%s error=%s", key, e.__class__.__name__)
        return CacheEntry.fresh(records, ttl)


__all__ = [
    "CacheBackend",
    "CacheEntry",
    "DEFAULT_TTL_HOURS",
    "DatabaseCacheBackend",
    "FallbackCache",
    "FileCacheBackend",
    "compress_records",
    "decompress_records",
    "default_ttl_hours",
    "load_or_fetch",
]
