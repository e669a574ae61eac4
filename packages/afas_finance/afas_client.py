"""Thin client for the AFAS Profit REST GetConnector.

Non-streaming GET of
``{base_url}/ProfitRestServices/connectors/{connector}?skip=&take=``
authenticated with ``Authorization: AfasToken <token>``. Rows are returned as
the raw mappings AFAS sends (the ``rows`` array of the response body).

Configuration comes from the environment (see :meth:`AfasClient.from_env`).
"""

from __future__ import annotations

import json
import os
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

from . import retry
from .logging_setup import get_logger
from .records import extract_rows

DEFAULT_CONNECTOR: str = "Innoworks_Financiele_mutaties"
DEFAULT_PAGE_SIZE: int = 20000
_DEFAULT_TIMEOUT_SEC: float = 120.0
# Upper bound on pages per fetch_all; guards against a connector that never
# returns a short page.
_MAX_PAGES: int = 500

_logger = get_logger("afas_finance.afas_client")


class AfasHTTPError(RuntimeError):
    """Non-2xx response from AFAS; ``status_code`` drives the retry decision."""

    def __init__(self, status_code: int, reason: str, body: str = "") -> None:
        super().__init__(f"AFAS API error: {status_code} {reason}: {body}".rstrip(": "))
        self.status_code = status_code


def _is_retryable(exc: BaseException) -> bool:
    if retry.is_retryable_status(getattr(exc, "status_code", None)):
        return True
    # Network-level failures (DNS, refused, reset, timeout) are transient.
    return isinstance(exc, (urllib.error.URLError, TimeoutError, ConnectionError)) and not isinstance(
        exc, urllib.error.HTTPError
    )


@dataclass(frozen=True, slots=True)
class AfasClient:
    base_url: str
    token: str
    connector: str = DEFAULT_CONNECTOR
    page_size: int = DEFAULT_PAGE_SIZE
    timeout_sec: float = _DEFAULT_TIMEOUT_SEC

    def __post_init__(self) -> None:
        if not self.base_url:
            raise ValueError("AfasClient.base_url must be non-empty")
        if not self.token:
            raise ValueError("AfasClient.token must be non-empty")
        if isinstance(self.page_size, bool) or not isinstance(self.page_size, int) or self.page_size <= 0:
            raise ValueError("AfasClient.page_size must be a positive integer")

    @classmethod
    def from_env(cls) -> AfasClient:
        """Build from ``AFAS_BASE_URL``, ``AFAS_TOKEN``, ``AFAS_CONNECTOR``, ``AFAS_PAGE_SIZE``."""

        base_url = os.environ.get("AFAS_BASE_URL")
        token = os.environ.get("AFAS_TOKEN")
        if not base_url or not token:
            raise RuntimeError("AFAS_BASE_URL and AFAS_TOKEN environment variables are required")
        raw_size = os.environ.get("AFAS_PAGE_SIZE")
        try:
            page_size = int(raw_size) if raw_size else DEFAULT_PAGE_SIZE
        except ValueError as e:
            raise ValueError(f"AFAS_PAGE_SIZE must be an integer, got {raw_size!r}") from e
        return cls(
            base_url=base_url,
            token=token,
            connector=os.environ.get("AFAS_CONNECTOR") or DEFAULT_CONNECTOR,
            page_size=page_size,
        )

    @property
    def cache_key(self) -> str:
        return f"afas:{self.connector}"

    def page_url(self, skip: int, take: int, *, year: int | None = None) -> str:
        params: dict[str, Any] = {}
        if year is not None:
            params.update({"filterfieldids": "Jaar", "filtervalues": str(year), "operatortypes": "1"})
        params.update({"skip": skip, "take": take, "orderbyfieldids": "-Boekstukdatum"})
        base = self.base_url.rstrip("/")
        connector = urllib.parse.quote(self.connector, safe="")
        return f"{base}/ProfitRestServices/connectors/{connector}?{urllib.parse.urlencode(params)}"

    def _get_json(self, url: str) -> Any:
        req = urllib.request.Request(url, method="GET")
        req.add_header("Authorization", f"AfasToken {self.token}")
        req.add_header("Accept", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_sec) as resp:
                body = resp.read()
        except urllib.error.HTTPError as e:
            try:
                err_body = e.read().decode("utf-8", errors="replace")
            except Exception:  # noqa: BLE001 - error body is best effort
                err_body = ""
            raise AfasHTTPError(e.code, str(e.reason), err_body[:500]) from e
        try:
            return json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValueError("Failed to parse JSON from the AFAS connector") from e

    def fetch_page(self, skip: int, take: int | None = None, *, year: int | None = None) -> list[dict[str, Any]]:
        """Fetch one page of rows with retry for 429/5xx and network errors."""

        n = take if take is not None else self.page_size
        url = self.page_url(skip, n, year=year)
        t0 = time.perf_counter()
        payload = retry.call_with_retry(
            lambda: self._get_json(url),
            area="afas_fetch",
            label=f"skip={skip} take={n}",
            is_retryable=_is_retryable,
        )
        rows = extract_rows(payload)
        _logger.info(
            "afas_fetch:page_done skip=%d rows=%d latency_ms=%.2f",
            skip,
            len(rows),
            (time.perf_counter() - t0) * 1000.0,
        )
        return rows

    def fetch_all(self, *, year: int | None = None) -> list[dict[str, Any]]:
        """Fetch every row, paging until a page shorter than ``page_size``."""

        out: list[dict[str, Any]] = []
        skip = 0
        for _ in range(_MAX_PAGES):
            rows = self.fetch_page(skip, self.page_size, year=year)
            out.extend(rows)
            if len(rows) < self.page_size:
                _logger.info("afas_fetch:done total_rows=%d pages=%d", len(out), skip // self.page_size + 1)
                return out
            skip += self.page_size
        raise RuntimeError(f"afas_fetch exceeded {_MAX_PAGES} pages; aborting")


__all__ = [
    "AfasClient",
    "AfasHTTPError",
    "DEFAULT_CONNECTOR",
    "DEFAULT_PAGE_SIZE",
]
