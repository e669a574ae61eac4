from __future__ import annotations

import io
import json
import urllib.error
import urllib.parse
from typing import Any

import pytest

from afas_finance import afas_client as afas_mod
from afas_finance import retry as retry_mod
from afas_finance.afas_client import DEFAULT_CONNECTOR, AfasClient, AfasHTTPError


class _Resp:
    def __init__(self, payload: Any) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> _Resp:
        return self

    def __exit__(self, *exc: Any) -> None:
        return None


def _http_error(code: int) -> urllib.error.HTTPError:
    return urllib.error.HTTPError("https://afas.test", code, "boom", {}, io.BytesIO(b"detail"))  # type: ignore[arg-type]


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(retry_mod, "sleep_backoff", lambda attempt: None)


def _install(monkeypatch: pytest.MonkeyPatch, script: list[Any]) -> list[Any]:
    """Replay ``script`` (payloads or exceptions) from ``urlopen``; return requests seen."""

    seen: list[Any] = []

    def fake_urlopen(req, timeout=None):
        seen.append(req)
        item = script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return _Resp(item)

    monkeypatch.setattr(afas_mod.urllib.request, "urlopen", fake_urlopen)
    return seen


def _query(req) -> dict[str, list[str]]:
    return urllib.parse.parse_qs(urllib.parse.urlparse(req.full_url).query)


def _client(**kw: Any) -> AfasClient:
    return AfasClient(base_url="https://12345.rest.afas.online/", token="tok", **kw)


def test_validation_and_env(monkeypatch: pytest.MonkeyPatch):
    with pytest.raises(ValueError):
        AfasClient(base_url="", token="t")
    with pytest.raises(ValueError):
        AfasClient(base_url="https://x", token="t", page_size=0)

    monkeypatch.delenv("AFAS_BASE_URL", raising=False)
    monkeypatch.delenv("AFAS_TOKEN", raising=False)
    with pytest.raises(RuntimeError):
        AfasClient.from_env()

    monkeypatch.setenv("AFAS_BASE_URL", "https://x")
    monkeypatch.setenv("AFAS_TOKEN", "t")
    monkeypatch.setenv("AFAS_PAGE_SIZE", "500")
    monkeypatch.delenv("AFAS_CONNECTOR", raising=False)
    c = AfasClient.from_env()
    assert c.page_size == 500
    assert c.connector == DEFAULT_CONNECTOR
    assert c.cache_key == f"afas:{DEFAULT_CONNECTOR}"


def test_page_url_shape():
    url = _client().page_url(100, 50, year=2024)
    parsed = urllib.parse.urlparse(url)
    assert parsed.path == f"/ProfitRestServices/connectors/{DEFAULT_CONNECTOR}"
    q = urllib.parse.parse_qs(parsed.query)
    assert q["skip"] == ["100"] and q["take"] == ["50"]
    assert q["filterfieldids"] == ["Jaar"] and q["filtervalues"] == ["2024"]
    assert q["orderbyfieldids"] == ["-Boekstukdatum"]


def test_fetch_page_sends_token_and_extracts_rows(monkeypatch: pytest.MonkeyPatch):
    seen = _install(monkeypatch, [{"skip": 0, "take": 2, "rows": [{"Jaar": 2024}, {"Jaar": 2023}]}])
    rows = _client().fetch_page(0, 2)
    assert rows == [{"Jaar": 2024}, {"Jaar": 2023}]
    assert seen[0].get_header("Authorization") == "AfasToken tok"


def test_fetch_all_pages_until_short_page(monkeypatch: pytest.MonkeyPatch):
    seen = _install(
        monkeypatch,
        [
            {"rows": [{"n": 1}, {"n": 2}]},
            {"rows": [{"n": 3}, {"n": 4}]},
            {"rows": [{"n": 5}]},
        ],
    )
    rows = _client(page_size=2).fetch_all()
    assert [r["n"] for r in rows] == [1, 2, 3, 4, 5]
    assert [_query(r)["skip"] for r in seen] == [["0"], ["2"], ["4"]]


def test_retries_server_errors_then_succeeds(monkeypatch: pytest.MonkeyPatch):
    seen = _install(monkeypatch, [_http_error(503), urllib.error.URLError("reset"), {"rows": []}])
    assert _client().fetch_page(0) == []
    assert len(seen) == 3


def test_client_errors_are_terminal(monkeypatch: pytest.MonkeyPatch):
    seen = _install(monkeypatch, [_http_error(401)])
    with pytest.raises(RuntimeError) as exc_info:
        _client().fetch_page(0)
    assert len(seen) == 1
    cause = exc_info.value.__cause__
    assert isinstance(cause, AfasHTTPError)
    assert cause.status_code == 401


def test_gives_up_after_max_attempts(monkeypatch: pytest.MonkeyPatch):
    seen = _install(monkeypatch, [_http_error(500), _http_error(502), _http_error(429)])
    with pytest.raises(RuntimeError):
        _client().fetch_page(0)
    assert len(seen) == retry_mod.MAX_ATTEMPTS


def test_unexpected_body_is_a_value_error(monkeypatch: pytest.MonkeyPatch):
    _install(monkeypatch, [{"data": []}])
    with pytest.raises(ValueError):
        _client().fetch_page(0)
