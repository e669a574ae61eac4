from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from typer.testing import CliRunner

from afas_finance import cli
from afas_finance import llm
from afas_finance.afas_client import AfasClient
from tests.helpers.db import bootstrap_sqlite_db
from tests.helpers.ledger import sample_ledger
from tests.helpers.openai_stub import MappingOpenAIStub, ScriptedOpenAIStub, text_response


@pytest.fixture
def ledger_file(tmp_path: Path) -> Path:
    p = tmp_path / "rows.json"
    p.write_text(json.dumps({"rows": sample_ledger()}), encoding="utf-8")
    return p


@pytest.fixture(autouse=True)
def _quiet_cli(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    # Keep the package logger unconfigured so other tests can capture records.
    monkeypatch.setattr(cli, "configure_logging", lambda *a, **kw: None)
    monkeypatch.chdir(tmp_path)


# ---- Handlers ----------------------------------------------------------------------


def test_cmd_pnl_prints_rows_and_totals(ledger_file: Path, capsys: pytest.CaptureFixture[str]):
    rc = cli.cmd_pnl(str(ledger_file), "2024-01", "2024-02")
    out = capsys.readouterr().out.splitlines()
    assert rc == 0
    assert out[0] == "2024-02\tOpbrengsten\t12000.00"
    assert out[-1] == "totaal\tResultaat\t12000.00"


def test_cmd_view_reports_missing_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]):
    rc = cli.cmd_view(str(tmp_path / "nope.json"), "2024-01", "2024-02")
    assert rc == 1
    assert "Error: File not found" in capsys.readouterr().err


def test_cmd_view_rejects_bad_period(ledger_file: Path, capsys: pytest.CaptureFixture[str]):
    assert cli.cmd_view(str(ledger_file), "2024-13", "2024-02") == 1
    assert "Invalid period" in capsys.readouterr().err


def test_cmd_view_prints_json_view(ledger_file: Path, capsys: pytest.CaptureFixture[str]):
    assert cli.cmd_view(str(ledger_file), "2024-01", "2024-02", checks=True) == 0
    view = json.loads(capsys.readouterr().out)
    assert view["summary"]["totalRecords"] == 7
    assert len(view["financialChecks"]["overall"]) == 15


def test_cmd_balance(ledger_file: Path, capsys: pytest.CaptureFixture[str]):
    assert cli.cmd_balance(str(ledger_file), "2024-01") == 0
    out = capsys.readouterr().out
    assert "assets\tDebiteuren\t-10000.00" in out
    assert "totaal\tvreemdVermogen\t4000.00" in out


def test_cmd_checks(ledger_file: Path, capsys: pytest.CaptureFixture[str]):
    assert cli.cmd_checks(str(ledger_file), "2024-01", "2024-02") == 0
    lines = capsys.readouterr().out.splitlines()
    assert sum(1 for ln in lines if ln.startswith("overall\t")) == 15
    assert any(ln.startswith("2024-02\trevenue_variance\t") for ln in lines)


def test_cmd_fetch_uses_cache(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]):
    monkeypatch.setenv("AFAS_BASE_URL", "https://afas.test")
    monkeypatch.setenv("AFAS_TOKEN", "tok")
    calls: list[Any] = []

    def fake_fetch_all(self: AfasClient, *, year: int | None = None) -> list[dict[str, Any]]:
        calls.append(year)
        return sample_ledger()

    monkeypatch.setattr(AfasClient, "fetch_all", fake_fetch_all)

    out_file = tmp_path / "out.json"
    assert cli.cmd_fetch(output=str(out_file)) == 0
    assert cli.cmd_fetch() == 0
    assert calls == [None]
    assert len(json.loads(out_file.read_text(encoding="utf-8"))["rows"]) == 8
    assert capsys.readouterr().out.startswith("records=8\t")

    assert cli.cmd_fetch(no_cache=True) == 0
    assert calls == [None, None]


def test_cmd_fetch_requires_credentials(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]):
    monkeypatch.delenv("AFAS_BASE_URL", raising=False)
    monkeypatch.delenv("AFAS_TOKEN", raising=False)
    assert cli.cmd_fetch() == 1
    assert "AFAS_BASE_URL" in capsys.readouterr().err


def test_cmd_map_categories_requires_api_key(
    monkeypatch: pytest.MonkeyPatch, ledger_file: Path, capsys: pytest.CaptureFixture[str]
):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    assert cli.cmd_map_categories(str(ledger_file), user_id="u1", dry_run=True) == 1
    assert "OPENAI_API_KEY" in capsys.readouterr().err


def test_map_then_enhanced_pnl(
    monkeypatch: pytest.MonkeyPatch, ledger_file: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    decisions = {"Omzet": "Omzet", "Inkoopwaarde": "Inkoopwaarde omzet", "Huisvestingskosten": "Huisvestingskosten"}
    stub = MappingOpenAIStub(lambda item: (decisions[item["category_3"]], 0.95))
    monkeypatch.setattr(llm, "OpenAI", stub.factory)
    url = bootstrap_sqlite_db(tmp_path / "afas.db")

    assert cli.cmd_map_categories(str(ledger_file), user_id="u1", database_url=url) == 0
    lines = capsys.readouterr().out.splitlines()
    assert "Inkoopwaarde\tKosten\tInkoopwaarde omzet\tai" in lines

    # Everything is mapped now: no second model call.
    assert cli.cmd_map_categories(str(ledger_file), user_id="u1", database_url=url) == 0
    assert capsys.readouterr().out.strip() == "Nothing to map."
    assert len(stub.calls) == 1

    assert cli.cmd_enhanced_pnl(str(ledger_file), "2024-01", "2024-02", user_id="u1", database_url=url) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["totals"]["Huisvestingskosten"] == 1000.0
    assert out["unmapped"] == []


def test_cmd_ask(monkeypatch: pytest.MonkeyPatch, ledger_file: Path, capsys: pytest.CaptureFixture[str]):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    stub = ScriptedOpenAIStub([text_response("Geen gegevens nodig.")])
    monkeypatch.setattr(llm, "OpenAI", stub.factory)
    assert cli.cmd_ask("Hallo?", str(ledger_file)) == 0
    assert capsys.readouterr().out.strip() == "Geen gegevens nodig."


# ---- Typer app -------------------------------------------------------------------


def test_typer_pnl_command(ledger_file: Path):
    runner = CliRunner()
    result = runner.invoke(
        cli.app, ["pnl", "--input", str(ledger_file), "--from", "2024-01", "--to", "2024-02", "--granularity", "YTD"]
    )
    assert result.exit_code == 0, result.output
    assert "2024\tResultaat\t12000.00" in result.stdout


def test_typer_propagates_handler_exit_code(tmp_path: Path):
    runner = CliRunner()
    result = runner.invoke(
        cli.app, ["balance", "--input", str(tmp_path / "missing.json"), "--as-of", "2024-01"]
    )
    assert result.exit_code == 1
