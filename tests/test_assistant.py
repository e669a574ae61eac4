from __future__ import annotations

import json

import pytest

from afas_finance import assistant as assistant_mod
from afas_finance import llm
from afas_finance import retry as retry_mod
from afas_finance.assistant import (
    TOOL_NAMES,
    TOOL_SPECS,
    AssistantReply,
    ask,
    execute_tool_call,
    generate_title,
)
from afas_finance.statements import AnalysisTools
from tests.helpers.ledger import sample_ledger
from tests.helpers.openai_stub import (
    ScriptedOpenAIStub,
    StatusError,
    function_call_response,
    text_response,
)


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(retry_mod, "sleep_backoff", lambda attempt: None)


@pytest.fixture
def tools() -> AnalysisTools:
    return AnalysisTools(sample_ledger(), current_year=2024)


def _install(monkeypatch: pytest.MonkeyPatch, script) -> ScriptedOpenAIStub:
    stub = ScriptedOpenAIStub(script)
    monkeypatch.setattr(llm, "OpenAI", stub.factory)
    return stub


# ---- Tool schemas ------------------------------------------------------------------


def test_every_tool_spec_maps_to_an_analysis_method():
    assert len(TOOL_SPECS) == len(TOOL_NAMES)
    for spec in TOOL_SPECS:
        assert spec["type"] == "function"
        assert spec["strict"] is True
        params = spec["parameters"]
        assert params["additionalProperties"] is False
        assert set(params["required"]) == set(params["properties"])
        assert callable(getattr(AnalysisTools, spec["name"]))


# ---- Dispatch ----------------------------------------------------------------------


def test_execute_tool_call_drops_nulls_and_returns_json(tools: AnalysisTools):
    out = execute_tool_call(
        tools,
        "get_profit_loss_statement",
        json.dumps({"period_from": "2024-01", "period_to": "2024-02", "granularity": None, "filters": None}),
    )
    decoded = json.loads(out)
    assert decoded["totals"]["Resultaat"] == 12000.0
    assert decoded["query_hash"] == tools.get_profit_loss_statement("2024-01", "2024-02")["query_hash"]


def test_execute_tool_call_forwards_profit_loss_filters(tools: AnalysisTools):
    filters = {k: None for k in ("period_from", "period_to", "dagboek", "tekst", "project")}
    filters["rekening"] = "4300"
    out = json.loads(
        execute_tool_call(
            tools,
            "get_profit_loss_statement",
            {"period_from": "2024-01", "period_to": "2024-02", "granularity": "YTD", "filters": filters},
        )
    )
    assert out["totals"] == {"Opbrengsten": 0.0, "Kosten": 1000.0, "Resultaat": -1000.0}


def test_execute_tool_call_accepts_mapping_arguments(tools: AnalysisTools):
    out = json.loads(execute_tool_call(tools, "get_post_descriptions", {"post_numbers": ["B100"]}))
    assert out["found_posts"] == 1


@pytest.mark.parametrize(
    ("name", "arguments"),
    [
        ("delete_everything", "{}"),
        ("trend", "{not json"),
        ("trend", "[1, 2]"),
        ("trend", json.dumps({"kpi": "gross_margin"})),
        ("trend", json.dumps({"kpi": "ebitda", "period_from": "2024-01", "period_to": "2024-02"})),
    ],
)
def test_execute_tool_call_errors_are_value_errors(tools: AnalysisTools, name: str, arguments: str):
    with pytest.raises(ValueError):
        execute_tool_call(tools, name, arguments)


# ---- Conversation loop -------------------------------------------------------------


def test_ask_runs_tools_then_answers(monkeypatch: pytest.MonkeyPatch, tools: AnalysisTools):
    stub = _install(
        monkeypatch,
        [
            function_call_response(
                ("get_profit_loss_statement", {"period_from": "2024-01", "period_to": "2024-02"}),
                ("ratio_gross_margin", {"period_from": "2024-01", "period_to": "2024-02"}),
            ),
            text_response("Het resultaat is EUR 12.000."),
        ],
    )

    reply = ask("Wat is het resultaat?", tools, history=[{"role": "user", "content": "Hallo"}])
    assert isinstance(reply, AssistantReply)
    assert reply.text == "Het resultaat is EUR 12.000."
    assert reply.rounds == 2
    assert [t.name for t in reply.tool_calls] == ["get_profit_loss_statement", "ratio_gross_margin"]
    assert all(t.ok for t in reply.tool_calls)

    first, second = stub.calls
    assert first["tools"] is TOOL_SPECS
    assert first["instructions"] == assistant_mod.SYSTEM_INSTRUCTIONS
    assert first["input"] == [
        {"role": "user", "content": "Hallo"},
        {"role": "user", "content": "Wat is het resultaat?"},
    ]
    outputs = [i for i in second["input"] if isinstance(i, dict) and i.get("type") == "function_call_output"]
    assert [o["call_id"] for o in outputs] == ["call_0", "call_1"]
    assert json.loads(outputs[0]["output"])["totals"]["Opbrengsten"] == 22000.0


def test_ask_reports_tool_errors_back_to_the_model(monkeypatch: pytest.MonkeyPatch, tools: AnalysisTools):
    stub = _install(
        monkeypatch,
        [
            function_call_response(("aggregate_by", {"dimension": "land", "period_from": "2024-01", "period_to": "2024-02"})),
            text_response("Die dimensie bestaat niet."),
        ],
    )
    reply = ask("Omzet per land?", tools)
    assert reply.tool_calls[0].ok is False
    output = next(i for i in stub.calls[1]["input"] if isinstance(i, dict) and i.get("type") == "function_call_output")
    assert "error" in json.loads(output["output"])


def test_ask_gives_up_after_max_rounds(monkeypatch: pytest.MonkeyPatch, tools: AnalysisTools):
    call = ("ratio_current", {"as_of_period": "2024-01"})
    _install(monkeypatch, [function_call_response(call) for _ in range(2)])
    with pytest.raises(RuntimeError):
        ask("Blijf rekenen", tools, max_rounds=2)


def test_ask_retries_transient_errors(monkeypatch: pytest.MonkeyPatch, tools: AnalysisTools):
    stub = _install(monkeypatch, [StatusError(429), text_response("ok")])
    assert ask("Hoi", tools).text == "ok"
    assert len(stub.calls) == 2


def test_ask_rejects_empty_question(tools: AnalysisTools):
    with pytest.raises(ValueError):
        ask("   ", tools)


# ---- Titles ------------------------------------------------------------------------


def test_generate_title_limits_words(monkeypatch: pytest.MonkeyPatch):
    _install(monkeypatch, [text_response('"Analyse van de omzet in het eerste kwartaal"')])
    assert generate_title("Hoe ging de omzet in Q1?") == "Analyse van de omzet in het"


def test_generate_title_falls_back_on_failure(monkeypatch: pytest.MonkeyPatch):
    _install(monkeypatch, [StatusError(500)])
    message = "Kun je de kostenstructuur van afgelopen jaar analyseren en vergelijken?"
    assert generate_title(message) == message[:50] + "..."
    _install(monkeypatch, [text_response("")])
    assert generate_title("Kort") == "Kort"
