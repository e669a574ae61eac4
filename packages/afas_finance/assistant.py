"""AI assistant over the deterministic analysis tools.

Public API:
    - :data:`TOOL_SPECS`
    - :func:`execute_tool_call`
    - :func:`ask`
    - :func:`generate_title`

The model never computes figures itself: every number in an answer must come
from a tool result, which carries ``source_refs`` and ``query_hash`` for audit.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from . import llm
from .logging_setup import get_logger
from .statements import AnalysisTools

DEFAULT_MAX_ROUNDS: int = 6
_TITLE_MAX_WORDS: int = 6
_TITLE_FALLBACK_CHARS: int = 50

SYSTEM_INSTRUCTIONS: str = (
    "Je bent een financiële AI assistent voor AFAS-boekhouddata. "
    "Gebruik ALLEEN de beschikbare tools voor berekeningen; reken nooit zelf en verzin geen cijfers. "
    "Periodes hebben het formaat YYYY-MM. "
    "Vermeld bij elk bedrag uit welke tool het komt en noem de query_hash. "
    "Als gegevens ontbreken of een tool een fout geeft, zeg dat expliciet. "
    "Antwoord beknopt in het Nederlands."
)

_TITLE_INSTRUCTIONS: str = (
    "Genereer een korte, beschrijvende titel (maximaal 6 woorden) in het Nederlands voor een "
    "gesprek dat begint met het volgende bericht. Antwoord alleen met de titel, zonder "
    "aanhalingstekens of uitleg."
)

_logger = get_logger("afas_finance.assistant")


# ---- Tool schemas ------------------------------------------------------------


def _nullable(schema: Mapping[str, Any]) -> dict[str, Any]:
    out = dict(schema)
    t = out.get("type")
    out["type"] = [t, "null"] if isinstance(t, str) else [*t, "null"]
    if "enum" in out:
        out["enum"] = [*out["enum"], None]
    return out


def _function(name: str, description: str, properties: Mapping[str, Any]) -> dict[str, Any]:
    # Strict mode requires every property to be listed as required; optional
    # arguments are expressed as nullable types instead.
    return {
        "type": "function",
        "name": name,
        "description": description,
        "parameters": {
            "type": "object",
            "properties": dict(properties),
            "required": list(properties),
            "additionalProperties": False,
        },
        "strict": True,
    }


_PERIOD = {"type": "string", "description": "Periode YYYY-MM"}
_DIMENSION = {
    "type": "string",
    "enum": ["rekening", "post", "kostenplaats", "project", "debiteur", "crediteur"],
}

_FILTERS: dict[str, Any] = _nullable(
    {
        "type": "object",
        "properties": {
            "period_from": _nullable(_PERIOD),
            "period_to": _nullable(_PERIOD),
            "rekening": {"type": ["string", "null"]},
            "dagboek": {"type": ["string", "null"]},
            "bedrag_min": {"type": ["number", "null"]},
            "bedrag_max": {"type": ["number", "null"]},
            "tekst": {"type": ["string", "null"]},
            "boekstuknummer": {"type": ["string", "null"]},
            "kostenplaats": {"type": ["string", "null"]},
            "project": {"type": ["string", "null"]},
        },
        "required": [
            "period_from",
            "period_to",
            "rekening",
            "dagboek",
            "bedrag_min",
            "bedrag_max",
            "tekst",
            "boekstuknummer",
            "kostenplaats",
            "project",
        ],
        "additionalProperties": False,
    }
)

_TEMPLATE_PARAMS: dict[str, Any] = _nullable(
    {
        "type": "object",
        "properties": {
            k: {"type": [t, "null"]}
            for k, t in (
                ("asset_cost", "number"),
                ("useful_life_months", "integer"),
                ("start_date", "string"),
                ("contra_account", "string"),
                ("pv_lease_payments", "number"),
                ("right_of_use_account", "string"),
                ("lease_liability_account", "string"),
                ("opening_liability", "number"),
                ("interest_rate", "number"),
                ("payment", "number"),
                ("months_elapsed", "integer"),
            )
        },
        "required": [
            "asset_cost",
            "useful_life_months",
            "start_date",
            "contra_account",
            "pv_lease_payments",
            "right_of_use_account",
            "lease_liability_account",
            "opening_liability",
            "interest_rate",
            "payment",
            "months_elapsed",
        ],
        "additionalProperties": False,
    }
)

TOOL_SPECS: list[dict[str, Any]] = [
    _function(
        "get_profit_loss_statement",
        "Winst- en verliesrekening (Opbrengsten, Kosten, Resultaat) per periode.",
        {
            "period_from": _PERIOD,
            "period_to": _PERIOD,
            "granularity": _nullable({"type": "string", "enum": ["month", "quarter", "YTD"]}),
            "filters": _FILTERS,
        },
    ),
    _function(
        "get_balance_sheet",
        "Balans per peildatum met activa, passiva en eigen vermogen.",
        {
            "as_of_period": _PERIOD,
            "side": _nullable({"type": "string", "enum": ["both", "assets", "liabilities", "equity"]}),
            "include_opening_balance": {"type": ["boolean", "null"]},
        },
    ),
    _function(
        "get_opening_balance",
        "Beginbalans: alle boekingen voor de opgegeven periode.",
        {"period_start": _PERIOD},
    ),
    _function(
        "get_cash_flow_statement",
        "Kasstroomoverzicht (indirecte methode) over een periode.",
        {"period_from": _PERIOD, "period_to": _PERIOD},
    ),
    _function(
        "list_journal_entries",
        "Journaalposten met filters, gepagineerd.",
        {
            "filters": _FILTERS,
            "limit": {"type": ["integer", "null"]},
            "offset": {"type": ["integer", "null"]},
        },
    ),
    _function(
        "aggregate_by",
        "Totaal (debet - credit) per dimensie, grootste bedragen eerst.",
        {
            "dimension": _DIMENSION,
            "period_from": _PERIOD,
            "period_to": _PERIOD,
            "top_n": {"type": ["integer", "null"]},
            "filters": _FILTERS,
        },
    ),
    _function(
        "variance_report",
        "Vergelijk periode A met periode B per dimensie.",
        {
            "a_from": _PERIOD,
            "a_to": _PERIOD,
            "b_from": _PERIOD,
            "b_to": _PERIOD,
            "dimension": _nullable(_DIMENSION),
        },
    ),
    _function(
        "top_deviations",
        "Grootste stijgers en dalers ten opzichte van vorige periode of vorig jaar.",
        {
            "period_from": _PERIOD,
            "period_to": _PERIOD,
            "compare_to": _nullable(
                {"type": "string", "enum": ["prev_period", "same_period_last_year"]}
            ),
            "n": {"type": ["integer", "null"]},
            "dimension": _nullable(_DIMENSION),
        },
    ),
    _function(
        "explain_account_change",
        "Verklaar de verandering van een post tussen twee maanden.",
        {
            "account_or_post": {"type": "string"},
            "a_period": _PERIOD,
            "b_period": _PERIOD,
            "breakdown": _nullable(
                {"type": "string", "enum": ["rekening", "kostenplaats", "project", "boekstuk"]}
            ),
        },
    ),
    _function(
        "anomaly_scan",
        "Zoek afwijkende bedragen via z-score.",
        {
            "period_from": _PERIOD,
            "period_to": _PERIOD,
            "zscore": {"type": ["number", "null"]},
            "min_amount": {"type": ["number", "null"]},
            "by": _nullable({"type": "string", "enum": ["post", "rekening"]}),
        },
    ),
    _function(
        "reconcile_pl_to_balance",
        "Aansluiting resultaat met mutatie eigen vermogen.",
        {"period_from": _PERIOD, "period_to": _PERIOD},
    ),
    _function("ratio_current", "Current ratio (benadering).", {"as_of_period": _PERIOD}),
    _function("ratio_quick", "Quick ratio (benadering).", {"as_of_period": _PERIOD}),
    _function("ratio_debt_to_equity", "Schuld/eigen vermogen (benadering).", {"as_of_period": _PERIOD}),
    _function(
        "ratio_gross_margin",
        "Brutomarge over een periode.",
        {"period_from": _PERIOD, "period_to": _PERIOD},
    ),
    _function(
        "trend",
        "KPI per maand met gemiddelde en standaarddeviatie. KPI: current_ratio, quick_ratio, "
        "debt_to_equity, gross_margin of post:<categorie>.",
        {"kpi": {"type": "string"}, "period_from": _PERIOD, "period_to": _PERIOD},
    ),
    _function(
        "aging_report",
        "Ouderdomsanalyse debiteuren of crediteuren (benadering).",
        {
            "entity": {"type": "string", "enum": ["debiteuren", "crediteuren"]},
            "as_of_period": _PERIOD,
            "buckets": {"type": ["array", "null"], "items": {"type": "string"}},
            "detail": {"type": ["boolean", "null"]},
        },
    ),
    _function(
        "journal_template",
        "Conceptboekingen voor afschrijving of IFRS 16 lease.",
        {
            "template": {
                "type": "string",
                "enum": ["depreciation", "ifrs16_initial", "ifrs16_monthly"],
            },
            "params": _TEMPLATE_PARAMS,
        },
    ),
    _function(
        "get_transaction_details",
        "Transacties gegroepeerd per boekstuk met detailregels.",
        {"filters": _FILTERS},
    ),
    _function(
        "get_post_descriptions",
        "Omschrijvingen en rekeningen van specifieke boekstuknummers.",
        {
            "post_numbers": {"type": "array", "items": {"type": "string"}},
            "period_from": _nullable(_PERIOD),
            "period_to": _nullable(_PERIOD),
        },
    ),
]

TOOL_NAMES: frozenset[str] = frozenset(spec["name"] for spec in TOOL_SPECS)


# ---- Dispatch ----------------------------------------------------------------


def _drop_nulls(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _drop_nulls(v) for k, v in value.items() if v is not None}
    return value


def execute_tool_call(tools: AnalysisTools, name: str, arguments_json: str | Mapping[str, Any]) -> str:
    """Run one tool by name and return its result as JSON text.

    ``null`` arguments are dropped so the tool's defaults apply. Unknown tool
    names and malformed arguments raise ``ValueError``.
    """

    if name not in TOOL_NAMES:
        raise ValueError(f"Unknown tool {name!r}")
    if isinstance(arguments_json, Mapping):
        args = dict(arguments_json)
    else:
        try:
            args = json.loads(arguments_json or "{}")
        except json.JSONDecodeError as e:
            raise ValueError(f"Tool {name!r} arguments are not valid JSON") from e
        if not isinstance(args, dict):
            raise ValueError(f"Tool {name!r} arguments must be a JSON object")

    fn: Callable[..., dict[str, Any]] = getattr(tools, name)
    try:
        result = fn(**_drop_nulls(args))
    except TypeError as e:
        raise ValueError(f"Tool {name!r} received invalid arguments: {e}") from e
    return json.dumps(result, ensure_ascii=False, default=str)


# ---- Conversation loop -------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ToolInvocation:
    name: str
    arguments: str
    ok: bool


@dataclass(frozen=True, slots=True)
class AssistantReply:
    """Final answer text plus the tool calls that produced it."""

    text: str
    tool_calls: tuple[ToolInvocation, ...] = field(default_factory=tuple)
    rounds: int = 0


def _function_calls(resp: Any) -> list[Any]:
    return [item for item in (getattr(resp, "output", None) or ()) if getattr(item, "type", None) == "function_call"]


def ask(
    question: str,
    tools: AnalysisTools,
    history: Sequence[Mapping[str, Any]] | None = None,
    max_rounds: int = DEFAULT_MAX_ROUNDS,
) -> AssistantReply:
    """Answer ``question`` using the Responses API with function calling.

    Parameters
    ----------
    question:
        The user's message.
    tools:
        Analysis tools bound to the dataset the answer must be based on.
    history:
        Prior ``{"role", "content"}`` messages of the conversation.
    max_rounds:
        Maximum number of model calls. A model that keeps requesting tools
        beyond this raises ``RuntimeError``.
    """

    if not question or not question.strip():
        raise ValueError("question must be a non-empty string")

    client = llm.create_client()
    model = llm.model_name()
    conversation: list[Any] = [dict(m) for m in (history or ())]
    conversation.append({"role": "user", "content": question})
    invocations: list[ToolInvocation] = []

    for round_no in range(1, max_rounds + 1):
        resp = llm.call_with_retry(
            lambda: client.responses.create(
                model=model,
                instructions=SYSTEM_INSTRUCTIONS,
                input=conversation,
                tools=TOOL_SPECS,
            ),
            area="assistant",
            label=f"round={round_no}",
        )
        calls = _function_calls(resp)
        if not calls:
            text = llm.extract_response_text(resp)
            _logger.info(
                "assistant:answered rounds=%d tool_calls=%d", round_no, len(invocations)
            )
            return AssistantReply(text=text, tool_calls=tuple(invocations), rounds=round_no)

        conversation.extend(getattr(resp, "output", None) or ())
        for call in calls:
            name = getattr(call, "name", "")
            arguments = getattr(call, "arguments", "") or "{}"
            try:
                output = execute_tool_call(tools, name, arguments)
                ok = True
            except ValueError as e:
                # Reported back to the model so it can correct the call.
                _logger.warning("assistant:tool_error name=%s error=%s", name, e)
                output = json.dumps({"error": str(e)}, ensure_ascii=False)
                ok = False
            invocations.append(ToolInvocation(name=name, arguments=arguments, ok=ok))
            conversation.append(
                {
                    "type": "function_call_output",
                    "call_id": getattr(call, "call_id", None),
                    "output": output,
                }
            )
        _logger.info("assistant:round_done round=%d tool_calls=%d", round_no, len(calls))

    raise RuntimeError(f"assistant exceeded {max_rounds} rounds without a final answer")


def _fallback_title(message: str) -> str:
    text = message.strip()
    if len(text) <= _TITLE_FALLBACK_CHARS:
        return text
    return text[:_TITLE_FALLBACK_CHARS] + "..."


def generate_title(first_message: str) -> str:
    """Short Dutch title for a conversation; never raises on model failure."""

    try:
        client = llm.create_client()
        resp = client.responses.create(
            model=llm.model_name(),
            instructions=_TITLE_INSTRUCTIONS,
            input=first_message,
        )
        title = llm.extract_response_text(resp).strip().strip("\"'").strip()
    except Exception as e:  # noqa: BLE001 - title is cosmetic
        _logger.warning("assistant:title_failed error=%s", e.__class__.__name__)
        return _fallback_title(first_message)
    if not title:
        return _fallback_title(first_message)
    return " ".join(title.split()[:_TITLE_MAX_WORDS])


__all__ = [
    "AssistantReply",
    "DEFAULT_MAX_ROUNDS",
    "SYSTEM_INSTRUCTIONS",
    "TOOL_NAMES",
    "TOOL_SPECS",
    "ToolInvocation",
    "ask",
    "execute_tool_call",
    "generate_title",
]
