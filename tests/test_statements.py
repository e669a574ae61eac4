from __future__ import annotations

import json
import logging

import pytest

from afas_finance import statements as statements_mod
from afas_finance.models import PeriodRange
from afas_finance.statements import (
    AnalysisTools,
    collect_source_refs,
    compute_query_hash,
    filter_records,
    sanitize_range,
)
from tests.helpers.ledger import sample_ledger


@pytest.fixture
def tools() -> AnalysisTools:
    return AnalysisTools(sample_ledger(), current_year=2024)


# ---- Helpers ---------------------------------------------------------------------


def test_query_hash_is_deterministic_and_parameter_sensitive():
    a = compute_query_hash("trend", {"kpi": "gross_margin", "period_from": "2024-01"})
    b = compute_query_hash("trend", {"kpi": "gross_margin", "period_from": "2024-01"})
    c = compute_query_hash("trend", {"kpi": "gross_margin", "period_from": "2024-02"})
    assert a == b
    assert a != c
    assert len(a) == 64


def test_collect_source_refs_distinct_first_seen():
    rows = [{"Boekstuknummer": "B2"}, {"Boekstuknummer": None}, {"Boekstuknummer": "B1"}, {"Boekstuknummer": "B2"}]
    assert collect_source_refs(rows) == ["B2", "B1"]


@pytest.mark.parametrize(
    ("args", "expected"),
    [
        ((2024, 1, 2024, 6), PeriodRange(2024, 1, 2024, 6)),
        ((2019, 1, 2024, 6), PeriodRange(2024, 1, 2024, 6)),
        ((2024, 1, 2030, 6), PeriodRange(2024, 1, 2024, 6)),
        (("x", 1, 2024, 6), PeriodRange(2024, 1, 2024, 6)),
        ((2024, 13, 2024, 0), PeriodRange(2024, 1, 2024, 12)),
        ((2024, 6, 2024, 2), PeriodRange(2024, 2, 2024, 6)),
        ((2024, 1, 2023, 6), PeriodRange(2023, 6, 2024, 1)),
    ],
)
def test_sanitize_range(args, expected):
    assert sanitize_range(*args, current_year=2024) == expected


def test_sanitize_range_caps_span_and_logs(caplog: pytest.LogCaptureFixture):
    with caplog.at_level(logging.WARNING, logger="afas_finance.statements"):
        out = sanitize_range(2020, 1, 2025, 12, current_year=2025)
    assert out == PeriodRange(2020, 1, 2023, 12)
    assert any("range:too_wide" in r.getMessage() for r in caplog.records)


def test_filter_records_ignores_none_and_applies_predicates():
    rows = sample_ledger()
    assert len(filter_records(rows, {"rekening": None, "tekst": ""})) == len(rows)
    assert len(filter_records(rows, {"rekening": "8000"})) == 3
    assert len(filter_records(rows, {"period_from": "2024-01", "period_to": "2024-01"})) == 4
    assert [r["Boekstuknummer"] for r in filter_records(rows, {"tekst": "HUUR"})] == ["B202"]
    assert len(filter_records(rows, {"dagboek": "70"})) == 3
    # debet - credit; revenue rows are negative
    assert len(filter_records(rows, {"bedrag_max": -9000})) == 2
    assert len(filter_records(rows, {"bedrag_min": 0, "bedrag_max": 0})) == 0


# ---- Statements ------------------------------------------------------------------


def test_profit_loss_per_month(tools: AnalysisTools):
    pnl = tools.get_profit_loss_statement("2024-01", "2024-02")
    assert pnl["rows"][:3] == [
        {"post": "Opbrengsten", "periode": "2024-02", "bedrag": 12000.0},
        {"post": "Kosten", "periode": "2024-02", "bedrag": 6000.0},
        {"post": "Resultaat", "periode": "2024-02", "bedrag": 6000.0},
    ]
    assert pnl["totals"] == {"Opbrengsten": 22000.0, "Kosten": 10000.0, "Resultaat": 12000.0}
    assert pnl["source_refs"] == ["B200", "B201", "B202", "B100", "B101"]
    assert pnl["query_hash"] == tools.get_profit_loss_statement("2024-01", "2024-02")["query_hash"]


def test_profit_loss_applies_filters(tools: AnalysisTools):
    pnl = tools.get_profit_loss_statement("2024-01", "2024-02", filters={"rekening": "4300", "tekst": None})
    assert pnl["rows"] == [
        {"post": "Opbrengsten", "periode": "2024-02", "bedrag": 0.0},
        {"post": "Kosten", "periode": "2024-02", "bedrag": 1000.0},
        {"post": "Resultaat", "periode": "2024-02", "bedrag": -1000.0},
    ]
    assert pnl["totals"] == {"Opbrengsten": 0.0, "Kosten": 1000.0, "Resultaat": -1000.0}
    assert pnl["source_refs"] == ["B202"]
    assert pnl["query_hash"] != tools.get_profit_loss_statement("2024-01", "2024-02")["query_hash"]

    by_journal = tools.get_profit_loss_statement("2024-01", "2024-02", filters={"dagboek": "90"})
    assert by_journal["totals"] == {"Opbrengsten": 22000.0, "Kosten": 0.0, "Resultaat": 22000.0}


@pytest.mark.parametrize(("granularity", "label"), [("quarter", "2024-Q1"), ("YTD", "2024")])
def test_profit_loss_grouped(tools: AnalysisTools, granularity: str, label: str):
    pnl = tools.get_profit_loss_statement("2024-01", "2024-02", granularity)
    assert {"post": "Opbrengsten", "periode": label, "bedrag": 22000.0} in pnl["rows"]
    assert len(pnl["rows"]) == 3


def test_missing_view_is_a_runtime_error(tools: AnalysisTools, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(statements_mod, "build_financial_view", lambda records, range_: None)
    with pytest.raises(RuntimeError):
        tools.get_profit_loss_statement("2024-01", "2024-02")


def test_profit_loss_rejects_unknown_granularity(tools: AnalysisTools):
    with pytest.raises(ValueError):
        tools.get_profit_loss_statement("2024-01", "2024-02", "week")


def test_profit_loss_sanitizes_out_of_range_years(tools: AnalysisTools):
    # 2015 is before the supported window and is replaced by the current year.
    pnl = tools.get_profit_loss_statement("2015-01", "2024-02")
    assert pnl["totals"]["Opbrengsten"] == 22000.0


def test_balance_sheet_buckets_by_category_name(tools: AnalysisTools):
    bs = tools.get_balance_sheet("2024-01")
    assert bs["assets"] == [{"post": "Debiteuren", "amount": -10000.0}]
    assert bs["liabilities"] == [{"post": "Crediteuren", "amount": 4000.0}]
    assert bs["equity"] == []
    assert bs["totals"] == {
        "activa": -10000.0,
        "vreemdVermogen": 4000.0,
        "eigenVermogen": -14000.0,
        "totaalPassiva": -10000.0,
    }
    assert bs["openingBalance"]["recordCount"] == 1
    assert bs["source_refs"] == ["B100", "B101"]


def test_balance_sheet_side_selection(tools: AnalysisTools):
    bs = tools.get_balance_sheet("2024-01", side="assets", include_opening_balance=False)
    assert "assets" in bs and "liabilities" not in bs and "equity" not in bs
    assert bs["openingBalance"] is None
    with pytest.raises(ValueError):
        tools.get_balance_sheet("2024-01", side="left")


def test_opening_balance_sums_everything_before_the_period(tools: AnalysisTools):
    ob = tools.get_opening_balance("2024-01")
    assert ob["periodBefore"] == "2024-01"
    assert ob["recordCount"] == 1
    assert ob["totals"]["accumulatedPL"] == -8000.0
    assert ob["totals"]["eigenVermogen"] == -8000.0
    assert ob["categories"]["Omzet"]["netAmount"] == -8000.0
    assert ob["accounts"]["8000-Onbekend"]["recordCount"] == 1
    assert ob["source_refs"] == ["B050"]


def test_cash_flow_indirect(tools: AnalysisTools):
    cf = tools.get_cash_flow_statement("2024-01", "2024-02")
    assert cf["operating"]["result"] == 12000.0
    assert cf["operating"]["working_capital"] == {
        "delta_debiteuren": 10000.0,
        "delta_voorraad": 0.0,
        "delta_crediteuren": -4000.0,
    }
    assert cf["operating"]["net"] == 6000.0
    assert cf["investing"] == {"total": 0.0}
    assert cf["total"] == 6000.0


def test_cash_flow_without_data(tools: AnalysisTools):
    cf = tools.get_cash_flow_statement("2025-01", "2025-02")
    assert cf["operating"] == {}
    assert cf["total"] == 0.0
    assert cf["source_refs"] == []


# ---- Drill-down ------------------------------------------------------------------


def test_list_journal_entries_paging(tools: AnalysisTools):
    out = tools.list_journal_entries({"rekening": "8000"}, limit=2)
    assert out["count"] == 3
    assert len(out["entries"]) == 2
    assert out["entries"][0]["Categorie"] == "Omzet"
    assert out["entries"][0]["Dagboek"] == "90"
    assert out["source_refs"] == ["B100", "B200", "B050"]
    page2 = tools.list_journal_entries({"rekening": "8000"}, limit=2, offset=2)
    assert [e["Boekstuknummer"] for e in page2["entries"]] == ["B050"]


def test_aggregate_by_post_sorted_by_magnitude(tools: AnalysisTools):
    agg = tools.aggregate_by("post", "2024-01", "2024-02")
    assert [r["key"] for r in agg["rows"]] == [
        "Omzet",
        "Debiteuren",
        "Inkoopwaarde",
        "Crediteuren",
        "Huisvestingskosten",
    ]
    assert agg["rows"][0]["amount"] == -22000.0
    assert agg["top_n_applied"] is False

    top = tools.aggregate_by("rekening", "2024-01", "2024-02", top_n=2)
    assert top["top_n_applied"] is True
    assert top["rows"] == [{"key": "8000", "amount": -22000.0}, {"key": "1300", "amount": 10000.0}]


def test_aggregate_by_unknown_dimension(tools: AnalysisTools):
    with pytest.raises(ValueError):
        tools.aggregate_by("land", "2024-01", "2024-02")


def test_variance_report(tools: AnalysisTools):
    vr = tools.variance_report("2024-02", "2024-02", "2024-01", "2024-01")
    rows = {r["dimension_key"]: r for r in vr["rows"]}
    assert rows["Omzet"]["delta_abs"] == -2000.0
    assert rows["Omzet"]["delta_pct"] == pytest.approx(-20.0)
    assert rows["Huisvestingskosten"]["amount_b"] == 0.0
    assert rows["Huisvestingskosten"]["delta_pct"] is None
    assert "Debiteuren" not in rows


def test_top_deviations_against_previous_month(tools: AnalysisTools):
    td = tools.top_deviations("2024-02", "2024-02", "prev_period", n=5)
    assert td["increases"] == [
        {"key": "Inkoopwaarde", "delta": 1000.0},
        {"key": "Huisvestingskosten", "delta": 1000.0},
    ]
    assert td["decreases"] == [{"key": "Omzet", "delta": -2000.0}]
    with pytest.raises(ValueError):
        tools.top_deviations("2024-02", "2024-02", "next_year")


def test_explain_account_change(tools: AnalysisTools):
    out = tools.explain_account_change("Inkoopwaarde", "2024-01", "2024-02")
    assert out["delta"] == 1000.0
    assert out["drivers"] == [{"key": "7000", "delta": 1000.0, "share_pct": 100.0}]
    assert out["source_refs"] == ["B101", "B201"]


def test_anomaly_scan(tools: AnalysisTools):
    assert tools.anomaly_scan("2024-01", "2024-02")["anomalies"] == []
    out = tools.anomaly_scan("2024-01", "2024-02", zscore=1.5, min_amount=1000)
    assert [a["key"] for a in out["anomalies"]] == ["Omzet"]
    assert out["anomalies"][0]["zscore"] > 1.5


# ---- Checks and ratios -------------------------------------------------------------


def test_reconcile_needs_two_months(tools: AnalysisTools):
    out = tools.reconcile_pl_to_balance("2024-01", "2024-01")
    assert out["ok"] is False
    assert out["diffs"][0]["type"] == "InsufficientData"


def test_reconcile_reports_equity_difference(tools: AnalysisTools):
    out = tools.reconcile_pl_to_balance("2024-01", "2024-02")
    # equity change (-14000 -> 0) minus result 12000
    assert out["ok"] is False
    assert out["diffs"] == [
        {
            "type": "EV_vs_Resultaat",
            "amount": 2000.0,
            "hint": "Controleer begin/eindboekingen en mutaties eigen vermogen",
        }
    ]


def test_ratios(tools: AnalysisTools):
    cr = tools.ratio_current("2024-01")
    assert cr["numerator"] == pytest.approx(-6000.0)
    assert cr["denominator"] == pytest.approx(2800.0)

    de = tools.ratio_debt_to_equity("2024-01")
    assert de["value"] == pytest.approx(4000 / -14000)

    gm = tools.ratio_gross_margin("2024-01", "2024-02")
    assert gm["value"] == pytest.approx(12000 / 22000)

    empty = AnalysisTools([], current_year=2024)
    assert empty.ratio_current("2024-01")["value"] == 0.0
    assert empty.ratio_debt_to_equity("2024-01")["value"] is None
    assert empty.ratio_gross_margin("2024-01", "2024-02")["value"] is None


def test_trend(tools: AnalysisTools):
    out = tools.trend("post:Omzet", "2024-01", "2024-02")
    assert out["points"] == [
        {"periode": "2024-01", "value": 10000.0},
        {"periode": "2024-02", "value": 12000.0},
    ]
    assert out["avg"] == 11000.0
    assert out["stdev"] == 1000.0

    by_account = tools.trend("rekening:8000", "2024-01", "2024-02")
    assert [p["value"] for p in by_account["points"]] == [None, None]

    with pytest.raises(ValueError):
        tools.trend("ebitda", "2024-01", "2024-02")


# ---- Other tools -------------------------------------------------------------------


def test_aging_report_spreads_balance(tools: AnalysisTools):
    out = tools.aging_report("debiteuren", "2024-01")
    assert [b["amount"] for b in out["buckets"]] == [5000.0, 2500.0, 1500.0, 1000.0]
    assert [b["range"] for b in out["buckets"]] == ["0-30", "31-60", "61-90", ">90"]
    assert "detail_rows" not in out
    assert len(tools.aging_report("crediteuren", "2024-01", detail=True)["detail_rows"]) == 4
    with pytest.raises(ValueError):
        tools.aging_report("voorraad", "2024-01")


def test_journal_templates(tools: AnalysisTools):
    dep = tools.journal_template(
        "depreciation", {"asset_cost": 12000, "useful_life_months": 12, "start_date": "2024-01-01"}
    )
    assert [(e["debit"], e["credit"]) for e in dep["entries"]] == [(1000.0, 0), (0, 1000.0)]

    monthly = tools.journal_template(
        "ifrs16_monthly", {"opening_liability": 10000, "interest_rate": 0.01, "payment": 500}
    )
    assert [e["debit"] for e in monthly["entries"]] == [pytest.approx(100.0), pytest.approx(400.0), 0]

    initial = tools.journal_template("ifrs16_initial", {"pv_lease_payments": 36000})
    assert initial["entries"][0]["rekening"] == "ROU-asset"

    with pytest.raises(ValueError):
        tools.journal_template("accrual")


def test_transaction_details_grouped_per_document(tools: AnalysisTools):
    out = tools.get_transaction_details({"rekening": "8000"})
    assert [t["boekstuknummer"] for t in out["transactions"]] == ["B200", "B100", "B050"]
    first = out["transactions"][0]
    assert first["netAmount"] == 12000.0
    assert first["transactie_type"] == "Verkoop"
    assert first["detail_regels"][0]["categorie"] == "Omzet"
    assert out["total_found"] == 3
    assert out["analysis_summary"]["periods_covered"] == ["2023-12", "2024-01", "2024-02"]
    assert out["analysis_summary"]["dagboeken_involved"] == ["90"]
    assert out["query_hash"] == compute_query_hash("transaction_details", {"rekening": "8000"})


def test_post_descriptions(tools: AnalysisTools):
    out = tools.get_post_descriptions(["B100", "X9"])
    assert out["found_posts"] == 1
    assert out["missing_posts"] == ["X9"]
    b100 = out["posts"][0]
    assert b100["aantal_regels"] == 2
    assert b100["netto_bedrag"] == 0.0
    assert b100["dagboek_type"] == "Verkoop"
    assert {a["rekening"] for a in b100["betrokken_rekeningen"]} == {"8000", "1300"}
    assert out["context_summary"].startswith("Post B100 (2024-01)")


def test_results_are_json_serialisable(tools: AnalysisTools):
    for result in (
        tools.get_balance_sheet("2024-02"),
        tools.get_cash_flow_statement("2024-01", "2024-02"),
        tools.get_transaction_details({}),
    ):
        json.dumps(result)
