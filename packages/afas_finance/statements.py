"""Deterministic financial statements and analysis tools over AFAS rows.

:class:`AnalysisTools` wraps a fixed list of ledger rows and exposes the
operations the assistant can call (profit and loss, balance sheet, opening
balance, cash flow, drill-downs, variance/anomaly analysis, ratios, trends and
transaction details). Every result is a JSON-serialisable ``dict`` carrying:

- ``source_refs``: distinct ``Boekstuknummer`` values of the rows involved;
- ``query_hash``: sha256 over ``{"functionName": ..., "params": ...}`` so a
  caller can audit which computation produced a number.

Period arguments are ``"YYYY-MM"`` strings. Requested ranges pass through
:func:`sanitize_range` before any aggregation.
"""

from __future__ import annotations

import hashlib
import json
import math
from collections.abc import Iterable, Mapping, Sequence
from datetime import date
from typing import Any

from .categories import ACTIVA, CREDITEUREN, DEBITEUREN, KOSTEN, OPBRENGSTEN, PASSIVA
from .logging_setup import get_logger
from .models import FinancialView, MonthBucket, PeriodRange, parse_period, period_key
from .records import iter_ledger_lines, parse_amount, parse_int
from .transform import build_financial_view

MIN_YEAR = 2020
MAX_YEAR_SPAN = 3

DIMENSIONS: tuple[str, ...] = ("rekening", "post", "kostenplaats", "project", "debiteur", "crediteur")
GRANULARITIES: tuple[str, ...] = ("month", "quarter", "YTD")
COMPARE_TO: tuple[str, ...] = ("prev_period", "same_period_last_year")
BALANCE_SIDES: tuple[str, ...] = ("both", "assets", "liabilities", "equity")

DAGBOEK_TYPES: dict[str, str] = {
    "70": "Inkoop",
    "90": "Verkoop",
    "95": "Voorraad",
    "40": "Bank/Kas",
    "20": "Memoriaal",
}

_ASSET_WORDS = (
    "debiteur",
    "voorraad",
    "bank",
    "kas",
    "liquide",
    "materieel",
    "immaterieel",
    "activa",
    "onderhanden",
    "overlopende activa",
    "overige vorderingen",
)
_LIABILITY_WORDS = (
    "crediteur",
    "lening",
    "schuld",
    "passiva",
    "btw",
    "belast",
    "nog te betalen",
    "overige reserves",
    "overige schulden",
    "overige voorzieningen",
    "pensioenen",
    "loonheffing",
    "vennootschapsbelasting",
)
_EQUITY_WORDS = ("eigen vermogen",)

_INVESTING_CATEGORIES = ("Vaste activa", "Investeringen")
_FINANCING_CATEGORIES = ("Leningen", "Lease", "Dividend")

_AGING_SPLIT = (0.5, 0.25, 0.15, 0.10)
_TRANSACTION_DETAIL_LIMIT = 20

_logger = get_logger("afas_finance.statements")


# ---- Shared helpers ----------------------------------------------------------


def compute_query_hash(function_name: str, params: Mapping[str, Any]) -> str:
    payload = json.dumps(
        {"functionName": function_name, "params": params},
        ensure_ascii=False,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def collect_source_refs(rows: Iterable[Mapping[str, Any]]) -> list[Any]:
    """Distinct truthy ``Boekstuknummer`` values in first-seen order."""

    seen: dict[Any, None] = {}
    for r in rows:
        ref = r.get("Boekstuknummer")
        if ref:
            seen.setdefault(ref, None)
    return list(seen)


def _debet(row: Mapping[str, Any]) -> float:
    return parse_amount(row.get("Bedrag_debet"))


def _credit(row: Mapping[str, Any]) -> float:
    return parse_amount(row.get("Bedrag_credit"))


def _debit_minus_credit(row: Mapping[str, Any]) -> float:
    return _debet(row) - _credit(row)


def _is_valid_year(value: Any, lo: int, hi: int) -> bool:
    year = parse_int(value)
    return year is not None and lo <= year <= hi


def _is_valid_month(value: Any) -> bool:
    month = parse_int(value)
    return month is not None and 1 <= month <= 12


def sanitize_range(
    start_year: Any,
    start_month: Any,
    end_year: Any,
    end_month: Any,
    *,
    current_year: int | None = None,
) -> PeriodRange:
    """Normalise a requested range before it is used for aggregation.

    - Years outside ``[2020, current_year + 1]`` become ``current_year``.
    - Invalid start/end months become ``1``/``12``.
    - Reversed ranges are swapped.
    - Spans longer than three years are cut to ``start_year + 3``.

    Every correction is logged at WARNING.
    """

    cy = current_year if current_year is not None else date.today().year
    max_year = cy + 1

    if not _is_valid_year(start_year, MIN_YEAR, max_year):
        _logger.warning("range:invalid_start_year value=%r using=%d", start_year, cy)
        start_year = cy
    if not _is_valid_year(end_year, MIN_YEAR, max_year):
        _logger.warning("range:invalid_end_year value=%r using=%d", end_year, cy)
        end_year = cy
    if not _is_valid_month(start_month):
        _logger.warning("range:invalid_start_month value=%r using=1", start_month)
        start_month = 1
    if not _is_valid_month(end_month):
        _logger.warning("range:invalid_end_month value=%r using=12", end_month)
        end_month = 12

    sy, sm = int(start_year), int(start_month)
    ey, em = int(end_year), int(end_month)

    if sy > ey or (sy == ey and sm > em):
        _logger.warning("range:reversed from=%d-%02d to=%d-%02d swapping", sy, sm, ey, em)
        sy, ey = ey, sy
        sm, em = em, sm

    if ey - sy > MAX_YEAR_SPAN:
        _logger.warning("range:too_wide years=%d limit=%d", ey - sy, MAX_YEAR_SPAN)
        ey = sy + MAX_YEAR_SPAN

    return PeriodRange(sy, sm, ey, em)


def _before(row_year: int | None, row_month: int | None, year: int, month: int) -> bool:
    if row_year is None or row_month is None:
        return False
    return row_year < year or (row_year == year and row_month < month)


def filter_records(
    rows: Iterable[Mapping[str, Any]], filters: Mapping[str, Any] | None
) -> list[Mapping[str, Any]]:
    """Apply drill-down predicates to annotated rows.

    Supported keys: ``period_from``, ``period_to``, ``rekening``, ``dagboek``,
    ``bedrag_min``, ``bedrag_max`` (on debet - credit), ``tekst`` (substring
    over the three description fields), ``boekstuknummer``, ``kostenplaats``,
    ``project``. ``None`` values are ignored.
    """

    rows = list(rows)
    if not filters:
        return rows

    f = {k: v for k, v in filters.items() if v is not None and v != ""}
    pf = parse_period(f["period_from"]) if "period_from" in f else None
    pt = parse_period(f["period_to"]) if "period_to" in f else None
    tekst = str(f["tekst"]).lower() if "tekst" in f else None

    out: list[Mapping[str, Any]] = []
    for r in rows:
        y = parse_int(r.get("Jaar"))
        m = parse_int(r.get("Periode"))
        if pf is not None and (y is None or m is None or _before(y, m, *pf)):
            continue
        if pt is not None and (y is None or m is None or _before(*pt, y, m)):
            continue
        if "rekening" in f and str(r.get("Rekeningnummer")) != str(f["rekening"]):
            continue
        if "dagboek" in f and str(r.get("Code_dagboek") or r.get("Dagboek")) != str(f["dagboek"]):
            continue
        amount = _debit_minus_credit(r)
        if "bedrag_min" in f and amount < float(f["bedrag_min"]):
            continue
        if "bedrag_max" in f and amount > float(f["bedrag_max"]):
            continue
        if tekst is not None:
            haystack = " ".join(
                str(r.get(k) or "") for k in ("Omschrijving", "Omschrijving_2", "Omschrijving_3")
            ).lower()
            if tekst not in haystack:
                continue
        if "boekstuknummer" in f and str(r.get("Boekstuknummer")) != str(f["boekstuknummer"]):
            continue
        if "kostenplaats" in f and str(
            r.get("Kostenplaats") or r.get("KostenplaatsCode")
        ) != str(f["kostenplaats"]):
            continue
        if "project" in f and str(r.get("Project") or r.get("ProjectCode")) != str(f["project"]):
            continue
        out.append(r)
    return out


def _dimension_key(row: Mapping[str, Any], dimension: str) -> str:
    if dimension == "rekening":
        return str(row.get("Rekeningnummer") or "")
    if dimension == "post":
        return str(row.get("Categorie") or row.get("Omschrijving_3") or "Overige")
    if dimension == "kostenplaats":
        return str(row.get("Kostenplaats") or row.get("KostenplaatsCode") or "")
    if dimension == "project":
        return str(row.get("Project") or row.get("ProjectCode") or "")
    if dimension == "debiteur":
        return str(row.get("Debiteur") or row.get("Relatie") or "")
    if dimension == "crediteur":
        return str(row.get("Crediteur") or row.get("Relatie") or "")
    raise ValueError(f"Unknown dimension {dimension!r}; expected one of {', '.join(DIMENSIONS)}")


def _mean_stdev(values: Sequence[float]) -> tuple[float, float]:
    n = len(values) or 1
    avg = sum(values) / n
    var = sum((v - avg) ** 2 for v in values) / n
    return avg, math.sqrt(var)


def _chronological(view: FinancialView) -> list[MonthBucket]:
    return sorted(view.monthly_data, key=lambda b: (b.year, b.month))


def _result(bucket: MonthBucket) -> float:
    return bucket.net_for_account_type(OPBRENGSTEN) - abs(bucket.net_for_account_type(KOSTEN))


def _eigen_vermogen(bucket: MonthBucket) -> float:
    return bucket.net_for_account_type(ACTIVA) - abs(bucket.net_for_account_type(PASSIVA))


def _prev_month(year: int, month: int) -> tuple[int, int]:
    return (year - 1, 12) if month == 1 else (year, month - 1)


def _dagboek_type(code: Any) -> str:
    code_s = "" if code is None else str(code)
    return DAGBOEK_TYPES.get(code_s, f"Dagboek {code_s}")


def _mk_opening_balance(lines: Iterable[Any], year: int, month: int) -> dict[str, Any]:
    """Aggregate every parsed line strictly before ``(year, month)``.

    Amounts use the debet - credit sign so assets come out positive.
    """

    totals = {"activa": 0.0, "passiva": 0.0, "kosten": 0.0, "opbrengsten": 0.0}
    by_type = {ACTIVA: "activa", PASSIVA: "passiva", KOSTEN: "kosten", OPBRENGSTEN: "opbrengsten"}
    categories: dict[str, dict[str, Any]] = {}
    accounts: dict[str, dict[str, Any]] = {}
    count = 0

    for line in lines:
        if not _before(line.year, line.month, year, month):
            continue
        count += 1
        net = line.debet - line.credit
        type_rekening = line.row.get("Type_rekening")
        slot = by_type.get(str(type_rekening)) if type_rekening is not None else None
        if slot is not None:
            totals[slot] += net

        cat = categories.setdefault(
            line.category, {"netAmount": 0.0, "recordCount": 0, "typeRekening": type_rekening}
        )
        cat["netAmount"] += net
        cat["recordCount"] += 1

        omschrijving = line.row.get("Omschrijving_2") or "Onbekend"
        account_key = f"{line.row.get('Rekeningnummer')}-{omschrijving}"
        acc = accounts.setdefault(
            account_key,
            {
                "rekeningnummer": line.row.get("Rekeningnummer"),
                "omschrijving": omschrijving,
                "typeRekening": type_rekening,
                "netAmount": 0.0,
                "recordCount": 0,
            },
        )
        acc["netAmount"] += net
        acc["recordCount"] += 1

    accumulated = totals["opbrengsten"] + totals["kosten"]
    eigen = totals["activa"] + totals["passiva"] + accumulated
    return {
        "totals": {
            "activa": totals["activa"],
            "passiva": abs(totals["passiva"]),
            "eigenVermogen": eigen,
            "totaalPassiva": abs(totals["passiva"]) + eigen,
            "accumulatedPL": accumulated,
        },
        "categories": categories,
        "accounts": accounts,
        "recordCount": count,
        "periodBefore": period_key(year, month),
    }


# ---- Tools -------------------------------------------------------------------


class AnalysisTools:
    """Analysis operations over a fixed set of AFAS ledger rows.

    Parameters
    ----------
    records:
        Raw AFAS rows. They are copied on construction and never mutated.
    current_year:
        Reference year for :func:`sanitize_range`; defaults to today's year.
    """

    def __init__(self, records: Iterable[Mapping[str, Any]], *, current_year: int | None = None) -> None:
        self._records: list[Mapping[str, Any]] = list(records)
        self._current_year = current_year

    # ---- Loading ---------------------------------------------------------

    def _range(self, period_from: str, period_to: str) -> PeriodRange:
        sy, sm = parse_period(period_from)
        ey, em = parse_period(period_to)
        return sanitize_range(sy, sm, ey, em, current_year=self._current_year)

    def _view(
        self, range_: PeriodRange, records: Sequence[Mapping[str, Any]] | None = None
    ) -> FinancialView:
        view = build_financial_view(list(self._records if records is None else records), range_)
        if view is None:
            raise RuntimeError("financial view could not be built from the loaded records")
        return view

    def _view_for(self, period_from: str, period_to: str) -> FinancialView:
        return self._view(self._range(period_from, period_to))

    def _view_until(self, year: int, month: int) -> FinancialView:
        # Everything up to and including the as-of month; history is not capped.
        return self._view(PeriodRange(year - 50, 1, year, month))

    def _annotated_rows(self) -> list[dict[str, Any]]:
        return [line.row for line in iter_ledger_lines(self._records)]

    # ---- Statements ------------------------------------------------------

    def get_profit_loss_statement(
        self,
        period_from: str,
        period_to: str,
        granularity: str = "month",
        filters: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Opbrengsten, Kosten (positive) and Resultaat per period plus totals.

        ``filters`` takes the same predicates as :func:`filter_records` and
        narrows the rows before they are aggregated.
        """

        if granularity not in GRANULARITIES:
            raise ValueError(f"Unknown granularity {granularity!r}")
        source = filter_records(self._records, filters) if filters else None
        view = self._view(self._range(period_from, period_to), source)

        rows: list[dict[str, Any]] = []
        totals = {"Opbrengsten": 0.0, "Kosten": 0.0, "Resultaat": 0.0}
        included: list[Mapping[str, Any]] = []
        for m in view.monthly_data:
            opbrengsten = m.net_for_account_type(OPBRENGSTEN)
            kosten = abs(m.net_for_account_type(KOSTEN))
            resultaat = opbrengsten - kosten
            for post, bedrag in (
                ("Opbrengsten", opbrengsten),
                ("Kosten", kosten),
                ("Resultaat", resultaat),
            ):
                rows.append({"post": post, "periode": m.key, "bedrag": bedrag})
            totals["Opbrengsten"] += opbrengsten
            totals["Kosten"] += kosten
            totals["Resultaat"] += resultaat
            included.extend(m.records)

        if granularity != "month":
            grouped: dict[tuple[str, str], float] = {}
            for r in rows:
                y, mo = parse_period(r["periode"])
                label = f"{y}-Q{(mo - 1) // 3 + 1}" if granularity == "quarter" else str(y)
                key = (r["post"], label)
                grouped[key] = grouped.get(key, 0.0) + r["bedrag"]
            rows = [{"post": p, "periode": g, "bedrag": v} for (p, g), v in grouped.items()]

        return {
            "rows": rows,
            "totals": totals,
            "source_refs": collect_source_refs(included),
            "query_hash": compute_query_hash(
                "get_profit_loss_statement",
                {
                    "period_from": period_from,
                    "period_to": period_to,
                    "granularity": granularity,
                    "filters": dict(filters) if filters else None,
                },
            ),
        }

    def get_balance_sheet(
        self,
        as_of_period: str,
        side: str = "both",
        include_opening_balance: bool = True,
    ) -> dict[str, Any]:
        """Balance sheet from the as-of month's flows, split into buckets by category name.

        Falls back to the most recent month when the as-of month has no rows.
        """

        if side not in BALANCE_SIDES:
            raise ValueError(f"Unknown side {side!r}")
        year, month = parse_period(as_of_period)
        view = self._view_until(year, month)
        bucket = view.bucket(year, month) or (view.monthly_data[0] if view.monthly_data else None)

        assets: list[dict[str, Any]] = []
        liabilities: list[dict[str, Any]] = []
        equity: list[dict[str, Any]] = []
        activa = passiva = 0.0
        if bucket is not None:
            activa = bucket.net_for_account_type(ACTIVA)
            passiva = abs(bucket.net_for_account_type(PASSIVA))
            for name, t in bucket.categorie_breakdown.items():
                lower = name.lower()
                if any(w in lower for w in _ASSET_WORDS):
                    assets.append({"post": name, "amount": t.net_amount})
                elif any(w in lower for w in _LIABILITY_WORDS):
                    liabilities.append({"post": name, "amount": abs(t.net_amount)})
                elif any(w in lower for w in _EQUITY_WORDS):
                    equity.append({"post": name, "amount": t.net_amount})
        for lst in (assets, liabilities, equity):
            lst.sort(key=lambda e: e["post"].casefold())

        eigen = activa - passiva
        opening = None
        if include_opening_balance:
            opening = _mk_opening_balance(iter_ledger_lines(self._records), year, month)

        out: dict[str, Any] = {
            "totals": {
                "activa": activa,
                "vreemdVermogen": passiva,
                "eigenVermogen": eigen,
                "totaalPassiva": activa,
            },
            "openingBalance": opening,
            "source_refs": collect_source_refs(bucket.records if bucket else ()),
            "query_hash": compute_query_hash(
                "get_balance_sheet",
                {
                    "as_of_period": as_of_period,
                    "side": side,
                    "include_opening_balance": include_opening_balance,
                },
            ),
        }
        if side in ("both", "assets"):
            out["assets"] = assets
        if side in ("both", "liabilities"):
            out["liabilities"] = liabilities
        if side in ("both", "equity"):
            out["equity"] = equity
        return out

    def get_opening_balance(self, period_start: str) -> dict[str, Any]:
        """Totals of all rows strictly before ``period_start`` (the 0-balance)."""

        year, month = parse_period(period_start)
        lines = list(iter_ledger_lines(self._records))
        result = _mk_opening_balance(lines, year, month)
        _logger.debug(
            "opening_balance:done before=%s records=%d", result["periodBefore"], result["recordCount"]
        )
        result["source_refs"] = collect_source_refs(
            line.row for line in lines if _before(line.year, line.month, year, month)
        )
        result["query_hash"] = compute_query_hash(
            "get_opening_balance", {"period_start": period_start}
        )
        return result

    def get_cash_flow_statement(self, period_from: str, period_to: str) -> dict[str, Any]:
        """Indirect-method cash flow over the range.

        Working-capital deltas compare the earliest and latest month. Investing
        and financing are category-name heuristics over the latest month.
        """

        query_hash = compute_query_hash(
            "get_cash_flow_statement",
            {"period_from": period_from, "period_to": period_to, "method": "indirect"},
        )
        months = _chronological(self._view_for(period_from, period_to))
        if not months:
            return {
                "operating": {},
                "investing": {},
                "financing": {},
                "total": 0.0,
                "source_refs": [],
                "query_hash": query_hash,
            }

        result_sum = sum(_result(m) for m in months)
        first, last = months[0], months[-1]
        d_deb = last.net_for_category(DEBITEUREN) - first.net_for_category(DEBITEUREN)
        d_voorraad = last.net_for_category("Voorraad") - first.net_for_category("Voorraad")
        d_cred = last.net_for_category(CREDITEUREN) - first.net_for_category(CREDITEUREN)
        operating_net = result_sum - d_deb - d_voorraad + abs(d_cred)

        def _bucket_sum(names: Sequence[str]) -> float:
            lowered = [n.lower() for n in names]
            total = 0.0
            for r in last.records:
                cat = str(r.get("Categorie") or "").lower()
                if any(n in cat for n in lowered):
                    total += _credit(r) - _debet(r)
            return total

        investing = _bucket_sum(_INVESTING_CATEGORIES)
        financing = _bucket_sum(_FINANCING_CATEGORIES)
        return {
            "operating": {
                "result": result_sum,
                "working_capital": {
                    "delta_debiteuren": d_deb,
                    "delta_voorraad": d_voorraad,
                    "delta_crediteuren": d_cred,
                },
                "net": operating_net,
            },
            "investing": {"total": investing},
            "financing": {"total": financing},
            "total": operating_net + investing + financing,
            "source_refs": collect_source_refs(r for m in months for r in m.records),
            "query_hash": query_hash,
        }

    # ---- Drill-down ------------------------------------------------------

    def list_journal_entries(
        self,
        filters: Mapping[str, Any] | None = None,
        limit: int = 200,
        offset: int = 0,
    ) -> dict[str, Any]:
        filtered = filter_records(self._annotated_rows(), filters)
        entries = [
            {
                "Boekstuknummer": r.get("Boekstuknummer"),
                "Boekstukdatum": r.get("Boekstukdatum"),
                "Jaar": r.get("Jaar"),
                "Periode": r.get("Periode"),
                "Rekeningnummer": r.get("Rekeningnummer"),
                "Omschrijving": r.get("Omschrijving"),
                "Categorie": r.get("Categorie"),
                "Bedrag_debet": _debet(r),
                "Bedrag_credit": _credit(r),
                "Dagboek": r.get("Code_dagboek") or r.get("Dagboek"),
            }
            for r in filtered[offset : offset + limit]
        ]
        return {
            "entries": entries,
            "count": len(filtered),
            "source_refs": collect_source_refs(filtered),
            "query_hash": compute_query_hash(
                "list_journal_entries",
                {"filters": dict(filters) if filters else {}, "limit": limit, "offset": offset},
            ),
        }

    def aggregate_by(
        self,
        dimension: str,
        period_from: str,
        period_to: str,
        top_n: int | None = None,
        filters: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Sum debet - credit per dimension key, largest absolute amounts first."""

        if dimension not in DIMENSIONS:
            raise ValueError(f"Unknown dimension {dimension!r}; expected one of {', '.join(DIMENSIONS)}")
        view = self._view_for(period_from, period_to)
        filtered = filter_records(
            view.all_records, {**(filters or {}), "period_from": period_from, "period_to": period_to}
        )
        sums: dict[str, float] = {}
        for r in filtered:
            k = _dimension_key(r, dimension)
            sums[k] = sums.get(k, 0.0) + _debit_minus_credit(r)
        rows = [{"key": k, "amount": v} for k, v in sums.items()]
        rows.sort(key=lambda r: abs(r["amount"]), reverse=True)
        top_n_applied = bool(top_n) and len(rows) > int(top_n or 0)
        if top_n_applied:
            rows = rows[: int(top_n or 0)]
        return {
            "rows": rows,
            "top_n_applied": top_n_applied,
            "source_refs": collect_source_refs(filtered),
            "query_hash": compute_query_hash(
                "aggregate_by",
                {
                    "dimension": dimension,
                    "period_from": period_from,
                    "period_to": period_to,
                    "top_n": top_n,
                    "filters": dict(filters) if filters else None,
                },
            ),
        }

    def variance_report(
        self,
        a_from: str,
        a_to: str,
        b_from: str,
        b_to: str,
        dimension: str = "post",
    ) -> dict[str, Any]:
        """Compare period A against base period B per dimension key.

        ``delta_pct`` is relative to ``|amount_b|`` and ``None`` when the base
        amount is zero.
        """

        a = self.aggregate_by(dimension, a_from, a_to)
        b = self.aggregate_by(dimension, b_from, b_to)
        b_map = {r["key"]: r["amount"] for r in b["rows"]}
        rows = []
        for r in a["rows"]:
            amount_a = r["amount"]
            amount_b = b_map.get(r["key"], 0.0)
            delta = amount_a - amount_b
            rows.append(
                {
                    "dimension_key": r["key"],
                    "amount_a": amount_a,
                    "amount_b": amount_b,
                    "delta_abs": delta,
                    "delta_pct": (delta / abs(amount_b)) * 100 if amount_b != 0 else None,
                }
            )
        return {
            "rows": rows,
            "source_refs": list(dict.fromkeys([*a["source_refs"], *b["source_refs"]])),
            "query_hash": compute_query_hash(
                "variance_report",
                {
                    "a_from": a_from,
                    "a_to": a_to,
                    "b_from": b_from,
                    "b_to": b_to,
                    "dimension": dimension,
                },
            ),
        }

    def top_deviations(
        self,
        period_from: str,
        period_to: str,
        compare_to: str = "prev_period",
        n: int = 5,
        dimension: str = "post",
    ) -> dict[str, Any]:
        """Largest increases and decreases versus the previous month or last year."""

        if compare_to not in COMPARE_TO:
            raise ValueError(f"Unknown compare_to {compare_to!r}")
        y, m = parse_period(period_to)
        if compare_to == "prev_period":
            base = period_key(*_prev_month(y, m))
        else:
            base = period_key(y - 1, m)
        vr = self.variance_report(period_from, period_to, base, base, dimension)
        diffs = [{"key": r["dimension_key"], "delta": r["delta_abs"]} for r in vr["rows"]]
        diffs.sort(key=lambda d: abs(d["delta"]), reverse=True)
        return {
            "increases": [d for d in diffs if d["delta"] > 0][:n],
            "decreases": [d for d in diffs if d["delta"] < 0][:n],
            "source_refs": vr["source_refs"],
            "query_hash": compute_query_hash(
                "top_deviations",
                {
                    "period_from": period_from,
                    "period_to": period_to,
                    "compare_to": compare_to,
                    "n": n,
                    "dimension": dimension,
                },
            ),
        }

    def explain_account_change(
        self,
        account_or_post: str,
        a_period: str,
        b_period: str,
        breakdown: str = "rekening",
    ) -> dict[str, Any]:
        """Explain the change of a post between two months by its drivers."""

        ay, _am = parse_period(a_period)
        by, _bm = parse_period(b_period)
        view = self._view(
            sanitize_range(min(ay, by), 1, max(ay, by), 12, current_year=self._current_year)
        )
        in_a = filter_records(
            view.all_records,
            {"period_from": a_period, "period_to": a_period, "tekst": account_or_post},
        )
        in_b = filter_records(
            view.all_records,
            {"period_from": b_period, "period_to": b_period, "tekst": account_or_post},
        )

        def _key(r: Mapping[str, Any]) -> str:
            if breakdown == "rekening":
                return str(r.get("Rekeningnummer") or "")
            if breakdown == "kostenplaats":
                return str(r.get("Kostenplaats") or r.get("KostenplaatsCode") or "")
            if breakdown == "project":
                return str(r.get("Project") or r.get("ProjectCode") or "")
            if breakdown == "boekstuk":
                return str(r.get("Boekstuknummer") or "")
            return "overig"

        def _sums(rows: Sequence[Mapping[str, Any]]) -> dict[str, float]:
            out: dict[str, float] = {}
            for r in rows:
                out[_key(r)] = out.get(_key(r), 0.0) + _debit_minus_credit(r)
            return out

        map_a, map_b = _sums(in_a), _sums(in_b)
        delta = sum(map_b.values()) - sum(map_a.values())
        drivers = []
        for k in dict.fromkeys([*map_a, *map_b]):
            d = map_b.get(k, 0.0) - map_a.get(k, 0.0)
            drivers.append({"key": k, "delta": d, "share_pct": (d / delta) * 100 if delta else 0.0})
        drivers.sort(key=lambda x: abs(x["delta"]), reverse=True)
        return {
            "delta": delta,
            "drivers": drivers,
            "source_refs": list(
                dict.fromkeys([*collect_source_refs(in_a), *collect_source_refs(in_b)])
            ),
            "query_hash": compute_query_hash(
                "explain_account_change",
                {
                    "account_or_post": account_or_post,
                    "a_period": a_period,
                    "b_period": b_period,
                    "breakdown": breakdown,
                },
            ),
        }

    def anomaly_scan(
        self,
        period_from: str,
        period_to: str,
        zscore: float = 3,
        min_amount: float = 1000,
        by: str = "post",
    ) -> dict[str, Any]:
        """Flag keys whose absolute amount is a z-score outlier over all keys."""

        agg = self.aggregate_by("post" if by == "post" else "rekening", period_from, period_to)
        amounts = [abs(r["amount"]) for r in agg["rows"]]
        avg, stdev = _mean_stdev(amounts)
        anomalies = []
        for r in agg["rows"]:
            z = abs((abs(r["amount"]) - avg) / stdev) if stdev else 0.0
            if abs(r["amount"]) >= min_amount and z >= zscore:
                anomalies.append({"key": r["key"], "amount": r["amount"], "zscore": z})
        anomalies.sort(key=lambda a: abs(a["amount"]), reverse=True)
        return {
            "anomalies": anomalies,
            "notes": [],
            "source_refs": agg["source_refs"],
            "query_hash": compute_query_hash(
                "anomaly_scan",
                {
                    "period_from": period_from,
                    "period_to": period_to,
                    "zscore": zscore,
                    "min_amount": min_amount,
                    "by": by,
                },
            ),
        }

    def reconcile_pl_to_balance(self, period_from: str, period_to: str) -> dict[str, Any]:
        """Compare the change in equity (first to last month) with the P&L result."""

        query_hash = compute_query_hash(
            "reconcile_pl_to_balance", {"period_from": period_from, "period_to": period_to}
        )
        months = _chronological(self._view_for(period_from, period_to))
        if len(months) < 2:
            return {
                "ok": False,
                "diffs": [{"type": "InsufficientData", "amount": 0, "hint": "Minimaal 2 maanden nodig"}],
                "source_refs": [],
                "query_hash": query_hash,
            }
        first, last = months[0], months[-1]
        result = sum(_result(m) for m in months)
        diff = (_eigen_vermogen(last) - _eigen_vermogen(first)) - result
        ok = abs(diff) < 100
        diffs = (
            []
            if ok
            else [
                {
                    "type": "EV_vs_Resultaat",
                    "amount": diff,
                    "hint": "Controleer begin/eindboekingen en mutaties eigen vermogen",
                }
            ]
        )
        return {
            "ok": ok,
            "diffs": diffs,
            "source_refs": collect_source_refs([*first.records, *last.records]),
            "query_hash": query_hash,
        }

    # ---- Ratios ----------------------------------------------------------
    # Approximations without a current/non-current split: current assets are
    # taken as 60% of activa, short-term debt as 70% of vreemd vermogen and
    # inventory as 10% of activa.

    def ratio_current(self, as_of_period: str) -> dict[str, Any]:
        bs = self.get_balance_sheet(as_of_period, "both", include_opening_balance=False)
        vlottend = bs["totals"]["activa"] * 0.6
        kortlopend = bs["totals"]["vreemdVermogen"] * 0.7
        return {
            "value": vlottend / kortlopend if kortlopend > 0 else 0.0,
            "numerator": vlottend,
            "denominator": kortlopend,
            "definition": "Vlottende Activa / Kortlopende Schulden (benadering)",
            "source_refs": bs["source_refs"],
            "query_hash": compute_query_hash("ratio_current", {"as_of_period": as_of_period}),
        }

    def ratio_quick(self, as_of_period: str) -> dict[str, Any]:
        bs = self.get_balance_sheet(as_of_period, "both", include_opening_balance=False)
        vlottend = bs["totals"]["activa"] * 0.6
        voorraad = bs["totals"]["activa"] * 0.1
        kortlopend = bs["totals"]["vreemdVermogen"] * 0.7
        return {
            "value": (vlottend - voorraad) / kortlopend if kortlopend > 0 else 0.0,
            "numerator": vlottend - voorraad,
            "denominator": kortlopend,
            "definition": "(Vlottende Activa - Voorraad) / Kortlopende Schulden (benadering)",
            "source_refs": bs["source_refs"],
            "query_hash": compute_query_hash("ratio_quick", {"as_of_period": as_of_period}),
        }

    def ratio_debt_to_equity(self, as_of_period: str) -> dict[str, Any]:
        bs = self.get_balance_sheet(as_of_period, "both", include_opening_balance=False)
        debt = bs["totals"]["vreemdVermogen"]
        equity = bs["totals"]["eigenVermogen"]
        return {
            "value": debt / equity if equity != 0 else None,
            "numerator": debt,
            "denominator": equity,
            "definition": "Rentedragende schuld / Eigen Vermogen (benadering VV/EV)",
            "source_refs": bs["source_refs"],
            "query_hash": compute_query_hash("ratio_debt_to_equity", {"as_of_period": as_of_period}),
        }

    def ratio_gross_margin(self, period_from: str, period_to: str) -> dict[str, Any]:
        pnl = self.get_profit_loss_statement(period_from, period_to, "YTD")
        omzet = pnl["totals"]["Opbrengsten"]
        cogs = pnl["totals"]["Kosten"]
        return {
            "value": (omzet - cogs) / omzet if omzet != 0 else None,
            "numerator": omzet - cogs,
            "denominator": omzet,
            "definition": "(Omzet - COGS) / Omzet",
            "source_refs": pnl["source_refs"],
            "query_hash": compute_query_hash(
                "ratio_gross_margin", {"period_from": period_from, "period_to": period_to}
            ),
        }

    # ---- Trend -----------------------------------------------------------

    def trend(self, kpi: str, period_from: str, period_to: str) -> dict[str, Any]:
        """Per-month KPI series (oldest first) with mean and population stdev.

        Supported KPIs: ``current_ratio``, ``quick_ratio``, ``debt_to_equity``,
        ``gross_margin``, ``post:<category>``; ``rekening:<nr>`` yields
        ``None`` points.
        """

        months = _chronological(self._view_for(period_from, period_to))
        points = []
        for m in months:
            activa = m.net_for_account_type(ACTIVA)
            passiva = abs(m.net_for_account_type(PASSIVA))
            value: float | None
            if kpi == "current_ratio":
                value = (activa * 0.6) / (passiva * 0.7) if passiva > 0 else 0.0
            elif kpi == "quick_ratio":
                value = (activa * 0.6 - activa * 0.1) / (passiva * 0.7) if passiva > 0 else 0.0
            elif kpi == "debt_to_equity":
                equity = activa - passiva
                value = passiva / equity if equity != 0 else None
            elif kpi == "gross_margin":
                rev = m.net_for_account_type(OPBRENGSTEN)
                cost = abs(m.net_for_account_type(KOSTEN))
                value = (rev - cost) / rev if rev != 0 else None
            elif kpi.startswith("post:"):
                value = m.net_for_category(kpi[len("post:") :])
            elif kpi.startswith("rekening:"):
                value = None
            else:
                raise ValueError(f"Unknown kpi {kpi!r}")
            points.append({"periode": m.key, "value": value})

        avg, stdev = _mean_stdev([p["value"] if p["value"] is not None else 0.0 for p in points])
        return {
            "points": points,
            "avg": avg,
            "stdev": stdev,
            "source_refs": collect_source_refs(r for m in months for r in m.records),
            "query_hash": compute_query_hash(
                "trend", {"kpi": kpi, "period_from": period_from, "period_to": period_to}
            ),
        }

    def aging_report(
        self,
        entity: str,
        as_of_period: str,
        buckets: Sequence[str] = ("0-30", "31-60", "61-90", ">90"),
        detail: bool = False,
    ) -> dict[str, Any]:
        """Heuristic ageing of receivables/payables for the as-of month.

        No invoice-level due dates are available, so the balance is spread
        50/25/15/10 over the buckets.
        """

        if entity not in ("debiteuren", "crediteuren"):
            raise ValueError(f"Unknown entity {entity!r}")
        year, month = parse_period(as_of_period)
        view = self._view(
            sanitize_range(year - 1, 1, year, month, current_year=self._current_year)
        )
        bucket = view.bucket(year, month) or (view.monthly_data[0] if view.monthly_data else None)
        name = DEBITEUREN if entity == "debiteuren" else CREDITEUREN
        total = abs(bucket.net_for_category(name)) if bucket else 0.0
        ranges = []
        for i, label in enumerate(buckets):
            amount = total * (_AGING_SPLIT[i] if i < len(_AGING_SPLIT) else 0.0) if total > 0 else 0.0
            count = max(1, round(amount / max(1.0, total / 10))) if total > 0 else 0
            ranges.append({"range": label, "amount": amount, "count": count})
        out: dict[str, Any] = {
            "buckets": ranges,
            "source_refs": collect_source_refs(bucket.records if bucket else ()),
            "query_hash": compute_query_hash(
                "aging_report",
                {
                    "entity": entity,
                    "as_of_period": as_of_period,
                    "buckets": list(buckets),
                    "detail": detail,
                },
            ),
        }
        if detail:
            out["detail_rows"] = list(bucket.records[:50]) if bucket else []
        return out

    def journal_template(self, template: str, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Draft journal lines for depreciation and IFRS 16 lease bookings."""

        p = dict(params or {})
        entries: list[dict[str, Any]] = []
        notes: list[str] = []
        if template == "depreciation":
            life = p.get("useful_life_months")
            monthly = float(p.get("asset_cost") or 0) / float(life) if life else 0.0
            entries.append(
                {"rekening": "Afschrijvingskosten", "debit": monthly, "credit": 0, "omschrijving": "Maandelijkse afschrijving"}
            )
            entries.append(
                {
                    "rekening": p.get("contra_account") or "Cumulatieve afschrijving",
                    "debit": 0,
                    "credit": monthly,
                    "omschrijving": "Tegenrekening afschrijving",
                }
            )
            notes.append(f"Lineaire afschrijving vanaf {p.get('start_date')}")
        elif template == "ifrs16_initial":
            pv = float(p.get("pv_lease_payments") or 0)
            entries.append(
                {
                    "rekening": p.get("right_of_use_account") or "ROU-asset",
                    "debit": pv,
                    "credit": 0,
                    "omschrijving": "IFRS16 initiële verwerking",
                }
            )
            entries.append(
                {
                    "rekening": p.get("lease_liability_account") or "Lease verplichting",
                    "debit": 0,
                    "credit": pv,
                    "omschrijving": "IFRS16 initiële verplichting",
                }
            )
            notes.append(f"Startdatum {p.get('start_date')}")
        elif template == "ifrs16_monthly":
            interest = float(p.get("opening_liability") or 0) * float(p.get("interest_rate") or 0)
            payment = float(p.get("payment") or 0)
            entries.append({"rekening": "Rentekosten", "debit": interest, "credit": 0, "omschrijving": "IFRS16 rente"})
            entries.append(
                {"rekening": "Lease verplichting", "debit": payment - interest, "credit": 0, "omschrijving": "Aflossing"}
            )
            entries.append({"rekening": "Bank", "debit": 0, "credit": payment, "omschrijving": "Betaling lease"})
            notes.append(f"Maand {p.get('months_elapsed')}")
        else:
            raise ValueError(f"Unknown template {template!r}")
        return {
            "entries": entries,
            "notes": notes,
            "query_hash": compute_query_hash("journal_template", {"template": template, "params": p}),
        }

    # ---- Transaction detail ----------------------------------------------

    def get_transaction_details(self, filters: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Group matching rows per ``Boekstuknummer``; top 20 by absolute net."""

        f = dict(filters or {})
        if f.get("period_from") and f.get("period_to"):
            rows: list[Mapping[str, Any]] = list(
                self._view_for(f["period_from"], f["period_to"]).all_records
            )
        else:
            rows = list(self._annotated_rows())
        matched = filter_records(rows, f)

        groups: dict[str, list[Mapping[str, Any]]] = {}
        for r in matched:
            groups.setdefault(str(r.get("Boekstuknummer") or "onbekend"), []).append(r)

        details = []
        for boekstuk, grp in groups.items():
            total_debet = sum(_debet(r) for r in grp)
            total_credit = sum(_credit(r) for r in grp)
            main = grp[0]
            details.append(
                {
                    "boekstuknummer": boekstuk,
                    "datum": main.get("Datum_boeking"),
                    "boekstukdatum": main.get("Boekstukdatum"),
                    "periode": period_key(
                        parse_int(main.get("Jaar")) or 0, parse_int(main.get("Periode")) or 0
                    ),
                    "omschrijving": main.get("Omschrijving_boeking") or main.get("Omschrijving") or "",
                    "dagboek": main.get("Code_dagboek") or "",
                    "factuurnummer": main.get("Factuurnummer") or "",
                    "totalDebet": total_debet,
                    "totalCredit": total_credit,
                    "netAmount": total_credit - total_debet,
                    "recordCount": len(grp),
                    "transactie_type": _dagboek_type(main.get("Code_dagboek")),
                    "detail_regels": [
                        {
                            "rekening": r.get("Rekeningnummer"),
                            "rekening_naam": r.get("Omschrijving_2") or "",
                            "categorie": r.get("Omschrijving_3") or r.get("Categorie") or "",
                            "account_type": r.get("AccountTypeName") or r.get("Type_rekening") or "",
                            "debet": _debet(r),
                            "credit": _credit(r),
                            "netto": _credit(r) - _debet(r),
                            "kostenplaats": r.get("Kostenplaats") or "",
                            "project": r.get("Project") or "",
                        }
                        for r in grp
                    ],
                }
            )
        details.sort(key=lambda t: abs(t["netAmount"]), reverse=True)

        return {
            "transactions": details[:_TRANSACTION_DETAIL_LIMIT],
            "total_found": len(details),
            "filters_applied": f,
            "analysis_summary": {
                "total_transactions": len(details),
                "total_net_amount": sum(t["netAmount"] for t in details),
                "periods_covered": sorted({t["periode"] for t in details}),
                "dagboeken_involved": [d for d in dict.fromkeys(t["dagboek"] for t in details) if d],
            },
            "query_hash": compute_query_hash("transaction_details", f),
        }

    def get_post_descriptions(
        self,
        post_numbers: Sequence[Any],
        period_from: str | None = None,
        period_to: str | None = None,
    ) -> dict[str, Any]:
        """Describe each ``Boekstuknummer`` with its texts, accounts and totals."""

        if period_from and period_to:
            rows: list[Mapping[str, Any]] = list(self._view_for(period_from, period_to).all_records)
        else:
            rows = list(self._annotated_rows())

        posts: list[dict[str, Any]] = []
        for number in post_numbers:
            matching = [r for r in rows if str(r.get("Boekstuknummer")) == str(number)]
            if not matching:
                posts.append(
                    {"post_number": number, "found": False, "message": f"Post {number} niet gevonden in de data"}
                )
                continue
            main = matching[0]
            net = sum(_credit(r) for r in matching) - sum(_debet(r) for r in matching)
            texts = [
                t
                for t in dict.fromkeys(
                    main.get(k) for k in ("Omschrijving_boeking", "Omschrijving", "Omschrijving_2", "Omschrijving_3")
                )
                if t
            ]
            accounts = []
            seen: set[tuple[Any, str]] = set()
            for r in matching:
                if not r.get("Rekeningnummer"):
                    continue
                naam = r.get("Omschrijving_2") or r.get("Omschrijving") or ""
                key = (r.get("Rekeningnummer"), naam)
                if key in seen:
                    continue
                seen.add(key)
                accounts.append(
                    {"rekening": r.get("Rekeningnummer"), "naam": naam, "categorie": r.get("Omschrijving_3") or ""}
                )
            periode = period_key(parse_int(main.get("Jaar")) or 0, parse_int(main.get("Periode")) or 0)
            posts.append(
                {
                    "post_number": number,
                    "found": True,
                    "periode": periode,
                    "omschrijvingen": texts,
                    "dagboek": main.get("Code_dagboek") or "",
                    "dagboek_type": _dagboek_type(main.get("Code_dagboek")),
                    "netto_bedrag": net,
                    "aantal_regels": len(matching),
                    "betrokken_rekeningen": accounts,
                    "samenvatting": (
                        f"Post {number} ({periode}): {' | '.join(map(str, texts))} - "
                        + ", ".join(f"{a['rekening']}:{a['naam']}" for a in accounts)
                        + f" - Netto: {net:.2f}"
                    ),
                }
            )
        found = [p for p in posts if p["found"]]
        return {
            "posts": posts,
            "found_posts": len(found),
            "missing_posts": [p["post_number"] for p in posts if not p["found"]],
            "context_summary": "\n".join(p["samenvatting"] for p in found),
            "query_hash": compute_query_hash(
                "get_post_descriptions",
                {"post_numbers": list(post_numbers), "period_from": period_from, "period_to": period_to},
            ),
        }


__all__ = [
    "AnalysisTools",
    "collect_source_refs",
    "compute_query_hash",
    "filter_records",
    "sanitize_range",
]
