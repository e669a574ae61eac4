"""Aggregation of AFAS ledger rows into a :class:`FinancialView`.

Public API:
    - :func:`build_financial_view`
    - :func:`is_in_range`
    - :func:`derive_category` / :func:`derive_account_type_name` (re-exported)

The build is a pure function of its inputs: no I/O, no shared state, and the
caller's records are never mutated (each kept row is shallow-copied before it
is annotated with ``Categorie`` and ``AccountTypeName``).
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from typing import Any

from .categories import ACTIVA, PASSIVA, derive_account_type_name, derive_category
from .logging_setup import get_logger
from .models import (
    BalanceSummary,
    FinancialChecks,
    FinancialView,
    MonthBalance,
    MonthBucket,
    PeriodRange,
    Totals,
    ViewSummary,
    month_display_name,
    period_key,
)
from .records import iter_ledger_lines

DATA_SOURCE = "AFAS API v2 (client-aggregated)"

_logger = get_logger("afas_finance.transform")


def is_in_range(year: int, month: int, range_: PeriodRange) -> bool:
    """Return True when ``(year, month)`` lies inside the inclusive range.

    Years outside ``[start_year, end_year]`` are excluded; within the start
    year months before ``start_month`` are excluded and within the end year
    months after ``end_month`` are excluded. Period ``0`` (opening balance)
    takes part in the plain numeric comparison.
    """

    if year < range_.start_year or year > range_.end_year:
        return False
    if year == range_.start_year and month < range_.start_month:
        return False
    if year == range_.end_year and month > range_.end_month:
        return False
    return True


def _month_balance(bucket: MonthBucket) -> MonthBalance:
    """Flow balance for one bucket; ``totaal_passiva`` is the plug and equals ``activa``."""

    activa = bucket.net_for_account_type(ACTIVA)
    vreemd = bucket.net_for_account_type(PASSIVA)
    eigen = activa - abs(vreemd)
    return MonthBalance(
        month_key=bucket.key,
        year=bucket.year,
        month=bucket.month,
        month_name=bucket.month_name,
        activa=activa,
        vreemd_vermogen=vreemd,
        eigen_vermogen=eigen,
        totaal_passiva=activa,
    )


def _balance_summary(
    account_type_totals: dict[str, Totals], monthly: Sequence[MonthBucket]
) -> BalanceSummary:
    activa_t = account_type_totals.get(ACTIVA)
    passiva_t = account_type_totals.get(PASSIVA)
    activa = activa_t.net_amount if activa_t else 0.0
    vreemd = passiva_t.net_amount if passiva_t else 0.0
    eigen = activa - abs(vreemd)
    return BalanceSummary(
        activa=activa,
        vreemd_vermogen=vreemd,
        eigen_vermogen=eigen,
        totaal_passiva=activa,
        per_month=tuple(_month_balance(b) for b in monthly),
    )


def build_financial_view(
    records: Any,
    range_: PeriodRange,
    *,
    include_checks: bool = False,
) -> FinancialView | None:
    """Aggregate raw ledger rows into a monthly financial view.

    Parameters
    ----------
    records:
        A list (or tuple) of AFAS ledger rows. Any other value yields ``None``.
    range_:
        Inclusive ``(year, month)`` interval; rows outside it are dropped.
    include_checks:
        When True, populate ``financial_checks`` via
        :func:`afas_finance.checks.run_financial_checks`. The default leaves
        the empty ``{byMonth: {}, overall: []}`` structure.

    Returns
    -------
    FinancialView | None
        ``None`` for a non-list input; otherwise the view (possibly empty).

    Notes
    -----
    Rows whose ``Jaar``/``Periode`` do not parse as integers are skipped and
    logged. Amounts are summed as IEEE-754 floats in input order, and every
    ``net_amount`` is recomputed as ``total_credit - total_debet``.
    """

    if not isinstance(records, (list, tuple)):
        _logger.warning("financial_view:invalid_input type=%s", type(records).__name__)
        return None

    t0 = time.perf_counter()

    buckets: dict[str, MonthBucket] = {}
    category_totals: dict[str, Totals] = {}
    account_type_totals: dict[str, Totals] = {}
    all_records: list[dict[str, Any]] = []
    grand_debet = 0.0
    grand_credit = 0.0

    for line in iter_ledger_lines(records):
        if not is_in_range(line.year, line.month, range_):
            continue

        key = period_key(line.year, line.month)
        bucket = buckets.get(key)
        if bucket is None:
            bucket = MonthBucket(
                year=line.year,
                month=line.month,
                month_name=month_display_name(line.year, line.month),
            )
            buckets[key] = bucket

        bucket.records.append(line.row)
        bucket.total_debet += line.debet
        bucket.total_credit += line.credit
        bucket.net_amount = bucket.total_credit - bucket.total_debet

        bucket.categorie_breakdown.setdefault(line.category, Totals()).add(
            line.debet, line.credit
        )
        bucket.account_type_breakdown.setdefault(line.account_type_name, Totals()).add(
            line.debet, line.credit
        )
        category_totals.setdefault(line.category, Totals()).add(line.debet, line.credit)
        account_type_totals.setdefault(line.account_type_name, Totals()).add(
            line.debet, line.credit
        )

        grand_debet += line.debet
        grand_credit += line.credit
        all_records.append(line.row)

    monthly = sorted(buckets.values(), key=lambda b: (b.year, b.month), reverse=True)

    view = FinancialView(
        summary=ViewSummary(
            total_records=len(all_records),
            months_included=len(monthly),
            data_source=DATA_SOURCE,
            date_range=range_,
            total_debet=grand_debet,
            total_credit=grand_credit,
            net_amount=grand_credit - grand_debet,
        ),
        category_totals=category_totals,
        account_type_totals=account_type_totals,
        balans=_balance_summary(account_type_totals, monthly),
        monthly_data=monthly,
        all_records=all_records,
        financial_checks=FinancialChecks(),
    )

    if include_checks:
        from .checks import run_financial_checks  # local import keeps the core import-light

        view.financial_checks = run_financial_checks(view)

    _logger.debug(
        "financial_view:built records_in=%d records_kept=%d months=%d latency_ms=%.2f",
        len(records),
        len(all_records),
        len(monthly),
        (time.perf_counter() - t0) * 1000.0,
    )
    return view


__all__ = [
    "DATA_SOURCE",
    "build_financial_view",
    "derive_account_type_name",
    "derive_category",
    "is_in_range",
]
