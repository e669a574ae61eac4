"""Data models and type aliases for ``afas_finance``.

Raw AFAS rows stay opaque mappings (``TransactionRecord``); everything the
aggregation produces is a plain dataclass with a ``to_dict()`` that emits the
camelCase shape consumed by dashboards and the assistant.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

# ---------------------------------------------------------------------------
# Raw input
# ---------------------------------------------------------------------------

type TransactionRecord = Mapping[str, Any]
"""A single AFAS ledger row (``Jaar``, ``Periode``, ``Bedrag_debet``, ...).

Unknown columns are carried through untouched into ``FinancialView.all_records``.
"""

type Records = Sequence[TransactionRecord]


_PERIOD_RE = re.compile(r"^\s*(\d{4})-(\d{1,2})\s*$")

MONTH_NAMES_NL: tuple[str, ...] = (
    "januari",
    "februari",
    "maart",
    "april",
    "mei",
    "juni",
    "juli",
    "augustus",
    "september",
    "oktober",
    "november",
    "december",
)


def parse_period(value: str) -> tuple[int, int]:
    """Parse a ``"YYYY-MM"`` period string into ``(year, month)``."""

    m = _PERIOD_RE.match(value or "")
    if not m:
        raise ValueError(f"Invalid period {value!r}: expected 'YYYY-MM'")
    year, month = int(m.group(1)), int(m.group(2))
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid period {value!r}: month must be within 1..12")
    return year, month


def period_key(year: int, month: int) -> str:
    return f"{year}-{month:02d}"


def month_display_name(year: int, month: int) -> str:
    """Dutch display name for a bucket, e.g. ``"maart 2024"``.

    Period ``0`` is the opening-balance pseudo-period.
    """

    if 1 <= month <= 12:
        return f"{MONTH_NAMES_NL[month - 1]} {year}"
    if month == 0:
        return f"beginbalans {year}"
    return f"periode {month} {year}"


# ---------------------------------------------------------------------------
# Period range
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PeriodRange:
    """Inclusive ``(year, month)`` interval compared year first, then month."""

    start_year: int
    start_month: int
    end_year: int
    end_month: int

    def __post_init__(self) -> None:
        for name in ("start_year", "start_month", "end_year", "end_month"):
            val = getattr(self, name)
            # Booleans are ints; disallow them explicitly.
            if isinstance(val, bool) or not isinstance(val, int):
                raise ValueError(f"PeriodRange.{name} must be an integer")
        for name in ("start_month", "end_month"):
            if not 1 <= getattr(self, name) <= 12:
                raise ValueError(f"PeriodRange.{name} must be within 1..12")

    @classmethod
    def from_periods(cls, period_from: str, period_to: str) -> PeriodRange:
        sy, sm = parse_period(period_from)
        ey, em = parse_period(period_to)
        return cls(sy, sm, ey, em)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> PeriodRange:
        """Build from either snake_case or camelCase keys."""

        def pick(snake: str, camel: str) -> int:
            raw = data.get(snake, data.get(camel))
            if raw is None:
                raise ValueError(f"PeriodRange requires {snake!r}")
            return int(raw)

        return cls(
            pick("start_year", "startYear"),
            pick("start_month", "startMonth"),
            pick("end_year", "endYear"),
            pick("end_month", "endMonth"),
        )

    @property
    def period_from(self) -> str:
        return period_key(self.start_year, self.start_month)

    @property
    def period_to(self) -> str:
        return period_key(self.end_year, self.end_month)

    def to_dict(self) -> dict[str, int]:
        return {
            "startYear": self.start_year,
            "startMonth": self.start_month,
            "endYear": self.end_year,
            "endMonth": self.end_month,
        }


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class Totals:
    """Running debet/credit totals; ``net_amount`` is always credit - debet."""

    total_debet: float = 0.0
    total_credit: float = 0.0
    net_amount: float = 0.0
    record_count: int = 0

    def add(self, debet: float, credit: float) -> None:
        self.total_debet += debet
        self.total_credit += credit
        self.net_amount = self.total_credit - self.total_debet
        self.record_count += 1

    def to_dict(self) -> dict[str, float | int]:
        return {
            "totalDebet": self.total_debet,
            "totalCredit": self.total_credit,
            "netAmount": self.net_amount,
            "recordCount": self.record_count,
        }


@dataclass(slots=True)
class MonthBucket:
    year: int
    month: int
    month_name: str
    records: list[dict[str, Any]] = field(default_factory=list)
    total_debet: float = 0.0
    total_credit: float = 0.0
    net_amount: float = 0.0
    categorie_breakdown: dict[str, Totals] = field(default_factory=dict)
    account_type_breakdown: dict[str, Totals] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return period_key(self.year, self.month)

    def net_for_account_type(self, name: str) -> float:
        entry = self.account_type_breakdown.get(name)
        return entry.net_amount if entry else 0.0

    def net_for_category(self, name: str) -> float:
        entry = self.categorie_breakdown.get(name)
        return entry.net_amount if entry else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "year": self.year,
            "month": self.month,
            "monthName": self.month_name,
            "records": list(self.records),
            "totalDebet": self.total_debet,
            "totalCredit": self.total_credit,
            "netAmount": self.net_amount,
            "categorieBreakdown": {k: v.to_dict() for k, v in self.categorie_breakdown.items()},
            "accountTypeBreakdown": {
                k: v.to_dict() for k, v in self.account_type_breakdown.items()
            },
        }


@dataclass(frozen=True, slots=True)
class MonthBalance:
    """Balance-sheet quantities derived from a single month's flows."""

    month_key: str
    year: int
    month: int
    month_name: str
    activa: float
    vreemd_vermogen: float
    eigen_vermogen: float
    totaal_passiva: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "monthKey": self.month_key,
            "year": self.year,
            "month": self.month,
            "monthName": self.month_name,
            "activa": self.activa,
            "vreemdVermogen": self.vreemd_vermogen,
            "eigenVermogen": self.eigen_vermogen,
            "totaalPassiva": self.totaal_passiva,
        }


@dataclass(frozen=True, slots=True)
class BalanceSummary:
    """Balance sheet over the whole range.

    ``eigen_vermogen`` is a derived plug (``activa - |vreemd_vermogen|``), so
    ``totaal_passiva`` equals ``activa`` by construction. It is not an
    independent reconciliation; see :mod:`afas_finance.checks` for that.
    """

    activa: float
    vreemd_vermogen: float
    eigen_vermogen: float
    totaal_passiva: float
    per_month: tuple[MonthBalance, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "activa": self.activa,
            "vreemdVermogen": self.vreemd_vermogen,
            "eigenVermogen": self.eigen_vermogen,
            "totaalPassiva": self.totaal_passiva,
            "perMonth": [m.to_dict() for m in self.per_month],
        }


@dataclass(frozen=True, slots=True)
class ViewSummary:
    total_records: int
    months_included: int
    data_source: str
    date_range: PeriodRange
    total_debet: float
    total_credit: float
    net_amount: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalRecords": self.total_records,
            "monthsIncluded": self.months_included,
            "dataSource": self.data_source,
            "dateRange": self.date_range.to_dict(),
            "totalDebet": self.total_debet,
            "totalCredit": self.total_credit,
            "netAmount": self.net_amount,
        }


# ---------------------------------------------------------------------------
# Financial checks
# ---------------------------------------------------------------------------

type CheckStatus = str
"""One of ``"groen"``, ``"geel"``, ``"rood"`` (traffic-light)."""


@dataclass(frozen=True, slots=True)
class CheckResult:
    id: str
    name: str
    value: float
    formula: str
    status: CheckStatus
    info: str
    threshold: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "value": self.value,
            "formula": self.formula,
            "status": self.status,
            "info": self.info,
            "threshold": self.threshold,
        }


@dataclass(slots=True)
class FinancialChecks:
    """Checks per month key plus the worst status per check id overall.

    Empty unless checks were requested when building the view.
    """

    by_month: dict[str, list[CheckResult]] = field(default_factory=dict)
    overall: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "byMonth": {k: [c.to_dict() for c in v] for k, v in self.by_month.items()},
            "overall": [dict(o) for o in self.overall],
        }


# ---------------------------------------------------------------------------
# The view
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class FinancialView:
    summary: ViewSummary
    category_totals: dict[str, Totals]
    account_type_totals: dict[str, Totals]
    balans: BalanceSummary
    monthly_data: list[MonthBucket]
    all_records: list[dict[str, Any]]
    financial_checks: FinancialChecks = field(default_factory=FinancialChecks)

    def bucket(self, year: int, month: int) -> MonthBucket | None:
        for b in self.monthly_data:
            if b.year == year and b.month == month:
                return b
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary.to_dict(),
            "categoryTotals": {k: v.to_dict() for k, v in self.category_totals.items()},
            "accountTypeTotals": {k: v.to_dict() for k, v in self.account_type_totals.items()},
            "balans": self.balans.to_dict(),
            "monthlyData": [m.to_dict() for m in self.monthly_data],
            "allRecords": list(self.all_records),
            "financialChecks": self.financial_checks.to_dict(),
        }


# ---------------------------------------------------------------------------
# DTOs for typed cache and model I/O
# ---------------------------------------------------------------------------


class CacheFile(BaseModel):
    """Top-level schema for a file-cache JSON document."""

    model_config = ConfigDict(strict=True, extra="forbid", str_strip_whitespace=True)

    schema_version: int
    cache_key: str
    record_count: int
    last_refreshed: datetime
    expires_at: datetime
    # gzip + base64 encoded JSON array of rows
    payload: str


class MappingDecision(BaseModel):
    """One category-mapping decision returned by the model."""

    model_config = ConfigDict(strict=True, extra="ignore", str_strip_whitespace=True)

    category_3: str
    mapped_category: str
    confidence: float | None = None

    @field_validator("confidence")
    @classmethod
    def _confidence_in_unit_interval(cls, v: float | None) -> float | None:
        if v is None:
            return None
        if 0.0 <= v <= 1.0:
            return v
        raise ValueError("confidence must be within [0,1]")
