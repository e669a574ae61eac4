"""Boundary parsing for loosely-typed AFAS ledger rows.

AFAS returns numbers as JSON numbers most of the time, but exports and
hand-edited fixtures regularly carry strings (``"2024"``, ``"12,50"``). Rows
are parsed once here into :class:`LedgerLine`; everything downstream works on
strict ``int``/``float`` values and never re-inspects raw cells.
"""

from __future__ import annotations

import json
import math
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .categories import derive_account_type_name, derive_category
from .logging_setup import get_logger
from .models import TransactionRecord

_logger = get_logger("afas_finance.records")


@dataclass(frozen=True, slots=True)
class LedgerLine:
    """A single ledger row with parsed period and amounts.

    ``row`` is a shallow copy of the raw record with ``Categorie`` and
    ``AccountTypeName`` added; the caller's mapping is never touched.
    """

    year: int
    month: int
    debet: float
    credit: float
    category: str
    account_type_name: str
    row: dict[str, Any]

    @property
    def net(self) -> float:
        return self.credit - self.debet


def parse_int(value: Any) -> int | None:
    """Return ``value`` as an ``int`` or ``None`` when it is not integral."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return int(value)
        return None
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        try:
            return int(s)
        except ValueError:
            try:
                f = float(s)
            except ValueError:
                return None
            return int(f) if math.isfinite(f) and f.is_integer() else None
    return None


def parse_amount(value: Any) -> float:
    """Parse a debet/credit cell; missing or unparseable values become ``0.0``.

    Strings accept either a decimal point or a single decimal comma
    (``"12,50"``). Thousands separators are not interpreted.
    """

    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        f = float(value)
        return f if math.isfinite(f) else 0.0
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return 0.0
        if "," in s and "." not in s:
            s = s.replace(",", ".")
        try:
            f = float(s)
        except ValueError:
            _logger.debug("records:amount_unparseable value=%r", value)
            return 0.0
        return f if math.isfinite(f) else 0.0
    _logger.debug("records:amount_unparseable value=%r", value)
    return 0.0


def annotate(record: TransactionRecord) -> dict[str, Any]:
    """Return a shallow copy of ``record`` with ``Categorie``/``AccountTypeName``."""

    out = dict(record)
    out["Categorie"] = derive_category(record.get("Omschrijving_3"), record.get("Kenmerk_rekening"))
    out["AccountTypeName"] = derive_account_type_name(record.get("Type_rekening"))
    return out


def to_ledger_line(record: TransactionRecord) -> LedgerLine | None:
    """Parse one raw row; ``None`` when its year or period is not an integer."""

    year = parse_int(record.get("Jaar"))
    month = parse_int(record.get("Periode"))
    if year is None or month is None:
        return None
    row = annotate(record)
    return LedgerLine(
        year=year,
        month=month,
        debet=parse_amount(record.get("Bedrag_debet")),
        credit=parse_amount(record.get("Bedrag_credit")),
        category=row["Categorie"],
        account_type_name=row["AccountTypeName"],
        row=row,
    )


def iter_ledger_lines(records: Iterable[Any]) -> Iterator[LedgerLine]:
    """Yield parsed lines, skipping (and logging) rows that cannot be placed."""

    skipped = 0
    for idx, record in enumerate(records):
        if not isinstance(record, Mapping):
            skipped += 1
            _logger.warning("records:skip_non_mapping index=%d type=%s", idx, type(record).__name__)
            continue
        line = to_ledger_line(record)
        if line is None:
            skipped += 1
            _logger.warning(
                "records:skip_bad_period index=%d jaar=%r periode=%r",
                idx,
                record.get("Jaar"),
                record.get("Periode"),
            )
            continue
        yield line
    if skipped:
        _logger.info("records:skipped total=%d", skipped)


def extract_rows(payload: Any) -> list[dict[str, Any]]:
    """Return the row list from either a bare list or an AFAS ``{"rows": [...]}`` body."""

    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping) and isinstance(payload.get("rows"), list):
        return list(payload["rows"])
    raise ValueError("Expected a JSON array of rows or an object with a 'rows' array")


def load_records_file(path: str | Path) -> list[dict[str, Any]]:
    """Load ledger rows from a JSON file (list or ``{"rows": [...]}``)."""

    p = Path(path)
    with p.open("r", encoding="utf-8") as f:
        payload = json.load(f)
    return extract_rows(payload)


__all__ = [
    "LedgerLine",
    "annotate",
    "extract_rows",
    "iter_ledger_lines",
    "load_records_file",
    "parse_amount",
    "parse_int",
    "to_ledger_line",
]
