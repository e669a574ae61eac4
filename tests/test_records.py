from __future__ import annotations

import json
import math
from pathlib import Path

import pytest

from afas_finance.records import (
    annotate,
    extract_rows,
    iter_ledger_lines,
    load_records_file,
    parse_amount,
    parse_int,
    to_ledger_line,
)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (2024, 2024),
        ("2024", 2024),
        (" 3 ", 3),
        (3.0, 3),
        ("3.0", 3),
        (3.5, None),
        ("abc", None),
        ("", None),
        (None, None),
        (True, None),
        (math.nan, None),
    ],
)
def test_parse_int(value, expected):
    assert parse_int(value) == expected


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (12.5, 12.5),
        (7, 7.0),
        ("12,50", 12.5),
        ("1.25", 1.25),
        ("", 0.0),
        (None, 0.0),
        ("n/a", 0.0),
        (math.inf, 0.0),
        (False, 0.0),
        ([1], 0.0),
    ],
)
def test_parse_amount(value, expected):
    assert parse_amount(value) == expected


def test_annotate_copies_and_adds_derived_fields():
    raw = {"Omschrijving_3": None, "Kenmerk_rekening": "Grootboekrekening", "Type_rekening": "Kosten"}
    out = annotate(raw)
    assert out["Categorie"] == "Overige"
    assert out["AccountTypeName"] == "Kosten"
    assert "Categorie" not in raw
    assert out is not raw


def test_to_ledger_line_parses_strings_and_rejects_bad_periods():
    line = to_ledger_line(
        {"Jaar": "2024", "Periode": "3", "Bedrag_debet": "10,5", "Bedrag_credit": None, "Omschrijving_3": " Huur "}
    )
    assert line is not None
    assert (line.year, line.month) == (2024, 3)
    assert line.debet == 10.5 and line.credit == 0.0
    assert line.net == -10.5
    assert line.category == "Huur"
    assert line.account_type_name == "Overige"

    assert to_ledger_line({"Jaar": "x", "Periode": 3}) is None
    assert to_ledger_line({"Jaar": 2024}) is None


def test_iter_ledger_lines_skips_non_mappings_and_unplaceable_rows():
    rows = [
        {"Jaar": 2024, "Periode": 1, "Bedrag_debet": 1},
        "not a row",
        {"Jaar": None, "Periode": 1},
        {"Jaar": 2024, "Periode": 0, "Bedrag_credit": 2},
    ]
    lines = list(iter_ledger_lines(rows))
    assert [(ln.year, ln.month) for ln in lines] == [(2024, 1), (2024, 0)]


def test_extract_rows_accepts_list_and_rows_object():
    assert extract_rows([{"a": 1}]) == [{"a": 1}]
    assert extract_rows({"rows": [{"a": 1}], "skip": 0}) == [{"a": 1}]
    with pytest.raises(ValueError):
        extract_rows({"data": []})
    with pytest.raises(ValueError):
        extract_rows("rows")


def test_load_records_file(tmp_path: Path):
    p = tmp_path / "rows.json"
    p.write_text(json.dumps({"rows": [{"Jaar": 2024, "Periode": 1}]}), encoding="utf-8")
    assert load_records_file(p) == [{"Jaar": 2024, "Periode": 1}]
