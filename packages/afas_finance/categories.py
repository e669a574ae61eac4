"""Category and account-type derivation for AFAS ledger rows.

Two small, order-sensitive rules decide how a row is grouped:

- ``derive_category``: the ``Categorie`` label. ``Omschrijving_3`` wins when
  present; otherwise ``Kenmerk_rekening`` is used, except that
  ``"Grootboekrekening"`` collapses to ``"Overige"``; otherwise ``"Overige"``.
- ``derive_account_type_name``: the ``AccountTypeName`` label, an identity
  map over the four Dutch account types that supplies ``"Overige"`` when the
  tag is missing.
"""

from __future__ import annotations

from typing import Any

OVERIGE = "Overige"

CREDITEUREN = "Crediteuren"
DEBITEUREN = "Debiteuren"
GROOTBOEKREKENING = "Grootboekrekening"

ACTIVA = "Activa"
PASSIVA = "Passiva"
KOSTEN = "Kosten"
OPBRENGSTEN = "Opbrengsten"

_ACCOUNT_TYPE_NAMES: dict[str, str] = {
    KOSTEN: KOSTEN,
    PASSIVA: PASSIVA,
    OPBRENGSTEN: OPBRENGSTEN,
    ACTIVA: ACTIVA,
}


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def derive_category(omschrijving_3: Any, kenmerk_rekening: Any) -> str:
    """Return the grouping category for a ledger row.

    Priority: trimmed ``Omschrijving_3``; then ``Kenmerk_rekening`` (with
    ``"Grootboekrekening"`` mapped to ``"Overige"``); then ``"Overige"``.
    """

    sub_category = _clean(omschrijving_3)
    if sub_category is not None:
        return sub_category

    kenmerk = _clean(kenmerk_rekening)
    if kenmerk is not None:
        if kenmerk in (CREDITEUREN, DEBITEUREN):
            return kenmerk
        if kenmerk == GROOTBOEKREKENING:
            return OVERIGE
        return kenmerk

    return OVERIGE


def derive_account_type_name(type_rekening: Any) -> str:
    """Return the normalized account type (``"Overige"`` when absent)."""

    if type_rekening is None or type_rekening == "":
        return OVERIGE
    raw = str(type_rekening)
    return _ACCOUNT_TYPE_NAMES.get(raw, raw)


__all__ = [
    "ACTIVA",
    "CREDITEUREN",
    "DEBITEUREN",
    "GROOTBOEKREKENING",
    "KOSTEN",
    "OPBRENGSTEN",
    "OVERIGE",
    "PASSIVA",
    "derive_account_type_name",
    "derive_category",
]
