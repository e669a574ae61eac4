"""Mapping of AFAS sub-categories onto the enhanced profit-and-loss layout.

AFAS ``Omschrijving_3`` values are free text and differ per administration.
For the enhanced P&L every Kosten/Opbrengsten sub-category is mapped onto one
of :data:`ENHANCED_PNL_CATEGORIES`, either by the model (batched, strict JSON
schema) or manually. Mappings are stored per user in
``afas_category_mappings``.

Public API:
    - :data:`ENHANCED_PNL_CATEGORIES`
    - :func:`collect_unmapped`
    - :func:`map_categories_with_ai`
    - :func:`load_mappings` / :func:`upsert_mapping` / :func:`save_ai_mappings`
      / :func:`delete_mapping`
    - :func:`enhanced_profit_loss`
"""

from __future__ import annotations

import json
import math
from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from openai.types.responses.response_format_text_json_schema_config_param import (
    ResponseFormatTextJSONSchemaConfigParam,
)
from pydantic import ValidationError

from . import llm
from .categories import KOSTEN, OPBRENGSTEN
from .logging_setup import get_logger
from .models import FinancialView, MappingDecision
from .records import parse_amount

_BATCH_SIZE_DEFAULT: int = 20
_CONCURRENCY: int = 4

SOURCE_AI: str = "ai"
SOURCE_MANUAL: str = "manual"

_logger = get_logger("afas_finance.category_mapping")


@dataclass(frozen=True, slots=True)
class EnhancedCategory:
    description: str
    keywords: tuple[str, ...]


ENHANCED_PNL_CATEGORIES: dict[str, EnhancedCategory] = {
    "Omzet": EnhancedCategory(
        "Directe omzet uit verkoop van producten of diensten, facturatie aan klanten",
        ("omzet", "verkoop", "facturatie", "diensten", "producten", "revenue"),
    ),
    "Inkoopwaarde omzet": EnhancedCategory(
        "Directe kosten gerelateerd aan verkochte goederen, inkoopprijs van producten",
        ("inkoop", "cogs", "cost of goods", "inkoopprijs", "materiaalkosten", "handelsgoederen"),
    ),
    "Provisies": EnhancedCategory(
        "Commissies en provisies betaald aan verkopers of partners",
        ("provisie", "commissie", "verkoop commissie", "partner fee", "affiliate"),
    ),
    "Personeelskosten direct": EnhancedCategory(
        "Directe loonkosten gerelateerd aan productie of dienstverlening",
        ("loon", "salaris", "personeel", "direct labor", "productie personeel", "loonkosten"),
    ),
    "Autokosten": EnhancedCategory(
        "Kosten gerelateerd aan voertuigen: brandstof, onderhoud, verzekering, lease",
        ("auto", "voertuig", "brandstof", "benzine", "diesel", "lease auto", "auto onderhoud"),
    ),
    "Marketingkosten": EnhancedCategory(
        "Marketing en reclame uitgaven, promotie kosten",
        ("marketing", "reclame", "advertentie", "promotie", "website", "social media", "google ads"),
    ),
    "Operationele personeelskosten": EnhancedCategory(
        "Indirecte personeelskosten: HR, training, kantoorpersoneel",
        ("hr", "training", "kantoor personeel", "administratie", "management", "overhead personeel"),
    ),
    "Huisvestingskosten": EnhancedCategory(
        "Kosten voor kantoor/bedrijfspand: huur, energie, onderhoud",
        ("huur", "kantoor", "pand", "energie", "gas", "water", "elektra", "onderhoud pand", "huisvesting"),
    ),
    "Kantoorkosten": EnhancedCategory(
        "Kantoorbenodigdheden, ICT, telefoon, internet, software",
        ("kantoor", "ict", "computer", "software", "telefoon", "internet", "printer", "kantoorartikelen"),
    ),
    "Algemene kosten": EnhancedCategory(
        "Overige bedrijfskosten: verzekeringen, juridisch, administratie",
        ("verzekering", "juridisch", "accountant", "administratie", "algemeen", "overig", "diversen"),
    ),
    "Afschrijvingskosten": EnhancedCategory(
        "Afschrijvingen op materiële en immateriële vaste activa",
        ("afschrijving", "depreciation", "amortisatie", "vaste activa", "machines", "inventaris"),
    ),
    "Financieringskosten": EnhancedCategory(
        "Rente en kosten van leningen, financiering, bankkosten",
        ("rente", "lening", "hypotheek", "bank", "financiering", "krediet", "interest"),
    ),
}

REVENUE_CATEGORIES: tuple[str, ...] = ("Omzet", "Provisies")
DEFAULT_REVENUE_CATEGORY: str = "Omzet"
DEFAULT_COST_CATEGORY: str = "Algemene kosten"

_MAPPED_TYPES: tuple[str, ...] = (KOSTEN, OPBRENGSTEN)


# ---- Data shapes -------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class UnmappedCategory:
    category_3: str
    type_rekening: str


@dataclass(frozen=True, slots=True)
class MappingResult:
    category_3: str
    type_rekening: str
    mapped_category: str
    confidence: float | None
    # "ai" when the model answered, "fallback" when the default was applied
    origin: str


def _default_for(type_rekening: str) -> str:
    return DEFAULT_REVENUE_CATEGORY if type_rekening == OPBRENGSTEN else DEFAULT_COST_CATEGORY


def _cat3(row: Mapping[str, Any]) -> str:
    v = row.get("Omschrijving_3")
    return v.strip() if isinstance(v, str) else ""


def collect_unmapped(
    records: Iterable[Mapping[str, Any]], existing: Iterable[str] | Mapping[str, Any] = ()
) -> list[UnmappedCategory]:
    """Distinct Kosten/Opbrengsten sub-categories without a mapping, first-seen order."""

    known = set(existing)
    seen: dict[str, UnmappedCategory] = {}
    for r in records:
        type_rekening = r.get("Type_rekening")
        if type_rekening not in _MAPPED_TYPES:
            continue
        cat3 = _cat3(r)
        if not cat3 or cat3 in known or cat3 in seen:
            continue
        seen[cat3] = UnmappedCategory(category_3=cat3, type_rekening=str(type_rekening))
    return list(seen.values())


# ---- Prompting ---------------------------------------------------------------


def build_system_instructions() -> str:
    return (
        "Je bent een expert in Nederlandse boekhouding. Map elke AFAS categorie naar de beste "
        "Enhanced P&L categorie uit de gegeven lijst. Verzin nooit nieuwe categorieën. "
        "Antwoord alleen met JSON volgens het schema."
    )


def build_user_content(batch: Sequence[UnmappedCategory]) -> str:
    options = "\n".join(f"- {name}: {info.description}" for name, info in ENHANCED_PNL_CATEGORIES.items())
    items = json.dumps(
        [{"idx": i, "category_3": c.category_3, "type_rekening": c.type_rekening} for i, c in enumerate(batch)],
        ensure_ascii=False,
    )
    return (
        "Beschikbare Enhanced P&L categorieën:\n"
        f"{options}\n\n"
        "MAPPING REGELS:\n"
        '- Opbrengsten: alleen "Omzet" of "Provisies"\n'
        '- Kosten van verkochte goederen/handelsgoederen -> "Inkoopwaarde omzet"\n'
        '- Lonen/salarissen/personeel -> "Personeelskosten direct" (productie) of '
        '"Operationele personeelskosten" (kantoor)\n'
        '- Auto/voertuig/brandstof -> "Autokosten"\n'
        '- Marketing/reclame/website -> "Marketingkosten"\n'
        '- Huur/pand/energie/onderhoud -> "Huisvestingskosten"\n'
        '- Computer/telefoon/kantoor -> "Kantoorkosten"\n'
        '- Verzekering/juridisch/administratie -> "Algemene kosten"\n'
        '- Afschrijving/depreciation -> "Afschrijvingskosten"\n'
        '- Rente/lening/bank -> "Financieringskosten"\n\n'
        "AFAS categorieën om te mappen:\n"
        f"BEGIN_CATEGORIES_JSON\n{items}\nEND_CATEGORIES_JSON"
    )


def build_response_format() -> ResponseFormatTextJSONSchemaConfigParam:
    names = list(ENHANCED_PNL_CATEGORIES)
    return {
        "type": "json_schema",
        "name": "category_mappings",
        "schema": {
            "type": "object",
            "properties": {
                "results": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "idx": {"type": "integer"},
                            "category_3": {"type": "string"},
                            "mapped_category": {"type": "string", "enum": names},
                            "confidence": {"type": ["number", "null"], "minimum": 0, "maximum": 1},
                        },
                        "required": ["idx", "category_3", "mapped_category", "confidence"],
                        "additionalProperties": False,
                    },
                }
            },
            "required": ["results"],
            "additionalProperties": False,
        },
        "strict": True,
    }


# ---- AI mapping --------------------------------------------------------------


def _validated(item: UnmappedCategory, decision: MappingDecision | None) -> MappingResult:
    if decision is None or decision.mapped_category not in ENHANCED_PNL_CATEGORIES:
        mapped, confidence, origin = DEFAULT_COST_CATEGORY, None, "fallback"
    else:
        mapped, confidence, origin = decision.mapped_category, decision.confidence, "ai"
    if item.type_rekening == OPBRENGSTEN and mapped not in REVENUE_CATEGORIES:
        _logger.warning(
            "category_mapping:revenue_corrected category_3=%r from=%r to=%r",
            item.category_3,
            mapped,
            DEFAULT_REVENUE_CATEGORY,
        )
        mapped = DEFAULT_REVENUE_CATEGORY
    return MappingResult(
        category_3=item.category_3,
        type_rekening=item.type_rekening,
        mapped_category=mapped,
        confidence=confidence,
        origin=origin,
    )


def _parse_decisions(decoded: Mapping[str, Any], count: int) -> dict[int, MappingDecision]:
    results = decoded.get("results")
    if not isinstance(results, list):
        raise ValueError("Model output must contain a 'results' array")
    out: dict[int, MappingDecision] = {}
    for entry in results:
        if not isinstance(entry, Mapping):
            continue
        idx = entry.get("idx")
        if not isinstance(idx, int) or isinstance(idx, bool) or not 0 <= idx < count or idx in out:
            continue
        try:
            out[idx] = MappingDecision.model_validate(dict(entry))
        except ValidationError:
            _logger.debug("category_mapping:decision_invalid idx=%d", idx, exc_info=True)
    return out


def _map_batch(batch_index: int, batch: Sequence[UnmappedCategory]) -> list[MappingResult]:
    client = llm.create_client()
    user_content = build_user_content(batch)
    _logger.info("category_mapping:batch_llm batch_index=%d count=%d", batch_index, len(batch))
    try:
        resp = llm.call_with_retry(
            lambda: client.responses.create(
                model=llm.model_name(),
                instructions=build_system_instructions(),
                input=user_content,
                text={"format": build_response_format()},
            ),
            area="category_mapping",
            label=f"batch_index={batch_index}",
        )
        decisions = _parse_decisions(llm.extract_response_json_mapping(resp), len(batch))
    except (RuntimeError, ValueError) as e:
        # The batch still gets a usable mapping; the defaults are marked as fallback.
        _logger.warning(
            "category_mapping:batch_fallback batch_index=%d count=%d error=%s",
            batch_index,
            len(batch),
            e,
        )
        decisions = {}
    return [_validated(item, decisions.get(i)) for i, item in enumerate(batch)]


def map_categories_with_ai(
    items: Sequence[UnmappedCategory], batch_size: int = _BATCH_SIZE_DEFAULT
) -> list[MappingResult]:
    """Map sub-categories with the model; one result per item, input order.

    Invalid or missing answers fall back to ``"Algemene kosten"`` and revenue
    items are forced onto a revenue category.
    """

    if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size <= 0:
        raise ValueError("batch_size must be a positive integer")
    items = list(items)
    if not items:
        return []

    batches = [items[i : i + batch_size] for i in range(0, len(items), batch_size)]
    with ThreadPoolExecutor(max_workers=min(_CONCURRENCY, len(batches))) as pool:
        per_batch = list(pool.map(_map_batch, range(len(batches)), batches))

    results = [r for batch in per_batch for r in batch]
    _logger.info(
        "category_mapping:done items=%d batches=%d fallback=%d",
        len(results),
        math.ceil(len(items) / batch_size),
        sum(1 for r in results if r.origin == "fallback"),
    )
    return results


# ---- Persistence -------------------------------------------------------------


def load_mappings(user_id: str, *, database_url: str | None = None) -> dict[str, str]:
    """Return ``{category_3: mapped_category}`` for ``user_id``."""

    from sqlalchemy import select

    from db.client import session_scope
    from db.models.afas import AfasCategoryMapping

    with session_scope(database_url=database_url) as session:
        rows = session.execute(
            select(AfasCategoryMapping.category_3, AfasCategoryMapping.mapped_category)
            .where(AfasCategoryMapping.user_id == user_id)
            .order_by(AfasCategoryMapping.category_3)
        ).all()
    return {c3: mapped for c3, mapped in rows}


def _upsert(session: Any, values: Mapping[str, Any]) -> None:
    from sqlalchemy import func

    from db.client import upsert_insert
    from db.models.afas import AfasCategoryMapping

    stmt = upsert_insert(session, AfasCategoryMapping).values(dict(values))
    stmt = stmt.on_conflict_do_update(
        index_elements=[AfasCategoryMapping.user_id, AfasCategoryMapping.category_3],
        set_={
            "mapped_category": stmt.excluded.mapped_category,
            "type_rekening": stmt.excluded.type_rekening,
            "source": stmt.excluded.source,
            "confidence": stmt.excluded.confidence,
            "updated_at": func.now(),
        },
    )
    session.execute(stmt)


def upsert_mapping(
    user_id: str,
    category_3: str,
    mapped_category: str,
    type_rekening: str | None = None,
    *,
    database_url: str | None = None,
) -> None:
    """Store a manual mapping, replacing any earlier (AI or manual) mapping."""

    if not category_3 or not category_3.strip():
        raise ValueError("category_3 must be non-empty")
    if mapped_category not in ENHANCED_PNL_CATEGORIES:
        raise ValueError(
            f"Unknown enhanced category {mapped_category!r}; expected one of "
            f"{', '.join(ENHANCED_PNL_CATEGORIES)}"
        )
    from db.client import session_scope

    with session_scope(database_url=database_url) as session:
        _upsert(
            session,
            {
                "user_id": user_id,
                "category_3": category_3.strip(),
                "type_rekening": type_rekening,
                "mapped_category": mapped_category,
                "source": SOURCE_MANUAL,
                "confidence": None,
            },
        )
    _logger.info("category_mapping:manual_saved user_id=%s category_3=%r", user_id, category_3)


def save_ai_mappings(
    user_id: str, results: Iterable[MappingResult], *, database_url: str | None = None
) -> int:
    """Persist model mappings; manual mappings are left untouched. Returns rows written."""

    from sqlalchemy import select

    from db.client import session_scope
    from db.models.afas import AfasCategoryMapping

    written = 0
    with session_scope(database_url=database_url) as session:
        manual = set(
            session.scalars(
                select(AfasCategoryMapping.category_3).where(
                    (AfasCategoryMapping.user_id == user_id)
                    & (AfasCategoryMapping.source == SOURCE_MANUAL)
                )
            )
        )
        for r in results:
            if r.category_3 in manual:
                continue
            _upsert(
                session,
                {
                    "user_id": user_id,
                    "category_3": r.category_3,
                    "type_rekening": r.type_rekening,
                    "mapped_category": r.mapped_category,
                    "source": SOURCE_AI,
                    "confidence": r.confidence,
                },
            )
            written += 1
    _logger.info("category_mapping:ai_saved user_id=%s rows=%d", user_id, written)
    return written


def delete_mapping(user_id: str, category_3: str, *, database_url: str | None = None) -> bool:
    from sqlalchemy import delete

    from db.client import session_scope
    from db.models.afas import AfasCategoryMapping

    with session_scope(database_url=database_url) as session:
        res = session.execute(
            delete(AfasCategoryMapping).where(
                (AfasCategoryMapping.user_id == user_id) & (AfasCategoryMapping.category_3 == category_3)
            )
        )
        return bool(res.rowcount)


# ---- Enhanced P&L ------------------------------------------------------------


def enhanced_profit_loss(view: FinancialView, mappings: Mapping[str, str]) -> dict[str, Any]:
    """Per-month and total amounts per enhanced category.

    Opbrengsten rows count as credit - debet and Kosten rows as debet - credit,
    so both revenue and cost come out positive. Unmapped sub-categories use
    ``"Omzet"`` (revenue) or ``"Algemene kosten"`` (cost) and are listed in
    ``unmapped``.
    """

    totals = dict.fromkeys(ENHANCED_PNL_CATEGORIES, 0.0)
    unmapped: dict[str, None] = {}
    months: list[dict[str, Any]] = []

    for bucket in view.monthly_data:
        per_cat = dict.fromkeys(ENHANCED_PNL_CATEGORIES, 0.0)
        revenue = cost = 0.0
        for r in bucket.records:
            type_rekening = r.get("Type_rekening")
            if type_rekening not in _MAPPED_TYPES:
                continue
            cat3 = _cat3(r)
            mapped = mappings.get(cat3)
            if mapped not in ENHANCED_PNL_CATEGORIES:
                unmapped.setdefault(cat3 or "(leeg)", None)
                mapped = _default_for(str(type_rekening))
            debet = parse_amount(r.get("Bedrag_debet"))
            credit = parse_amount(r.get("Bedrag_credit"))
            if type_rekening == OPBRENGSTEN:
                amount = credit - debet
                revenue += amount
            else:
                amount = debet - credit
                cost += amount
            per_cat[mapped] += amount
            totals[mapped] += amount
        months.append(
            {
                "periode": bucket.key,
                "monthName": bucket.month_name,
                "categories": per_cat,
                "opbrengsten": revenue,
                "kosten": cost,
                "resultaat": revenue - cost,
            }
        )

    total_revenue = sum(m["opbrengsten"] for m in months)
    total_cost = sum(m["kosten"] for m in months)
    return {
        "months": months,
        "totals": totals,
        "opbrengsten": total_revenue,
        "kosten": total_cost,
        "resultaat": total_revenue - total_cost,
        "unmapped": sorted(unmapped),
    }


__all__ = [
    "DEFAULT_COST_CATEGORY",
    "DEFAULT_REVENUE_CATEGORY",
    "ENHANCED_PNL_CATEGORIES",
    "EnhancedCategory",
    "MappingResult",
    "REVENUE_CATEGORIES",
    "UnmappedCategory",
    "build_response_format",
    "build_system_instructions",
    "build_user_content",
    "collect_unmapped",
    "delete_mapping",
    "enhanced_profit_loss",
    "load_mappings",
    "map_categories_with_ai",
    "save_ai_mappings",
    "upsert_mapping",
]
