"""Monthly consistency checks over a :class:`FinancialView`.

Each month bucket is compared with the previous (older) bucket and scored on a
fixed list of controls. Every control yields a :class:`CheckResult` with a
traffic-light status: ``"groen"`` (ok), ``"geel"`` (attention) or ``"rood"``
(problem).

Category-based inputs are located by case-insensitive keyword match on the
bucket's category names; the first matching category (in breakdown order)
supplies the absolute net amount. Revenue and costs come from the
``Opbrengsten`` and ``Kosten`` account types.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from .categories import ACTIVA, KOSTEN, OPBRENGSTEN, PASSIVA
from .logging_setup import get_logger
from .models import CheckResult, CheckStatus, FinancialChecks, FinancialView, MonthBucket

GROEN: CheckStatus = "groen"
GEEL: CheckStatus = "geel"
ROOD: CheckStatus = "rood"

_SEVERITY: dict[str, int] = {GROEN: 0, GEEL: 1, ROOD: 2}

_KW_INKOOP = ("inkoop", "cogs", "inkoopwaarde", "handelsgoederen")
_KW_PROVISIE = ("provisie", "commissie")
_KW_PERSONEEL = ("personeel", "loon", "salaris", "personeelskosten")
_KW_DEBITEUREN = ("debiteuren", "klanten", "vorderingen")
_KW_CREDITEUREN = ("crediteuren", "leveranciers", "schulden")
_KW_LIQUIDE = ("liquide", "kas", "bank", "giro")
_KW_MATERIEEL = ("materiële", "materieel", "machines", "inventaris", "vaste activa")
_KW_IMMATERIEEL = ("immateriële", "immaterieel", "goodwill", "software", "licenties")
_KW_AFSCHRIJVING = ("afschrijving", "depreciation", "amortisatie")
_KW_BELASTING = ("belasting", "btw", "premie", "tax", "vat")
_KW_OVERLOPEND_ACTIVA = ("overlopend", "vooruit", "accruals")
_KW_OVERLOPEND_PASSIVA = ("overlopend", "vooruit", "accruals", "voorziening")
_KW_INTERCOMPANY = ("rekening-courant", "directie", "intercompany", "aandeelhouder")
_KW_HUISVESTING = ("huisvesting", "huur", "kantoor", "pand")
_KW_KANTOOR = ("kantoor", "ict", "computer", "telefoon", "internet")

_logger = get_logger("afas_finance.checks")


@dataclass(frozen=True, slots=True)
class _Found:
    value: float
    category: str | None


def find_category_value(bucket: MonthBucket | None, keywords: Sequence[str]) -> _Found:
    """Return the absolute net of the first category matching any keyword."""

    if bucket is None:
        return _Found(0.0, None)
    lowered = [k.lower() for k in keywords]
    for name, totals in bucket.categorie_breakdown.items():
        lower_name = name.lower()
        if any(k in lower_name for k in lowered):
            return _Found(abs(totals.net_amount), name)
    return _Found(0.0, None)


def _eigen_vermogen(bucket: MonthBucket | None) -> float:
    if bucket is None:
        return 0.0
    return bucket.net_for_account_type(ACTIVA) - abs(bucket.net_for_account_type(PASSIVA))


def _band_low(value: float, green_below: float, yellow_below: float) -> CheckStatus:
    if value < green_below:
        return GROEN
    return GEEL if value < yellow_below else ROOD


def _band_high(value: float, green_above: float, yellow_above: float) -> CheckStatus:
    if value > green_above:
        return GROEN
    return GEEL if value > yellow_above else ROOD


def _band_cap(value: float, cap: float, yellow_factor: float) -> CheckStatus:
    if value <= cap:
        return GROEN
    return GEEL if value <= cap * yellow_factor else ROOD


def check_month(current: MonthBucket, previous: MonthBucket | None) -> list[CheckResult]:
    """Run every control for ``current`` against ``previous`` (may be ``None``)."""

    opbrengsten = abs(current.net_for_account_type(OPBRENGSTEN))
    kosten = abs(current.net_for_account_type(KOSTEN))
    nettoresultaat = opbrengsten - kosten
    omzet = opbrengsten
    checks: list[CheckResult] = []

    # P&L vs balance
    ev_mutatie = _eigen_vermogen(current) - _eigen_vermogen(previous)
    pl_diff = abs(nettoresultaat - ev_mutatie)
    checks.append(
        CheckResult(
            id="pl_balance_check",
            name="P&L vs. Balanscontrole",
            value=pl_diff,
            formula="Nettoresultaat - (Eigen vermogen deze maand - Eigen vermogen vorige maand)",
            status=_band_low(pl_diff, 1000, 5000),
            info="Controleert of het nettoresultaat uit de W&V overeenkomt met de verandering in eigen vermogen.",
            threshold="Groen: < €1.000, Geel: €1.000-€5.000, Rood: > €5.000",
        )
    )

    inkoop = find_category_value(current, _KW_INKOOP)
    provisies = find_category_value(current, _KW_PROVISIE)
    personeel = find_category_value(current, _KW_PERSONEEL)
    marge = omzet - inkoop.value - provisies.value - personeel.value
    brutomarge = (marge / omzet) * 100 if omzet > 0 else 0.0
    checks.append(
        CheckResult(
            id="gross_margin_check",
            name="Brutomarge percentage",
            value=brutomarge,
            formula="((Omzet - Inkoopwaarde - Provisies - Personeelskosten) / Omzet) * 100",
            status=_band_high(brutomarge, 50, 30),
            info="Meet de winstgevendheid na aftrek van directe kosten.",
            threshold="Groen: > 50%, Geel: 30-50%, Rood: < 30%",
        )
    )

    debiteuren = find_category_value(current, _KW_DEBITEUREN)
    dso = (debiteuren.value / omzet) * 30 if omzet > 0 else 0.0
    checks.append(
        CheckResult(
            id="dso_check",
            name="Debiteurenomloop (DSO)",
            value=dso,
            formula="(Debiteuren / Omzet) * 30",
            status=_band_low(dso, 30, 60),
            info="Gemiddelde betalingstermijn van klanten in dagen.",
            threshold="Groen: < 30 dagen, Geel: 30-60 dagen, Rood: > 60 dagen",
        )
    )

    crediteuren = find_category_value(current, _KW_CREDITEUREN)
    dpo = (crediteuren.value / inkoop.value) * 30 if inkoop.value > 0 else 0.0
    checks.append(
        CheckResult(
            id="dpo_check",
            name="Crediteurenomloop (DPO)",
            value=dpo,
            formula="(Crediteuren / Inkoopwaarde) * 30",
            status=_band_high(dpo, 30, 15),
            info="Gemiddelde betalingstermijn aan leveranciers in dagen.",
            threshold="Groen: > 30 dagen, Geel: 15-30 dagen, Rood: < 15 dagen",
        )
    )

    liquide_nu = find_category_value(current, _KW_LIQUIDE)
    liquide_vorig = find_category_value(previous, _KW_LIQUIDE)
    liquide_mutatie = liquide_nu.value - liquide_vorig.value
    checks.append(
        CheckResult(
            id="liquidity_change",
            name="Liquide middelen mutatie",
            value=liquide_mutatie,
            formula="Liquide middelen deze maand - Liquide middelen vorige maand",
            status=_band_high(liquide_mutatie, 0, -10000),
            info="Verandering in beschikbare liquide middelen.",
            threshold="Groen: Positief, Geel: -€10.000 tot €0, Rood: < -€10.000",
        )
    )

    vaste_activa = (
        find_category_value(current, _KW_MATERIEEL).value
        + find_category_value(current, _KW_IMMATERIEEL).value
    )
    afschrijving = find_category_value(current, _KW_AFSCHRIJVING)
    checks.append(
        CheckResult(
            id="depreciation_check",
            name="Afschrijvingen controle",
            value=afschrijving.value,
            formula="Afschrijvingskosten vs. (Materiële + Immateriële vaste activa) * 10%",
            status=_band_cap(afschrijving.value, vaste_activa * 0.1, 1.5),
            info="Controleert of afschrijvingskosten realistisch zijn ten opzichte van vaste activa.",
            threshold="Groen: ≤ 10% van vaste activa, Geel: 10-15%, Rood: > 15%",
        )
    )

    belasting = find_category_value(current, _KW_BELASTING)
    checks.append(
        CheckResult(
            id="tax_check",
            name="BTW-saldi controle",
            value=belasting.value,
            formula="Belastingen & Premies vs. Omzet * 25%",
            status=_band_cap(belasting.value, omzet * 0.25, 1.2),
            info="Controleert of belastingen en premies niet te hoog zijn ten opzichte van omzet.",
            threshold="Groen: ≤ 25% van omzet, Geel: 25-30%, Rood: > 30%",
        )
    )

    consistent = debiteuren.value > 0 and crediteuren.value > 0
    checks.append(
        CheckResult(
            id="balance_consistency",
            name="Balansposten consistentie",
            value=1.0 if consistent else 0.0,
            formula="Controleert of Debiteuren > 0 en Crediteuren > 0",
            status=GROEN if consistent else ROOD,
            info="Controleert of belangrijke balansposten aanwezig zijn.",
            threshold="Groen: Beide > 0, Rood: Een of beide = 0",
        )
    )

    kasstroom_verschil = abs(liquide_mutatie - nettoresultaat)
    checks.append(
        CheckResult(
            id="cashflow_consistency",
            name="Kasstroomconsistentie",
            value=kasstroom_verschil,
            formula="|(Liquide middelen mutatie) - Nettoresultaat|",
            status=_band_low(kasstroom_verschil, omzet * 0.1, omzet * 0.2),
            info="Controleert de consistentie tussen kasstroom en resultaat.",
            threshold="Groen: < 10% van omzet, Geel: 10-20%, Rood: > 20%",
        )
    )

    overlopend_activa = find_category_value(current, _KW_OVERLOPEND_ACTIVA)
    overlopend_passiva = find_category_value(current, _KW_OVERLOPEND_PASSIVA)
    overlopend = overlopend_activa.value + overlopend_passiva.value
    checks.append(
        CheckResult(
            id="accruals_check",
            name="Accruals/voorzieningen",
            value=overlopend,
            formula="(Overlopende activa + Overlopende passiva) vs. Omzet * 30%",
            status=_band_cap(overlopend, omzet * 0.3, 1.5),
            info="Controleert of overlopende posten niet te hoog zijn.",
            threshold="Groen: ≤ 30% van omzet, Geel: 30-45%, Rood: > 45%",
        )
    )

    intercompany = find_category_value(current, _KW_INTERCOMPANY)
    checks.append(
        CheckResult(
            id="intercompany_check",
            name="Intercompany controle",
            value=intercompany.value,
            formula="|Rekening-courant directie| vs. Omzet * 50%",
            status=_band_cap(intercompany.value, omzet * 0.5, 1.2),
            info="Controleert of rekening-courant met directie niet te hoog is.",
            threshold="Groen: ≤ 50% van omzet, Geel: 50-60%, Rood: > 60%",
        )
    )

    omzet_vorig = abs(previous.net_for_account_type(OPBRENGSTEN)) if previous else 0.0
    omzet_mutatie = abs((omzet - omzet_vorig) / omzet_vorig * 100) if omzet_vorig > 0 else 0.0
    checks.append(
        CheckResult(
            id="revenue_variance",
            name="Omzetmutatie controle",
            value=omzet_mutatie,
            formula="|((Omzet deze maand - Omzet vorige maand) / Omzet vorige maand) * 100|",
            status=_band_low(omzet_mutatie, 20, 50),
            info="Controleert op onevenredige omzetschommelingen.",
            threshold="Groen: < 20%, Geel: 20-50%, Rood: > 50%",
        )
    )

    kosten_pct = (kosten / omzet) * 100 if omzet > 0 else 0.0
    checks.append(
        CheckResult(
            id="cost_structure",
            name="Kostenstructuur",
            value=kosten_pct,
            formula="(Totale kosten / Omzet) * 100",
            status=_band_low(kosten_pct, 80, 95),
            info="Controleert of de kostenstructuur gezond is.",
            threshold="Groen: < 80%, Geel: 80-95%, Rood: > 95%",
        )
    )

    vlottend = debiteuren.value + liquide_nu.value + overlopend_activa.value
    kortlopend = crediteuren.value + overlopend_passiva.value
    current_ratio = vlottend / kortlopend if kortlopend > 0 else 0.0
    checks.append(
        CheckResult(
            id="current_ratio",
            name="Current Ratio",
            value=current_ratio,
            formula="(Debiteuren + Liquide middelen + Overlopende activa) / (Crediteuren + Overlopende passiva)",
            status=_band_high(current_ratio, 1.2, 1.0),
            info="Meet de liquiditeit van de onderneming.",
            threshold="Groen: > 1.2, Geel: 1.0-1.2, Rood: < 1.0",
        )
    )

    overhead = (
        find_category_value(current, _KW_HUISVESTING).value > 0
        or find_category_value(current, _KW_KANTOOR).value > 0
    )
    periodiek_ok = personeel.value > 0 and overhead
    checks.append(
        CheckResult(
            id="periodic_costs",
            name="Periodieke posten tijdigheid",
            value=1.0 if periodiek_ok else 0.0,
            formula="Controleert of Personeelskosten > 0 en (Huisvestingskosten > 0 of Kantoorkosten > 0)",
            status=GROEN if periodiek_ok else ROOD,
            info="Controleert of periodieke kosten zijn geboekt.",
            threshold="Groen: Alle posten geboekt, Rood: Ontbrekende posten",
        )
    )

    return checks


def worst_status(statuses: Sequence[CheckStatus]) -> CheckStatus:
    """Return the most severe status (``rood`` > ``geel`` > ``groen``)."""

    if not statuses:
        return GROEN
    return max(statuses, key=lambda s: _SEVERITY.get(s, 0))


def run_financial_checks(view: FinancialView) -> FinancialChecks:
    """Score every month bucket of ``view`` and summarise per check id.

    ``overall`` holds one entry per check id (in check order) with the worst
    status over all months and a count per status.
    """

    monthly = view.monthly_data
    by_month: dict[str, list[CheckResult]] = {}
    for i, bucket in enumerate(monthly):
        previous = monthly[i + 1] if i + 1 < len(monthly) else None
        by_month[bucket.key] = check_month(bucket, previous)

    overall: list[dict[str, object]] = []
    order: dict[str, str] = {}
    statuses: dict[str, list[CheckStatus]] = {}
    for results in by_month.values():
        for r in results:
            order.setdefault(r.id, r.name)
            statuses.setdefault(r.id, []).append(r.status)
    for check_id, name in order.items():
        seen = statuses[check_id]
        overall.append(
            {
                "id": check_id,
                "name": name,
                "status": worst_status(seen),
                "counts": {s: seen.count(s) for s in (GROEN, GEEL, ROOD)},
            }
        )

    n_rood = sum(1 for o in overall if o["status"] == ROOD)
    _logger.info("financial_checks:done months=%d checks=%d rood=%d", len(by_month), len(overall), n_rood)
    return FinancialChecks(by_month=by_month, overall=overall)


__all__ = [
    "GEEL",
    "GROEN",
    "ROOD",
    "check_month",
    "find_category_value",
    "run_financial_checks",
    "worst_status",
]
