# ruff: noqa: I001
"""CLI for the ``afas_finance`` package.

This module exposes callable command handlers (``cmd_*``, each returning a
process exit code) and a Typer-based console interface. Environment variables
(``AFAS_*``, ``DATABASE_URL``, ``OPENAI_API_KEY``) are loaded from a local
``.env`` using ``python-dotenv`` before delegating to command logic.

Record inputs are JSON files holding either a list of AFAS rows or the AFAS
response shape ``{"rows": [...]}``.
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Annotated, Any

import typer
from dotenv import load_dotenv
from typer.models import OptionInfo

from .logging_setup import configure_logging


# ---- Small module-level helpers used by CLI commands -------------------------


def _load_records(path: str | Path) -> list[dict[str, Any]] | None:
    """Load rows or print an ``Error:`` line and return ``None``."""

    from .records import load_records_file

    try:
        return load_records_file(path)
    except FileNotFoundError:
        print(f"Error: File not found: {path}", file=sys.stderr)
    except PermissionError:
        print(f"Error: Permission denied: {path}", file=sys.stderr)
    except json.JSONDecodeError as e:
        print(f"Error: Failed to parse JSON in '{path}': {e}", file=sys.stderr)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
    return None


def _dump(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _fmt(amount: float | None) -> str:
    return "" if amount is None else f"{amount:.2f}"


def _build_cache(database_url: str | None) -> Any:
    from .cache import DatabaseCacheBackend, FallbackCache, FileCacheBackend

    if database_url or os.getenv("DATABASE_URL"):
        return FallbackCache(DatabaseCacheBackend(database_url), FileCacheBackend())
    return FallbackCache(FileCacheBackend())


# ---- Command handlers --------------------------------------------------------


def cmd_fetch(
    *,
    output: str | None = None,
    no_cache: bool = False,
    year: int | None = None,
    database_url: str | None = None,
) -> int:
    """Fetch AFAS rows through the cache; write ``{"rows": [...]}`` to ``output``.

    Without ``output`` only a one-line summary is printed.
    """

    from .afas_client import AfasClient
    from .cache import load_or_fetch

    try:
        client = AfasClient.from_env()
    except (RuntimeError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    key = client.cache_key if year is None else f"{client.cache_key}:{year}"
    try:
        entry = load_or_fetch(
            _build_cache(database_url),
            key,
            lambda: client.fetch_all(year=year),
            force_refresh=no_cache,
        )
    except Exception as e:
        print(f"Error: AFAS fetch failed: {e}", file=sys.stderr)
        return 1

    if output:
        out_path = Path(output)
        try:
            out_path.write_text(
                json.dumps({"rows": entry.records}, ensure_ascii=False), encoding="utf-8"
            )
        except OSError as e:
            print(f"Error: Failed to write '{output}': {e}", file=sys.stderr)
            return 1
    print(
        f"records={entry.record_count}\tlast_refreshed={entry.last_refreshed.isoformat()}"
        f"\texpires_at={entry.expires_at.isoformat()}"
    )
    return 0


def cmd_view(input_path: str, period_from: str, period_to: str, *, checks: bool = False) -> int:
    from .models import PeriodRange
    from .transform import build_financial_view

    records = _load_records(input_path)
    if records is None:
        return 1
    try:
        range_ = PeriodRange.from_periods(period_from, period_to)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    view = build_financial_view(records, range_, include_checks=checks)
    if view is None:
        print("Error: input did not contain a list of rows", file=sys.stderr)
        return 1
    _dump(view.to_dict())
    return 0


def cmd_pnl(input_path: str, period_from: str, period_to: str, *, granularity: str = "month") -> int:
    """Print ``<periode>\\t<post>\\t<bedrag>`` rows followed by totals."""

    from .statements import AnalysisTools

    records = _load_records(input_path)
    if records is None:
        return 1
    try:
        pnl = AnalysisTools(records).get_profit_loss_statement(period_from, period_to, granularity)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    for row in pnl["rows"]:
        print(f"{row['periode']}\t{row['post']}\t{_fmt(row['bedrag'])}")
    for post, amount in pnl["totals"].items():
        print(f"totaal\t{post}\t{_fmt(amount)}")
    return 0


def cmd_balance(input_path: str, as_of: str, *, side: str = "both") -> int:
    from .statements import AnalysisTools

    records = _load_records(input_path)
    if records is None:
        return 1
    try:
        bs = AnalysisTools(records).get_balance_sheet(as_of, side, include_opening_balance=False)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    for section in ("assets", "liabilities", "equity"):
        for entry in bs.get(section, []):
            print(f"{section}\t{entry['post']}\t{_fmt(entry['amount'])}")
    for name, amount in bs["totals"].items():
        print(f"totaal\t{name}\t{_fmt(amount)}")
    return 0


def cmd_checks(input_path: str, period_from: str, period_to: str) -> int:
    """Print per-month check statuses and the overall worst status per check."""

    from .models import PeriodRange
    from .transform import build_financial_view

    records = _load_records(input_path)
    if records is None:
        return 1
    try:
        range_ = PeriodRange.from_periods(period_from, period_to)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    view = build_financial_view(records, range_, include_checks=True)
    if view is None:
        print("Error: input did not contain a list of rows", file=sys.stderr)
        return 1
    for month_key, results in view.financial_checks.by_month.items():
        for c in results:
            print(f"{month_key}\t{c.id}\t{c.status}\t{_fmt(c.value)}")
    for entry in view.financial_checks.overall:
        print(f"overall\t{entry['id']}\t{entry['status']}")
    return 0


def cmd_map_categories(
    input_path: str,
    *,
    user_id: str,
    database_url: str | None = None,
    batch_size: int = 20,
    dry_run: bool = False,
) -> int:
    """Map unmapped Kosten/Opbrengsten sub-categories with the model and persist."""

    from .category_mapping import (
        collect_unmapped,
        load_mappings,
        map_categories_with_ai,
        save_ai_mappings,
    )

    if not os.getenv("OPENAI_API_KEY"):
        print("Error: OPENAI_API_KEY is not set in the environment.", file=sys.stderr)
        return 1
    records = _load_records(input_path)
    if records is None:
        return 1

    try:
        existing = {} if dry_run else load_mappings(user_id, database_url=database_url)
    except Exception as e:
        print(f"Error: failed to load mappings from DB: {e}", file=sys.stderr)
        return 1

    unmapped = collect_unmapped(records, existing)
    if not unmapped:
        print("Nothing to map.")
        return 0

    try:
        results = map_categories_with_ai(unmapped, batch_size=batch_size)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if not dry_run:
        try:
            save_ai_mappings(user_id, results, database_url=database_url)
        except Exception as e:
            print(f"Error: persistence (mappings) failed: {e}", file=sys.stderr)
            return 1

    for r in results:
        print(f"{r.category_3}\t{r.type_rekening}\t{r.mapped_category}\t{r.origin}")
    return 0


def cmd_enhanced_pnl(
    input_path: str,
    period_from: str,
    period_to: str,
    *,
    user_id: str,
    database_url: str | None = None,
) -> int:
    from .category_mapping import enhanced_profit_loss, load_mappings
    from .models import PeriodRange
    from .transform import build_financial_view

    records = _load_records(input_path)
    if records is None:
        return 1
    try:
        range_ = PeriodRange.from_periods(period_from, period_to)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    try:
        mappings = load_mappings(user_id, database_url=database_url)
    except Exception as e:
        print(f"Error: failed to load mappings from DB: {e}", file=sys.stderr)
        return 1
    view = build_financial_view(records, range_)
    if view is None:
        print("Error: input did not contain a list of rows", file=sys.stderr)
        return 1
    _dump(enhanced_profit_loss(view, mappings))
    return 0


def cmd_ask(question: str, input_path: str, *, max_rounds: int = 6) -> int:
    from .assistant import ask
    from .statements import AnalysisTools

    if not os.getenv("OPENAI_API_KEY"):
        print("Error: OPENAI_API_KEY is not set in the environment.", file=sys.stderr)
        return 1
    records = _load_records(input_path)
    if records is None:
        return 1
    try:
        reply = ask(question, AnalysisTools(records), max_rounds=max_rounds)
    except Exception as e:
        print(f"Error: assistant failed: {e}", file=sys.stderr)
        return 1
    print(reply.text)
    return 0


# ---- Typer-based console interface -------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Financial views, checks and an AI assistant over AFAS ledger data. "
        "Loads AFAS_*, DATABASE_URL and OPENAI_API_KEY from a local .env before running."
    ),
)

# Module-level option objects to satisfy ruff B008 (no calls in parameter
# defaults).
INPUT_OPTION: OptionInfo = typer.Option(
    ...,
    "--input",
    help='JSON file with AFAS rows (a list or {"rows": [...]})',
    dir_okay=False,
    file_okay=True,
    exists=False,  # the handler reports missing files
)
FROM_OPTION: OptionInfo = typer.Option(..., "--from", help="First period, YYYY-MM")
TO_OPTION: OptionInfo = typer.Option(..., "--to", help="Last period, YYYY-MM")
DATABASE_URL_OPTION: OptionInfo = typer.Option(
    "--database-url", help="Override DATABASE_URL (falls back to env var)."
)


def _exit(rc: int) -> None:
    if rc:
        raise typer.Exit(code=rc)


@app.command("fetch")
def fetch_cmd(
    output: Annotated[str | None, typer.Option("--output", help="Write rows to this JSON file")] = None,
    no_cache: Annotated[bool, typer.Option("--no-cache", help="Bypass cached data")] = False,
    year: Annotated[int | None, typer.Option("--year", help="Only fetch this booking year")] = None,
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Fetch ledger rows from AFAS (cached)."""

    _exit(cmd_fetch(output=output, no_cache=no_cache, year=year, database_url=database_url))


@app.command("view")
def view_cmd(
    input_path: Annotated[Path, INPUT_OPTION],
    period_from: Annotated[str, FROM_OPTION],
    period_to: Annotated[str, TO_OPTION],
    checks: Annotated[bool, typer.Option("--checks", help="Include financial checks")] = False,
) -> None:
    """Print the aggregated financial view as JSON."""

    _exit(cmd_view(str(input_path), period_from, period_to, checks=checks))


@app.command("pnl")
def pnl_cmd(
    input_path: Annotated[Path, INPUT_OPTION],
    period_from: Annotated[str, FROM_OPTION],
    period_to: Annotated[str, TO_OPTION],
    granularity: Annotated[str, typer.Option(help="month, quarter or YTD")] = "month",
) -> None:
    """Print the profit and loss statement."""

    _exit(cmd_pnl(str(input_path), period_from, period_to, granularity=granularity))


@app.command("balance")
def balance_cmd(
    input_path: Annotated[Path, INPUT_OPTION],
    as_of: Annotated[str, typer.Option("--as-of", help="Balance period, YYYY-MM")],
    side: Annotated[str, typer.Option(help="both, assets, liabilities or equity")] = "both",
) -> None:
    """Print the balance sheet for a period."""

    _exit(cmd_balance(str(input_path), as_of, side=side))


@app.command("checks")
def checks_cmd(
    input_path: Annotated[Path, INPUT_OPTION],
    period_from: Annotated[str, FROM_OPTION],
    period_to: Annotated[str, TO_OPTION],
) -> None:
    """Print monthly traffic-light checks."""

    _exit(cmd_checks(str(input_path), period_from, period_to))


@app.command("map-categories")
def map_categories_cmd(
    input_path: Annotated[Path, INPUT_OPTION],
    user_id: Annotated[str, typer.Option("--user-id", help="Owner of the mappings")] = "default",
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
    batch_size: Annotated[int, typer.Option("--batch-size", help="Categories per model call")] = 20,
    dry_run: Annotated[bool, typer.Option("--dry-run", help="Map but do not persist")] = False,
) -> None:
    """AI-map unmapped AFAS sub-categories onto the enhanced P&L."""

    _exit(
        cmd_map_categories(
            str(input_path),
            user_id=user_id,
            database_url=database_url,
            batch_size=batch_size,
            dry_run=dry_run,
        )
    )


@app.command("enhanced-pnl")
def enhanced_pnl_cmd(
    input_path: Annotated[Path, INPUT_OPTION],
    period_from: Annotated[str, FROM_OPTION],
    period_to: Annotated[str, TO_OPTION],
    user_id: Annotated[str, typer.Option("--user-id", help="Owner of the mappings")] = "default",
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Print the enhanced P&L using stored category mappings."""

    _exit(
        cmd_enhanced_pnl(
            str(input_path), period_from, period_to, user_id=user_id, database_url=database_url
        )
    )


@app.command("ask")
def ask_cmd(
    question: Annotated[str, typer.Argument(help="Question for the assistant")],
    input_path: Annotated[Path, INPUT_OPTION],
    max_rounds: Annotated[int, typer.Option("--max-rounds", help="Maximum model calls")] = 6,
) -> None:
    """Answer a question with the AI assistant."""

    _exit(cmd_ask(question, str(input_path), max_rounds=max_rounds))


@app.callback(invoke_without_command=True)
def _root(ctx: typer.Context) -> None:
    """Root command.

    Loads ``.env`` from the current working directory (without overriding any
    already-set environment variables) and configures logging.
    """

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)

    # Central logging setup so child loggers inherit configuration
    configure_logging()

    if ctx.invoked_subcommand is None:
        typer.echo("No subcommand provided. Use --help to see available commands.")
        raise typer.Exit(1)


if __name__ == "__main__":  # pragma: no cover
    app()
