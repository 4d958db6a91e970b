"""Command Line Interface for proclog.

Ingest logbook PDF exports and print the ESR grid and PCR rate series for an
owner's stored records.

Examples:
    proclog ingest exports/eyelogbook.pdf --owner trainee-42
    proclog esr --owner trainee-42 --period last_year
    proclog pcr --owner trainee-42 --step 3
"""

import asyncio
import logging
from datetime import date, datetime
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from proclog import __version__
from proclog.domain.enums import ESR_GRADES
from proclog.domain.ports import IngestionError
from proclog.domain.services.complication_rate import (
    compute_pcr_series,
    monthly_counts,
    phaco_summary,
)
from proclog.domain.services.esr_aggregator import (
    WindowPreset,
    build_esr_grid,
    grid_rows,
    resolve_window,
)
from proclog.domain.services.ingestion_service import IngestionService
from proclog.infrastructure.logging_config import setup_logging
from proclog.infrastructure.settings import settings
from proclog.main import create_ingestion_service

app = typer.Typer(
    name="proclog",
    help="Surgical logbook ingestion and ESR/PCR analytics",
    add_completion=False
)
console = Console()
logger = logging.getLogger(__name__)


def _open_service() -> IngestionService:
    try:
        return create_ingestion_service()
    except Exception as e:
        console.print(f"[red]✗[/red] Failed to initialize storage: {str(e)}")
        raise typer.Exit(code=1)


def _resolve_owner(owner: Optional[str]) -> str:
    owner = owner or settings.default_owner
    if not owner:
        console.print("[red]✗[/red] An owner is required (--owner or PL_OWNER)")
        raise typer.Exit(code=2)
    return owner


def _as_date(value: Optional[datetime]) -> Optional[date]:
    return value.date() if value else None


@app.command()
def ingest(
    pdf_file: Path = typer.Argument(..., help="Logbook PDF export", exists=True, dir_okay=False),
    owner: Optional[str] = typer.Option(None, "--owner", "-o", help="Owner the records belong to"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Ingest a logbook PDF export into the owner's record store.

    Records already present (same patient, eye, procedure and date) are skipped.
    """
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        console.print("[dim]Verbose logging enabled[/dim]")

    owner_id = _resolve_owner(owner)
    console.print(f"\n[bold blue]proclog ingestion[/bold blue]")
    console.print(f"[dim]Input file:[/dim] {pdf_file}")
    console.print(f"[dim]Database:[/dim] {settings.db_config.db_type}")
    console.print()

    service = _open_service()
    try:
        with console.status("[bold green]Reading logbook..."):
            result = asyncio.run(service.ingest_document(owner_id, pdf_file))
    except IngestionError as e:
        console.print(f"[red]✗[/red] Ingestion failed: {str(e)}")
        raise typer.Exit(code=1)
    finally:
        service.store.close()

    summary_table = Table(show_header=False, box=None, padding=(0, 2))
    summary_table.add_row("Rows read:", f"{result.rows_extracted:,}")
    summary_table.add_row("Procedures recognised:", f"{result.rows_classified:,}")
    summary_table.add_row("New records:", f"[green]{result.accepted:,}[/green]")
    summary_table.add_row("Already stored:", f"{result.skipped_duplicate:,}")
    if result.blob_path:
        summary_table.add_row("Document retained:", result.blob_path)
    summary_table.add_row("Ingestion ID:", result.ingestion_id or "-")
    console.print("[bold]Ingestion Summary:[/bold]")
    console.print(summary_table)
    console.print(f"\n[green]✓[/green] Ingestion completed successfully")


@app.command()
def esr(
    owner: Optional[str] = typer.Option(None, "--owner", "-o", help="Owner whose records to summarise"),
    period: WindowPreset = typer.Option(WindowPreset.ALL_TIME, "--period", "-p", help="Time window preset"),
    start: Optional[datetime] = typer.Option(None, "--start", formats=["%Y-%m-%d"], help="Window start (custom)"),
    end: Optional[datetime] = typer.Option(None, "--end", formats=["%Y-%m-%d"], help="Window end (custom)"),
) -> None:
    """Print the ESR grid: procedures by category and role, one column per grade."""
    owner_id = _resolve_owner(owner)
    if start or end:
        period = WindowPreset.CUSTOM
    window_start, window_end = resolve_window(period, start=_as_date(start), end=_as_date(end))

    service = _open_service()
    try:
        records = service.list_records(owner_id)
    except IngestionError as e:
        console.print(f"[red]✗[/red] Failed to load records: {str(e)}")
        raise typer.Exit(code=1)
    finally:
        service.store.close()

    grid = build_esr_grid(records, start=window_start, end=window_end)

    window_label = f"{window_start.isoformat() if window_start else 'all time'} to {window_end.isoformat()}"
    table = Table(title=f"ESR summary ({window_label})")
    table.add_column("Category")
    table.add_column("Role")
    for grade in ESR_GRADES:
        table.add_column(grade.value, justify="right")
    table.add_column("Total", justify="right", style="bold")

    for category, role_label, counts, total in grid_rows(grid):
        table.add_row(category, role_label, *(str(c) if c else "" for c in counts), str(total))

    column_totals = grid.column_totals
    table.add_row(
        "[bold]Total[/bold]", "",
        *(str(column_totals[grade.value]) for grade in ESR_GRADES),
        str(grid.grand_total),
    )
    console.print(table)

    summary = phaco_summary(records, start=window_start, end=window_end)
    phaco_table = Table(show_header=False, box=None, padding=(0, 2))
    phaco_table.add_row("Cataract cases:", str(summary.total))
    phaco_table.add_row("Performed (P + PS):", str(summary.performed))
    phaco_table.add_row("Supervised (SJ):", str(summary.supervised))
    phaco_table.add_row("Assisted:", str(summary.assisted))
    phaco_table.add_row("PCR rate:", f"{summary.pcr_rate:.2f}%")
    console.print(phaco_table)


@app.command()
def pcr(
    owner: Optional[str] = typer.Option(None, "--owner", "-o", help="Owner whose cataract cases to chart"),
    step: Optional[int] = typer.Option(None, "--step", min=1, help="Stepped-rate snapshot interval"),
) -> None:
    """Print the cumulative and stepped PCR rate over the owner's cataract cases."""
    owner_id = _resolve_owner(owner)
    step = step or settings.parser_config.pcr_step

    service = _open_service()
    try:
        records = service.list_records(owner_id)
    except IngestionError as e:
        console.print(f"[red]✗[/red] Failed to load records: {str(e)}")
        raise typer.Exit(code=1)
    finally:
        service.store.close()

    series = compute_pcr_series(records, step=step)
    if not series:
        console.print("[yellow]⚠[/yellow] No cataract cases found")
        return

    table = Table(title=f"PCR rate ({len(series)} cases)")
    table.add_column("#", justify="right")
    table.add_column("Date")
    table.add_column("PCR", justify="center")
    table.add_column("Cumulative %", justify="right")
    table.add_column(f"Stepped % (every {step})", justify="right")
    for point in series:
        table.add_row(
            str(point.index),
            point.date.isoformat(),
            "[red]●[/red]" if point.is_pcr else "",
            f"{point.cumulative_rate:.1f}",
            f"{point.stepped_rate:.1f}",
        )
    console.print(table)

    monthly = Table(title="Cataract cases per month")
    monthly.add_column("Month")
    monthly.add_column("Cases", justify="right")
    for month, count in monthly_counts(records):
        monthly.add_row(month, str(count))
    console.print(monthly)


@app.command()
def info() -> None:
    """Display configuration."""
    console.print("[bold blue]System Information[/bold blue]\n")

    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", settings.app_name)
    for key, value in settings.db_config.describe().items():
        info_table.add_row(f"{key}:", str(value))
    blob_config = settings.blob_config
    info_table.add_row("Document retention:", blob_config.root_dir if blob_config.enabled else "Disabled")
    parser_config = settings.parser_config
    info_table.add_row("Row tolerance:", str(parser_config.row_tolerance))
    info_table.add_row("Min row tokens:", str(parser_config.min_row_tokens))
    info_table.add_row("PCR step:", str(parser_config.pcr_step))
    console.print(info_table)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"proclog v{__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False, "--version", help="Show version information",
        callback=_version_callback, is_eager=True,
    ),
) -> None:
    """proclog: surgical logbook ingestion and analytics."""
    setup_logging(use_json=settings.log_json, log_level=settings.log_level)


if __name__ == "__main__":
    app()
