"""
CLI: ``sitemapspine``: run the incremental build and inspect its state.

Meant to be run from cron. Fatal conditions exit with status 1; a run that
declines because another one appears active exits with 0.
"""

from __future__ import annotations

import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table
from sqlalchemy.engine import make_url

from sitemapspine import __version__
from sitemapspine.core.errors import SitemapError
from sitemapspine.core.logging import configure_logging, get_logger
from sitemapspine.core.session import create_sitemap_engine, create_state_tables
from sitemapspine.core.settings import SitemapSettings, WorkerBackend, get_settings
from sitemapspine.execution.ledger import CheckedEntityLedger
from sitemapspine.orchestration.control import ControlStore
from sitemapspine.orchestration.coordinator import RunCoordinator

app = typer.Typer(
    name="sitemapspine",
    help="Incremental sitemap builder driven by replication packets.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()
err_console = Console(stderr=True)
logger = get_logger(__name__)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"sitemap-spine {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """sitemap-spine CLI: incremental sitemaps from replication packets."""


def _load_settings(**overrides: object) -> SitemapSettings:
    settings = get_settings()
    changes = {k: v for k, v in overrides.items() if v is not None}
    if changes:
        settings = settings.model_copy(update=changes)
    configure_logging(level=settings.log_level, json_format=settings.log_json)
    return settings


@app.command()
def run(
    workers: int | None = typer.Option(None, "--workers", "-w", help="Worker processes"),
    inline: bool = typer.Option(False, "--inline", help="Run workers in this process"),
) -> None:
    """Process every pending replication packet and refresh the sitemap index."""
    settings = _load_settings(
        max_workers=workers,
        worker_backend=WorkerBackend.INLINE if inline else None,
    )
    coordinator = RunCoordinator.from_settings(settings)
    try:
        with coordinator.pool:
            result = coordinator.run()
    except SitemapError as e:
        err_console.print(f"[bold red]Error[/bold red] ({e.category.value}): {e.message}")
        raise typer.Exit(code=e.exit_code) from e
    finally:
        coordinator.http.close()
        coordinator.engine.dispose()

    if result.declined:
        console.print("[yellow]Declined:[/yellow] another run appears to be active.")
    elif result.processed:
        console.print(
            f"Processed sequences {result.processed[0]}–{result.processed[-1]}, "
            f"{result.pages_changed} page(s) changed."
        )
    else:
        console.print("Up-to-date.")
    raise typer.Exit(code=result.exit_code)


@app.command()
def status(
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Show the control cursor and the checked-entities ledger."""
    settings = _load_settings()
    engine = create_sitemap_engine(settings.database_url, state_schema=settings.state_schema)
    try:
        cursor = ControlStore(engine).read()
        ledger_rows = CheckedEntityLedger(engine).count()
    finally:
        engine.dispose()

    data = {
        "last_processed_sequence": cursor.last_processed_sequence if cursor else None,
        "last_indexed_sequence": cursor.last_indexed_sequence if cursor else None,
        "checked_entities": ledger_rows,
        "index_present": settings.index_path.is_file(),
    }
    if json_out:
        console.print_json(json.dumps(data))
        return

    table = Table(title="Sitemap Status")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in data.items():
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)
    if cursor is None:
        err_console.print("[bold red]Control table is empty[/bold red]")
        raise typer.Exit(code=1)


@app.command("init-db")
def init_db(
    indexed_sequence: int | None = typer.Option(
        None, "--indexed-sequence", help="Seed the control row with this full-build sequence"
    ),
) -> None:
    """Create the state tables, and optionally seed the control row."""
    settings = _load_settings()
    url = make_url(settings.database_url)
    if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    engine = create_sitemap_engine(settings.database_url, state_schema=settings.state_schema)
    try:
        create_state_tables(engine, settings.state_schema)
        if indexed_sequence is not None:
            ControlStore(engine).initialize(last_indexed_sequence=indexed_sequence)
    finally:
        engine.dispose()
    logger.info("cli.init_db", state_schema=settings.state_schema)
    console.print("[green]State tables ready.[/green]")


if __name__ == "__main__":
    app()
