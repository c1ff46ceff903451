"""
Ingestion CLI Commands
======================

CLI commands for fetching raw payloads and running the processing driver.

Exit codes for batch commands: 0 success, 1 some records failed,
2 fatal error (unknown source, missing config, unreachable store or queue).
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table
from sqlalchemy.exc import SQLAlchemyError

from asp_catalog.db.engine import get_session
from asp_catalog.db.repositories import (
    PerformerRepository,
    ProductRepository,
    ProductSourceRepository,
    ReviewFlagRepository,
)
from asp_catalog.ingestion.adapters import get_adapter_info, list_adapters
from asp_catalog.ingestion.crawler import Fetcher, FetchSummary, store_csv_feed
from asp_catalog.ingestion.errors import FatalIngestionError
from asp_catalog.ingestion.jobs import (
    enqueue_processing,
    get_job_status,
    object_store_for,
    run_batch_sync,
    run_enrich_sync,
)
from asp_catalog.ingestion.lookup import HostRateLimiter
from asp_catalog.ingestion.pipeline import ALL_SOURCES, BatchStats
from asp_catalog.ingestion.registry import SourceConfig, SourceRegistry, get_default_registry
from asp_catalog.ingestion.storage import RawStore

console = Console()
ingest_app = typer.Typer(help="Ingestion pipeline commands")
sources_app = typer.Typer(help="Source management commands")
review_app = typer.Typer(help="Review queue commands")
jobs_app = typer.Typer(help="Job management commands")

ingest_app.add_typer(sources_app, name="sources")
ingest_app.add_typer(review_app, name="review")
ingest_app.add_typer(jobs_app, name="jobs")

EXIT_RECORD_ERRORS = 1
EXIT_FATAL = 2


def _load_registry() -> SourceRegistry:
    try:
        return get_default_registry()
    except FatalIngestionError as e:
        rprint(f"[red]Fatal:[/red] {e}")
        raise typer.Exit(EXIT_FATAL)


def _require_source(registry: SourceRegistry, name: str) -> SourceConfig:
    source = registry.get_source(name)
    if source is None:
        rprint(f"[red]Error:[/red] Source '{name}' not found")
        rprint("\nAvailable sources:")
        for s in registry.list_sources():
            status = "[green]enabled[/green]" if s.enabled else "[yellow]disabled[/yellow]"
            rprint(f"  • {s.name} ({status})")
        raise typer.Exit(EXIT_FATAL)
    return source


@ingest_app.command("run")
def run_processing(
    source: str = typer.Option(ALL_SOURCES, "--source", "-s", help="Source name, or 'all'"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Records per source"),
    enrich: bool = typer.Option(False, "--enrich", help="Query reference lookups for performers"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", help="Concurrent units"),
    sync: bool = typer.Option(False, "--sync", help="Run in-process instead of enqueueing"),
) -> None:
    """
    Process unprocessed raw records into canonical products.

    Examples:
        asp-catalog ingest run --source all --limit 500 --sync
        asp-catalog ingest run -s fanza-api --enrich
    """
    registry = _load_registry()
    if source != ALL_SOURCES:
        _require_source(registry, source)

    rprint(f"\n[bold]Processing source:[/bold] {source}")
    if limit:
        rprint(f"  Limit: {limit}")
    if enrich:
        rprint("  Enrichment: on")

    if sync:
        rprint("\n[dim]Running in-process...[/dim]\n")
        try:
            with console.status("[bold blue]Processing...[/bold blue]"):
                stats = run_batch_sync(
                    source, limit, enrich=enrich, concurrency=concurrency, registry=registry
                )
        except FatalIngestionError as e:
            rprint(f"[red]Fatal:[/red] {e}")
            raise typer.Exit(EXIT_FATAL)

        _display_batch_stats(stats.to_dict())
        if stats.errors:
            raise typer.Exit(EXIT_RECORD_ERRORS)
        return

    rprint("\n[dim]Enqueueing job...[/dim]")
    try:
        job_id = asyncio.run(enqueue_processing(source, limit, enrich))
    except Exception as e:
        rprint(f"\n[red]Error:[/red] Failed to enqueue job: {e}")
        rprint("\nMake sure Redis is running, or use --sync")
        raise typer.Exit(EXIT_FATAL)

    rprint("\n[green]Job enqueued successfully![/green]")
    rprint(f"Job ID: [bold]{job_id}[/bold]")
    rprint("\nCheck status with:")
    rprint(f"  asp-catalog ingest jobs status {job_id}")


@ingest_app.command("enrich")
def enrich_products(
    source: str = typer.Option(ALL_SOURCES, "--source", "-s", help="Source name, or 'all'"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Products to look up"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", help="Concurrent lookups"),
) -> None:
    """
    Look up performers again for products that still have none.

    Examples:
        asp-catalog ingest enrich
        asp-catalog ingest enrich --source mgs-html --limit 50
    """
    registry = _load_registry()
    if source != ALL_SOURCES:
        _require_source(registry, source)

    rprint(f"\n[bold]Enriching products from:[/bold] {source}")
    try:
        with console.status("[bold blue]Looking up performers...[/bold blue]"):
            stats = run_enrich_sync(source, limit, concurrency=concurrency, registry=registry)
    except FatalIngestionError as e:
        rprint(f"[red]Fatal:[/red] {e}")
        raise typer.Exit(EXIT_FATAL)

    _display_batch_stats(stats.to_dict())
    if stats.errors:
        raise typer.Exit(EXIT_RECORD_ERRORS)


@ingest_app.command("fetch")
def fetch_products(
    source: str = typer.Option(..., "--source", "-s", help="Source name"),
    product_ids: list[str] = typer.Argument(..., help="Source product ids to fetch"),
    concurrency: int = typer.Option(4, "--concurrency", "-c", help="Concurrent requests"),
) -> None:
    """
    Fetch product payloads into the raw store.

    Examples:
        asp-catalog ingest fetch --source mgs-html 259LUXU-1234 SIRO-5000
    """
    registry = _load_registry()
    source_config = _require_source(registry, source)
    if not source_config.url_template:
        rprint(f"[red]Error:[/red] Source '{source}' has no url_template")
        raise typer.Exit(EXIT_FATAL)

    global_config = registry.global_config
    fetcher = Fetcher(
        user_agent=global_config.user_agent,
        timeout=global_config.request_timeout,
        max_retries=global_config.max_retries,
        limiter=HostRateLimiter(global_config.default_rate_limit.min_interval_seconds),
    )

    try:
        with get_session() as session:
            raw_store = RawStore(
                session,
                object_store=object_store_for(registry),
                inline_limit_bytes=global_config.inline_body_limit_bytes,
            )
            with console.status(f"[bold blue]Fetching {len(product_ids)} product(s)...[/bold blue]"):
                summary = asyncio.run(
                    fetcher.fetch_into_store(source_config, product_ids, raw_store, concurrency)
                )
            session.commit()
    except SQLAlchemyError as e:
        rprint(f"[red]Fatal:[/red] Raw store unavailable: {e}")
        raise typer.Exit(EXIT_FATAL)

    _display_fetch_summary(summary)
    if summary.failed:
        raise typer.Exit(EXIT_RECORD_ERRORS)


@ingest_app.command("csv")
def ingest_csv(
    source: str = typer.Option(..., "--source", "-s", help="Source name"),
    file: Path = typer.Argument(..., help="CSV feed file"),
    encoding: str = typer.Option("utf-8", "--encoding", help="File encoding (e.g. cp932)"),
) -> None:
    """
    Store each row of a CSV feed as a raw record.

    Examples:
        asp-catalog ingest csv --source b10f-csv feed.csv
    """
    registry = _load_registry()
    source_config = _require_source(registry, source)
    if not file.exists():
        rprint(f"[red]Error:[/red] File not found: {file}")
        raise typer.Exit(EXIT_FATAL)

    text = file.read_text(encoding=encoding)
    try:
        with get_session() as session:
            raw_store = RawStore(
                session,
                object_store=object_store_for(registry),
                inline_limit_bytes=registry.global_config.inline_body_limit_bytes,
            )
            summary = store_csv_feed(source_config, text, raw_store)
            session.commit()
    except SQLAlchemyError as e:
        rprint(f"[red]Fatal:[/red] Raw store unavailable: {e}")
        raise typer.Exit(EXIT_FATAL)

    _display_fetch_summary(summary)
    if summary.failed:
        raise typer.Exit(EXIT_RECORD_ERRORS)


@ingest_app.command("stats")
def show_stats(
    source: Optional[str] = typer.Option(None, "--source", "-s", help="Limit to one source"),
) -> None:
    """Show raw store and catalog counts."""
    with get_session() as session:
        raw = RawStore(session).stats(source)
        open_flags = ReviewFlagRepository(session).count_open(source)
        products = ProductRepository(session).count()
        listings = ProductSourceRepository(session).count()
        performers = PerformerRepository(session).count()

    table = Table(title=f"Ingestion Stats{f' ({source})' if source else ''}")
    table.add_column("Metric", style="bold")
    table.add_column("Count", justify="right")
    table.add_row("Raw records", str(raw["total"]))
    table.add_row("  processed", str(raw["processed"]))
    table.add_row("  awaiting processing", str(raw["unprocessed"]))
    table.add_row("  flagged for review", str(raw["flagged"]))
    table.add_row("  stored externally", str(raw["external"]))
    table.add_row("Open review flags", str(open_flags))
    table.add_row("Canonical products", str(products))
    table.add_row("ASP listings", str(listings))
    table.add_row("Performers", str(performers))
    console.print(table)


@ingest_app.command("worker")
def start_worker(
    burst: bool = typer.Option(False, "--burst", help="Run in burst mode (exit when queue empty)"),
) -> None:
    """
    Start the processing worker.

    The worker runs queued jobs and the scheduled run over all sources.

    Examples:
        asp-catalog ingest worker
        asp-catalog ingest worker --burst
    """
    from arq import run_worker

    from asp_catalog.ingestion.jobs import WorkerSettings

    rprint("[bold]Starting processing worker...[/bold]")
    rprint("Press Ctrl+C to stop\n")

    try:
        run_worker(WorkerSettings, burst=burst)
    except Exception as e:
        rprint(f"[red]Error:[/red] Worker failed: {e}")
        rprint("\nMake sure Redis is running")
        raise typer.Exit(EXIT_FATAL)


# Sources subcommands


@sources_app.command("list")
def list_sources(
    all_sources: bool = typer.Option(False, "--all", "-a", help="Show all sources including disabled"),
) -> None:
    """
    List configured ingestion sources.

    Examples:
        asp-catalog ingest sources list --all
    """
    registry = _load_registry()
    sources = registry.list_sources() if all_sources else registry.list_enabled_sources()

    if not sources:
        rprint("[yellow]No sources configured[/yellow]")
        rprint("\nAdd sources to config/sources.yaml")
        return

    table = Table(title="Ingestion Sources")
    table.add_column("Name", style="bold")
    table.add_column("ASP")
    table.add_column("Adapter")
    table.add_column("Data")
    table.add_column("Priority", justify="right")
    table.add_column("Status")
    table.add_column("Min Interval")

    for source in sources:
        status = "[green]enabled[/green]" if source.enabled else "[yellow]disabled[/yellow]"
        table.add_row(
            source.name,
            source.asp_name,
            source.adapter,
            source.data_source.value,
            str(source.priority),
            status,
            f"{source.rate_limit.min_interval_seconds}s",
        )

    console.print(table)


@sources_app.command("show")
def show_source(
    name: str = typer.Argument(..., help="Source name"),
) -> None:
    """
    Show detailed information about a source.

    Examples:
        asp-catalog ingest sources show fanza-api
    """
    registry = _load_registry()
    source = _require_source(registry, name)

    status = "[green]enabled[/green]" if source.enabled else "[yellow]disabled[/yellow]"

    rprint(f"\n[bold]Source: {source.name}[/bold]")
    rprint(f"  Status: {status}")
    rprint(f"  ASP: {source.asp_name}")
    rprint(f"  Adapter: {source.adapter}")
    rprint(f"  Data source: {source.data_source.value}")
    rprint(f"  Priority: {source.priority}")
    if source.description:
        rprint(f"  Description: {source.description}")
    if source.url_template:
        rprint(f"  URL template: {source.url_template}")
    rprint(f"  Min interval: {source.rate_limit.min_interval_seconds}s")

    rprint("\n[bold]Product Codes:[/bold]")
    if source.qualify_codes:
        rprint(f"  Qualified with: {source.code_namespace or source.name}")
    else:
        rprint("  Global (not site-qualified)")
    for pattern in source.strip_prefixes:
        rprint(f"  Strip: {pattern}")

    adapter_info = get_adapter_info(source.adapter)
    if adapter_info:
        rprint("\n[bold]Adapter Info:[/bold]")
        rprint(f"  Name: {adapter_info['name']}")
        rprint(f"  Version: {adapter_info['version']}")
        rprint(f"  Class: {adapter_info['class']}")
    else:
        rprint(f"\n[red]Adapter '{source.adapter}' is not registered[/red]")


@sources_app.command("adapters")
def list_source_adapters() -> None:
    """List available adapters."""
    table = Table(title="Available Adapters")
    table.add_column("Name", style="bold")
    table.add_column("Version")
    table.add_column("Class")

    for adapter_name in list_adapters():
        info = get_adapter_info(adapter_name)
        if info:
            table.add_row(info["name"], info["version"], info["class"])

    console.print(table)


# Review subcommands


@review_app.command("list")
def list_review_flags(
    source: Optional[str] = typer.Option(None, "--source", "-s", help="Limit to one source"),
    limit: int = typer.Option(50, "--limit", "-l", help="Maximum flags to show"),
) -> None:
    """List open review flags, newest first."""
    with get_session() as session:
        flags = ReviewFlagRepository(session).list_open(source, limit)

    if not flags:
        rprint("[green]Review queue is empty[/green]")
        return

    table = Table(title="Review Queue")
    table.add_column("ID", style="dim")
    table.add_column("Source")
    table.add_column("Product ID")
    table.add_column("Reason", style="bold")
    table.add_column("Detail")
    table.add_column("Flagged")

    for flag in flags:
        table.add_row(
            str(flag.id),
            flag.source,
            flag.source_product_id,
            flag.reason.value,
            flag.detail[:60],
            flag.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@review_app.command("resolve")
def resolve_review_flag(
    flag_id: str = typer.Argument(..., help="Review flag ID"),
) -> None:
    """Close a review flag."""
    with get_session() as session:
        try:
            ReviewFlagRepository(session).resolve(flag_id)
        except ValueError as e:
            rprint(f"[red]Error:[/red] {e}")
            raise typer.Exit(EXIT_RECORD_ERRORS)
        session.commit()
    rprint(f"[green]Flag {flag_id} resolved[/green]")


# Jobs subcommands


@jobs_app.command("status")
def job_status(
    job_id: str = typer.Argument(..., help="Job ID to check"),
) -> None:
    """
    Check the status of a processing job.

    Examples:
        asp-catalog ingest jobs status abc123
    """
    try:
        result = asyncio.run(get_job_status(job_id))
    except Exception as e:
        rprint(f"[red]Error:[/red] Failed to get job status: {e}")
        rprint("\nMake sure Redis is running")
        raise typer.Exit(EXIT_FATAL)

    if result is None:
        rprint(f"[yellow]Job '{job_id}' not found[/yellow]")
        raise typer.Exit(EXIT_RECORD_ERRORS)

    rprint(f"\n[bold]Job: {job_id}[/bold]")
    rprint(f"  Queue status: {result.get('status', 'unknown')}")
    if isinstance(result.get("result"), dict):
        _display_batch_stats(result["result"])


def _display_fetch_summary(summary: FetchSummary) -> None:
    rprint("\n[bold]Stored:[/bold]")
    rprint(f"  New: {summary.new}")
    rprint(f"  Changed: {summary.changed}")
    rprint(f"  Unchanged: {summary.unchanged}")
    if summary.failed:
        rprint(f"\n[bold red]Failed ({summary.failed}):[/bold red]")
        for error in summary.errors[:10]:
            rprint(f"  • {error}")
        if len(summary.errors) > 10:
            rprint(f"  ... and {len(summary.errors) - 10} more")


def _display_batch_stats(result: dict) -> None:
    """Display batch statistics."""
    stats = BatchStats.from_dict(result)
    status = result.get("status")
    if status:
        status_color = {"completed": "green", "failed": "red"}.get(status, "white")
        rprint(f"\n  Status: [{status_color}]{status}[/{status_color}]")

    rprint("\n[bold]Results:[/bold]")
    rprint(f"  Source: {stats.source}")
    if stats.started_at and stats.completed_at:
        rprint(f"  Duration: {(stats.completed_at - stats.started_at).total_seconds():.1f}s")
    rprint(f"  Created: {stats.created}")
    rprint(f"  Updated: {stats.updated}")
    rprint(f"  Skipped (unchanged): {stats.skipped}")
    rprint(f"  Flagged for review: {stats.flagged}")
    if stats.conflicts:
        rprint(f"  [yellow]Identity conflicts flagged: {stats.conflicts}[/yellow]")
    if stats.lookup_failures:
        rprint(
            f"  [yellow]Lookups failed: {stats.lookup_failures}[/yellow] "
            "(retry with: asp-catalog ingest enrich)"
        )
    rprint(f"  Errors: {stats.errors}")
    if stats.stopped:
        rprint("  [yellow]Stopped early (time budget or stop request)[/yellow]")

    if stats.error_messages:
        rprint(f"\n[bold red]Errors ({len(stats.error_messages)}):[/bold red]")
        for error in stats.error_messages[:10]:  # Show first 10
            rprint(f"  • {error}")
        if len(stats.error_messages) > 10:
            rprint(f"  ... and {len(stats.error_messages) - 10} more")
