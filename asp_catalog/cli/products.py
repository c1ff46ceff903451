"""
Product CLI Commands
====================

Inspect canonical products, merge duplicates and maintain the local
performer reference index.
"""

from __future__ import annotations

from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from asp_catalog.core.schema import PerformerIndexEntry
from asp_catalog.db.engine import get_session
from asp_catalog.db.repositories import (
    PerformerIndexRepository,
    PerformerRepository,
    ProductMergeRepository,
    ProductRepository,
    ProductSourceRepository,
    TagRepository,
)
from asp_catalog.ingestion.errors import DataQualityError
from asp_catalog.ingestion.normalizer import ProductCodeNormalizer
from asp_catalog.ingestion.resolver import ProductMerger

console = Console()
products_app = typer.Typer(help="Canonical product commands")


@products_app.command("list")
def list_products(
    limit: int = typer.Option(50, "--limit", "-l", help="Maximum products to show"),
    offset: int = typer.Option(0, "--offset", help="Pagination offset"),
    include_merged: bool = typer.Option(False, "--include-merged", help="Show merged products"),
) -> None:
    """List canonical products."""
    with get_session() as session:
        products = ProductRepository(session).list_all(limit, offset, include_merged)

    if not products:
        rprint("[yellow]No products found[/yellow]")
        return

    table = Table(title="Canonical Products")
    table.add_column("ID", style="dim")
    table.add_column("Normalized ID", style="bold")
    table.add_column("Title")
    table.add_column("Released")

    for product in products:
        normalized = product.normalized_product_id
        if product.is_merged:
            normalized += " [yellow](merged)[/yellow]"
        table.add_row(
            str(product.id),
            normalized,
            (product.title or "")[:50],
            product.release_date.isoformat() if product.release_date else "",
        )
    console.print(table)


@products_app.command("show")
def show_product(
    product_ref: str = typer.Argument(..., help="Product ID or normalized product id"),
) -> None:
    """
    Show a product with its listings, performers and tags.

    Examples:
        asp-catalog products show 259LUXU-1234
    """
    with get_session() as session:
        products = ProductRepository(session)
        product = products.get_by_id(product_ref) or products.get_by_normalized_id(product_ref)
        if product is None:
            rprint(f"[red]Error:[/red] Product '{product_ref}' not found")
            raise typer.Exit(1)

        listings = ProductSourceRepository(session).list_for_product(product.id)
        performers = PerformerRepository(session).list_for_product(product.id)
        tags = TagRepository(session).list_for_product(product.id)
        merges = ProductMergeRepository(session).list_for_product(product.id)

    rprint(f"\n[bold]{product.normalized_product_id}[/bold]  [dim]{product.id}[/dim]")
    if product.title:
        rprint(f"  Title: {product.title}")
    if product.release_date:
        rprint(f"  Released: {product.release_date.isoformat()}")
    if product.duration_minutes:
        rprint(f"  Duration: {product.duration_minutes} min")
    for field_name, provenance in sorted(product.field_sources.items()):
        rprint(f"  [dim]{field_name} from {provenance.source} (priority {provenance.priority})[/dim]")

    if listings:
        table = Table(title="Listings")
        table.add_column("ASP", style="bold")
        table.add_column("Source ID")
        table.add_column("Price", justify="right")
        table.add_column("Data")
        for listing in listings:
            price = f"{listing.price} {listing.currency}" if listing.price is not None else ""
            table.add_row(
                listing.asp_name, listing.source_product_id, price, listing.data_source.value
            )
        console.print(table)

    if performers:
        rprint("\n[bold]Performers:[/bold] " + ", ".join(p.name for p in performers))
    if tags:
        rprint("[bold]Tags:[/bold] " + ", ".join(tags))
    for merge in merges:
        rprint(
            f"\n[dim]Merge {merge.merged_product_id} -> {merge.surviving_product_id}: "
            f"{merge.reason}[/dim]"
        )


@products_app.command("merge")
def merge_products(
    survivor: str = typer.Argument(..., help="ID of the product that survives"),
    loser: str = typer.Argument(..., help="ID of the product merged away"),
    reason: str = typer.Option(..., "--reason", "-r", help="Why the products are the same"),
) -> None:
    """
    Merge two canonical products that turned out to be the same.

    Examples:
        asp-catalog products merge <survivor-id> <loser-id> --reason "same title and cast"
    """
    with get_session() as session:
        try:
            merge = ProductMerger(session).merge(survivor, loser, reason)
        except ValueError as e:
            rprint(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)
        session.commit()

    rprint("[green]Products merged[/green]")
    rprint(f"  Listings moved: {merge.moved_sources}")
    rprint(f"  Links moved: {merge.moved_links}")


@products_app.command("index-add")
def add_index_entry(
    product_code: str = typer.Argument(..., help="Product code, e.g. SIRO-5000"),
    names: list[str] = typer.Argument(..., help="Performer names credited on the reference site"),
    source: str = typer.Option("manual", "--source", "-s", help="Reference site name"),
    source_url: Optional[str] = typer.Option(None, "--url", help="Reference page URL"),
) -> None:
    """
    Add performer names to the local reference index.

    The index lookup provider reads these entries during enrichment.
    """
    normalizer = ProductCodeNormalizer()
    try:
        code_key = normalizer.code_key(normalizer.normalize_code(product_code))
    except DataQualityError as e:
        rprint(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    added = 0
    with get_session() as session:
        index = PerformerIndexRepository(session)
        for name in names:
            performer_name = normalizer.normalize_performer_name(name)
            if not performer_name:
                continue
            entry = PerformerIndexEntry(
                product_code_key=code_key,
                performer_name=performer_name,
                source=source,
                source_url=source_url,
            )
            if index.add_entry(entry):
                added += 1
        session.commit()

    rprint(f"[green]Indexed {added} name(s) for {code_key}[/green]")
