"""ASP Catalog CLI using Typer."""

import logging
import os
from pathlib import Path

import typer
from dotenv import load_dotenv

from asp_catalog import __version__
from asp_catalog.cli.ingest import ingest_app
from asp_catalog.cli.products import products_app

# Load .env file from current directory or project root
_env_paths = [
    Path.cwd() / ".env",
    Path(__file__).parent.parent.parent / ".env",
]
for _env_path in _env_paths:
    if _env_path.exists():
        load_dotenv(_env_path)
        break

app = typer.Typer(
    name="asp-catalog",
    help="ASP Catalog - ingestion and identity resolution for affiliate product listings",
    add_completion=False,
)
app.add_typer(ingest_app, name="ingest")
app.add_typer(products_app, name="products")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def init_db() -> None:
    """Initialize the database (create tables)."""
    from asp_catalog.db.engine import init_db as db_init

    typer.echo("Initializing database...")
    db_init()
    typer.echo("Database initialized successfully!")


@app.command()
def migrate() -> None:
    """Apply Alembic migrations up to the latest revision."""
    from alembic.util import CommandError

    from asp_catalog.db.engine import run_migrations

    typer.echo("Running migrations...")
    try:
        run_migrations()
    except CommandError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)
    typer.echo("Database is up to date.")


@app.command()
def version() -> None:
    """Show the ASP Catalog version."""
    typer.echo(f"ASP Catalog v{__version__}")


@app.command()
def check_config() -> None:
    """Check the current configuration status."""
    from asp_catalog.db.engine import get_database_url
    from asp_catalog.ingestion.errors import FatalIngestionError
    from asp_catalog.ingestion.registry import get_default_registry

    typer.echo("ASP Catalog Configuration")
    typer.echo("=" * 40)

    # Check .env file
    env_found = False
    for _env_path in _env_paths:
        if _env_path.exists():
            typer.echo(f"  .env file: {_env_path}")
            env_found = True
            break
    if not env_found:
        typer.echo("  .env file: Not found")

    typer.echo(f"  Database: {get_database_url()}")
    typer.echo(f"  Object store: {os.environ.get('OBJECT_STORE_PATH', '(from sources config)')}")

    try:
        registry = get_default_registry()
    except FatalIngestionError as e:
        typer.echo(f"  Sources config: ERROR - {e}", err=True)
        raise typer.Exit(2)

    typer.echo(f"  Sources config: {registry.config_path or 'Not found'}")
    typer.echo(
        f"  Sources: {len(registry.list_enabled_sources())} enabled "
        f"of {len(registry.list_sources())}"
    )
    lookups = [p.name for p in registry.performer_resolution.lookups]
    typer.echo(f"  Performer lookups: {', '.join(lookups) if lookups else 'none'}")


if __name__ == "__main__":
    app()
