import logging
from typing import Optional

import typer

from scanstore.errors import ScanStoreError
from scanstore.settings import StoreSettings
from scanstore.storage.factory import open_store
from scanstore.utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

app = typer.Typer(help="Scan store maintenance commands.")


def _settings(backend: Optional[str], url: Optional[str]) -> StoreSettings:
    settings = StoreSettings()
    if backend:
        settings.backend = backend
    if url:
        settings.relational.url = url
    return settings


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG"),
):
    setup_logging(level=logging.DEBUG if verbose else logging.INFO, log_dir=None)


@app.command()
def migrate(
    backend: Optional[str] = typer.Option(
        None, "--backend", "-b", help="Override SCANSTORE_BACKEND"
    ),
    url: Optional[str] = typer.Option(
        None, "--url", help="SQLAlchemy URL for the relational backend"
    ),
):
    """Create tables, views, constraints and indexes if they are missing."""
    try:
        with open_store(_settings(backend, url), migrate=True) as store:
            typer.echo(f"✓ Schema ready ({store.backend})")
    except ScanStoreError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)


@app.command("refresh-views")
def refresh_views(
    backend: Optional[str] = typer.Option(None, "--backend", "-b"),
    url: Optional[str] = typer.Option(None, "--url"),
):
    """Recompute materialized views (PostgreSQL only)."""
    try:
        with open_store(_settings(backend, url)) as store:
            store.refresh_materialized_views()
            typer.echo("✓ Views refreshed")
    except ScanStoreError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)


@app.command()
def grades(
    backend: Optional[str] = typer.Option(None, "--backend", "-b"),
    url: Optional[str] = typer.Option(None, "--url"),
):
    """Print how many finished scans received each grade."""
    try:
        with open_store(_settings(backend, url)) as store:
            distribution = store.select_grade_distribution()
    except ScanStoreError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    if not distribution:
        typer.echo("No finished scans.")
        return

    for row in distribution:
        typer.echo(f"{row.grade:<3} {row.count}")


if __name__ == "__main__":
    app()
