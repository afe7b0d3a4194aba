"""Media store CLI - Main entry point."""

from __future__ import annotations

import asyncio
import logging

import typer
from rich.console import Console
from rich.table import Table

from .config import settings

app = typer.Typer(
    name="mediastore",
    help="Content-addressed media store - serve the API and run maintenance",
    no_args_is_help=True,
)
console = Console()


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("serve")
def serve(
    port: int = typer.Option(6223, "--port", "-p", help="Port to run on"),
    host: str = typer.Option("127.0.0.1", "--host", help="Host to bind to"),
):
    """Launch the media store API."""
    try:
        import uvicorn
    except ImportError:
        console.print("[red]Missing dependencies. Install with: pip install -e '.[server]'[/red]")
        raise typer.Exit(1)

    console.print(f"[bold cyan]Starting media store at http://{host}:{port}[/bold cyan]")
    uvicorn.run("mediastore.app:app", host=host, port=port)


@app.command("sweep")
def sweep(
    stray: bool = typer.Option(
        settings.reconcile_stray_objects,
        "--stray/--no-stray",
        help="Also delete stored objects that have no metadata row",
    ),
):
    """Run one orphan reconciliation pass now."""
    from .database import async_session_factory, engine
    from .storage.objectstore import build_object_store
    from .storage.reconciler import OrphanReconciler

    async def _run():
        store = build_object_store(settings)
        reconciler = OrphanReconciler(
            async_session_factory,
            store,
            stray_objects=stray,
            stray_grace_seconds=settings.reconcile_stray_grace_seconds,
            key_prefix=settings.key_prefix,
        )
        try:
            return await reconciler.run_once()
        finally:
            await store.aclose()
            await engine.dispose()

    stats = asyncio.run(_run())
    if stats is None:
        console.print("[yellow]A reconciliation pass is already running.[/yellow]")
        raise typer.Exit(1)

    table = Table(title="Reconciliation")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", style="green", justify="right")
    table.add_row("Orphans scanned", str(stats.scanned))
    table.add_row("Orphans deleted", str(stats.deleted))
    table.add_row("Skipped (re-referenced)", str(stats.skipped))
    table.add_row("Stray objects deleted", str(stats.stray_deleted))
    table.add_row("Failed", f"[red]{stats.failed}[/red]" if stats.failed else "0")
    console.print(table)
    for err in stats.errors:
        console.print(f"  [red]•[/red] {err}")
    if stats.failed:
        raise typer.Exit(1)


@app.command("show")
def show(
    family: str = typer.Argument(..., help="Storage family (image, document)"),
    blob_id: str = typer.Argument(..., help="Blob id (digest, optional extension)"),
):
    """Print a blob record and its owner references."""
    from .database import async_session_factory, engine
    from .errors import MediaStoreError
    from .services import reference_svc
    from .storage.coordinator import get_blob

    async def _load():
        try:
            async with async_session_factory() as db:
                record = await get_blob(db, family, blob_id)
                refs = await reference_svc.list_references(db, record.id)
                return record, refs
        finally:
            await engine.dispose()

    try:
        record, refs = asyncio.run(_load())
    except MediaStoreError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Blob {record.id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for name in ("family", "display_name", "storage_key", "content_type", "size_bytes", "source", "created_at"):
        table.add_row(name, str(getattr(record, name)))
    table.add_row("references", ", ".join(f"{r.owner_type}:{r.owner_id}" for r in refs) or "[yellow]none (orphan)[/yellow]")
    console.print(table)


if __name__ == "__main__":
    app()
