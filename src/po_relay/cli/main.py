"""Main entry point for the po-relay CLI.

Provides a Typer-based CLI for storing and fetching spreadsheets through the
persistence layer and for inspecting the local cache.
"""

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel

from po_relay import __version__
from po_relay.cli import cache as cache_commands
from po_relay.config import Settings
from po_relay.logging_config import setup_logging
from po_relay.storage.service import build_service

console = Console()

app = typer.Typer(
    name="po-relay",
    help="Persistence tools for the order-to-purchase-order converter",
    rich_markup_mode="rich",
)

app.add_typer(cache_commands.app, name="cache", help="Local cache operations")


def version_callback(value: bool) -> None:
    """Callback for --version flag."""
    if value:
        console.print(f"po-relay version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """po-relay: resilient storage for order and supplier spreadsheets.

    ## Commands

    * [bold cyan]put[/bold cyan] - Upload a file under a new stored key
    * [bold cyan]get[/bold cyan] - Download the file a reference stands for
    * [bold cyan]resolve[/bold cyan] - Show which stored key a reference maps to
    * [bold cyan]cache[/bold cyan] - Local cache operations (stats, purge, clear)
    """
    setup_logging(Settings().PO_LOG_DIR)


@app.command()
def resolve(
    reference: str = typer.Argument(..., help="Cache id, stored key or encoded file name"),
    bucket: str = typer.Option("uploads", "--bucket", "-b", help="Logical bucket name"),
    file_type: Optional[str] = typer.Option(None, "--type", "-t", help="Type hint: order or supplier"),
) -> None:
    """Resolve a reference to the stored key it points at."""
    config = Settings()

    async def _run():
        service = await build_service(config)
        try:
            return await service.resolver.resolve(reference, bucket, file_type)
        finally:
            await service.close()

    try:
        result = asyncio.run(_run())
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if not result.ok:
        console.print(f"[red]{result.reason}[/red]")
        raise typer.Exit(1)

    console.print(
        Panel(
            f"[cyan]Reference:[/cyan] {reference}\n"
            f"[cyan]Stored key:[/cyan] [green]{result.actual_key}[/green]\n"
            f"[cyan]Resolved by:[/cyan] {result.source}",
            title="Resolved",
        )
    )


@app.command()
def put(
    file: Path = typer.Argument(..., help="File to upload", exists=True, dir_okay=False),
    bucket: str = typer.Option("uploads", "--bucket", "-b", help="Logical bucket name"),
    file_type: str = typer.Option("order", "--type", "-t", help="File type: order or supplier"),
    purpose: Optional[str] = typer.Option(None, "--purpose", "-p", help="Cache purpose tag"),
) -> None:
    """Upload a file under a new canonical key and cache a local copy."""
    config = Settings()
    purpose_tag = purpose or f"{file_type}-upload"
    data = file.read_bytes()

    async def _run():
        service = await build_service(config)
        try:
            return await service.store_upload(data, file.name, purpose_tag, file_type=file_type, bucket=bucket)
        finally:
            await service.close()

    try:
        outcome = asyncio.run(_run())
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if not outcome.ok:
        console.print(f"[red]Upload failed: {outcome.reason}[/red]")
        raise typer.Exit(1)

    console.print(
        Panel(
            f"[cyan]File:[/cyan] {file.name} ({len(data):,} bytes)\n"
            f"[cyan]Stored key:[/cyan] [green]{outcome.key}[/green]\n"
            f"[cyan]Cache id:[/cyan] {outcome.cache_id}\n"
            f"[cyan]Cached locally:[/cyan] {'yes' if outcome.cached else 'no'}\n"
            f"[cyan]Mappings saved:[/cyan] {outcome.mappings_saved}",
            title="Uploaded",
        )
    )


@app.command()
def get(
    reference: str = typer.Argument(..., help="Cache id, stored key or encoded file name"),
    dest: Path = typer.Argument(..., help="Where to write the file"),
    bucket: str = typer.Option("uploads", "--bucket", "-b", help="Logical bucket name"),
    file_type: Optional[str] = typer.Option(None, "--type", "-t", help="Type hint: order or supplier"),
    purpose: Optional[str] = typer.Option(None, "--purpose", "-p", help="Cache purpose tag"),
) -> None:
    """Download the file a reference stands for."""
    config = Settings()
    purpose_tag = purpose or f"{file_type or 'order'}-upload"

    async def _run():
        service = await build_service(config)
        try:
            return await service.fetch(reference, purpose_tag, bucket=bucket, expected_type=file_type)
        finally:
            await service.close()

    try:
        outcome = asyncio.run(_run())
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if not outcome.ok:
        console.print(f"[red]Download failed: {outcome.reason}[/red]")
        raise typer.Exit(1)

    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(outcome.content)
    console.print(
        f"[green]Saved {len(outcome.content):,} bytes to {dest}[/green] "
        f"[dim](key {outcome.key}, via {outcome.source})[/dim]"
    )


if __name__ == "__main__":
    app()
