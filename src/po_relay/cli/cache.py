"""Local cache commands for po-relay.

Provides CLI commands for inspecting, purging and clearing the local cache.
"""

import typer
from rich.console import Console
from rich.table import Table

from po_relay.config import Settings
from po_relay.storage.service import build_cache

console = Console()
app = typer.Typer(help="Local cache operations")


def _format_size_mb(size: int) -> str:
    return f"{size / 1024 / 1024:.2f} MB"


@app.command("stats")
def show_stats() -> None:
    """Show cache usage and the cached entries, oldest first."""
    config = Settings()
    cache = build_cache(config)
    try:
        stats = cache.stats()
    finally:
        cache.close()

    info_table = Table(title="Cache Usage")
    info_table.add_column("Property", style="cyan")
    info_table.add_column("Value", style="green")

    info_table.add_row("Database Path", str(config.PO_CACHE_DB_PATH))
    info_table.add_row("Entries", f"{stats.entry_count:,}")
    info_table.add_row("Used", f"{stats.total_bytes:,} bytes ({_format_size_mb(stats.total_bytes)})")
    info_table.add_row("Quota", f"{stats.quota:,} bytes ({_format_size_mb(stats.quota)})")
    info_table.add_row("Usage", f"{stats.usage_percent:.2f}%")
    console.print(info_table)

    if not stats.entries:
        console.print("\n[dim]Cache is empty.[/dim]")
        return

    entries_table = Table(title=f"Cached Files ({stats.entry_count} total)")
    entries_table.add_column("Name", style="green")
    entries_table.add_column("Purpose", style="blue")
    entries_table.add_column("Size", style="magenta", justify="right")
    entries_table.add_column("Cached At", style="cyan", no_wrap=True)
    entries_table.add_column("ID", style="dim", no_wrap=True)

    for entry in stats.entries:
        entries_table.add_row(
            entry.display_name or "[dim]-[/dim]",
            entry.purpose_tag,
            _format_size_mb(entry.size),
            entry.cached_at.strftime("%Y-%m-%d %H:%M:%S"),
            entry.id,
        )

    console.print()
    console.print(entries_table)


@app.command("purge")
def purge_expired() -> None:
    """Delete entries older than the cache TTL."""
    config = Settings()
    cache = build_cache(config)
    try:
        removed = cache.purge_expired()
    finally:
        cache.close()

    console.print(f"[green]Purged {removed} expired entries.[/green]")


@app.command("clear")
def clear_cache(
    confirm: bool = typer.Option(
        False,
        "--confirm",
        help="Confirm deleting every entry (required)",
    ),
) -> None:
    """Delete every cached entry."""
    if not confirm:
        console.print("[yellow]This deletes every cached file.[/yellow]")
        console.print("Use --confirm to proceed")
        raise typer.Exit(1)

    config = Settings()
    cache = build_cache(config)
    try:
        removed = cache.clear()
    finally:
        cache.close()

    console.print(f"[green]Removed {removed} cached entries.[/green]")
