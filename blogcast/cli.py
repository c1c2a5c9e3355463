"""
Blogcast CLI.

Command-line interface for running and inspecting the realtime gateway.
"""

import sys
import time

import httpx
import typer
from rich.console import Console
from rich.table import Table

from blogcast import __version__
from blogcast.config.settings import get_settings

app = typer.Typer(
    name="blogcast",
    help="Blogcast realtime gateway CLI",
    add_completion=False,
)
console = Console()


# =============================================================================
# Server Commands
# =============================================================================

@app.command()
def serve(
    host: str = typer.Option(None, help="Bind address (defaults to settings)"),
    port: int = typer.Option(None, help="Port (defaults to settings)"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    """Run the realtime gateway with uvicorn."""
    import uvicorn

    settings = get_settings()
    errors = settings.validate_production()
    if errors:
        for error in errors:
            console.print(f"[red]✗ {error}[/red]")
        raise typer.Exit(1)

    uvicorn.run(
        "blogcast.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
    )


@app.command("settings")
def show_settings():
    """Show the effective configuration."""
    settings = get_settings()

    table = Table(title="Gateway Settings")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for name, value in settings.model_dump().items():
        table.add_row(name, str(value))

    console.print(table)

    errors = settings.validate_production()
    for error in errors:
        console.print(f"[yellow]! {error}[/yellow]")


# =============================================================================
# Health Commands
# =============================================================================

@app.command()
def health(
    url: str = typer.Option("http://localhost:8001/ws/health", help="Health endpoint URL"),
):
    """Check a running gateway."""
    table = Table(title="Gateway Health")
    table.add_column("Check", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Detail", style="yellow")

    try:
        start = time.time()
        response = httpx.get(url, timeout=5.0)
        elapsed = (time.time() - start) * 1000
    except httpx.HTTPError as e:
        table.add_row("Gateway", f"✗ {type(e).__name__}", "-")
        console.print(table)
        raise typer.Exit(1)

    if response.status_code != 200:
        table.add_row("Gateway", f"✗ Status {response.status_code}", f"{elapsed:.0f}ms")
        console.print(table)
        raise typer.Exit(1)

    body = response.json()
    table.add_row("Gateway", "✓ Healthy", f"{elapsed:.0f}ms")
    table.add_row("Connections", str(body.get("connections", {}).get("connections", "?")), "")
    table.add_row("Online identities", str(body.get("presence", {}).get("online", "?")), "")
    table.add_row("Active rooms", str(body.get("rooms", {}).get("rooms_total", "?")), "")
    breaker = body.get("circuit_breaker")
    if breaker:
        table.add_row("Persistence circuit", breaker.get("state", "?"), f"{breaker.get('failure_count', 0)} failures")

    console.print(table)


@app.command()
def version():
    """Show version information."""
    table = Table(title="Blogcast Version")
    table.add_column("Component", style="cyan")
    table.add_column("Version", style="green")

    table.add_row("Gateway", __version__)
    table.add_row("Python", sys.version.split()[0])

    console.print(table)


if __name__ == "__main__":
    app()
