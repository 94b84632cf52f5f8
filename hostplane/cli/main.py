"""hostplane CLI — operator commands for one host.

`hostplane serve` runs the HTTP API with the collector timer.
`hostplane status`, `sites`, `alerts` and `collect` work against the
same database directly for quick inspection.
"""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from hostplane import __version__
from hostplane.config import settings
from hostplane.context import HostplaneContext
from hostplane.logs import configure_logging
from hostplane.migrations.runner import get_schema_version
from hostplane.monitoring.models import AlertFilter
from hostplane.types import AlertStatus

app = typer.Typer(
    name="hostplane",
    help="hostplane -- single-host control plane for tenant sites and services.",
    no_args_is_help=True,
)
console = Console()


def run_async(coro: Coroutine) -> Any:
    """Run an async coroutine from sync CLI code."""
    return asyncio.run(coro)


def _context() -> HostplaneContext:
    configure_logging(settings.log_level)
    return HostplaneContext(settings)


def _pct(value: float) -> str:
    color = "red" if value >= 90 else "yellow" if value >= 70 else "green"
    return f"[{color}]{value:.1f}%[/{color}]"


@app.command()
def init():
    """Create the workspace and apply database migrations."""
    settings.workspace_dir.mkdir(parents=True, exist_ok=True)

    async def _init() -> int:
        async with HostplaneContext(settings) as ctx:
            return await get_schema_version(ctx.store.db)

    schema = run_async(_init())
    console.print(Panel(
        f"[green]hostplane workspace initialized at {settings.workspace_dir}[/green]\n\n"
        f"Database:    {settings.db_path}\n"
        f"Schema:      v{schema}\n"
        f"Sites dir:   {settings.sites_dir}\n"
        f"Supervisor:  {settings.supervisor}\n\n"
        "Start the API:\n"
        "  [bold]hostplane serve[/bold]",
        title="hostplane",
        border_style="cyan",
    ))


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to run on"),
    host: Optional[str] = typer.Option(None, "--host", help="Host to bind to"),
    no_collector: bool = typer.Option(False, "--no-collector", help="Do not run the stats timer"),
):
    """Run the HTTP API."""
    from hostplane.api.app import create_app

    ctx = _context()
    host = host or ctx.settings.api_host
    port = port or ctx.settings.api_port
    console.print(f"[bold cyan]hostplane[/bold cyan] API starting at http://{host}:{port}/api")
    console.print("[dim]Press Ctrl+C to stop.[/dim]")

    import uvicorn
    uvicorn.run(create_app(ctx, run_collector=not no_collector), host=host, port=port, log_level="warning")


@app.command()
def status():
    """Show host metrics and totals."""
    ctx = _context()

    async def _status():
        async with ctx:
            return await ctx.collector.get_server_stats(), await ctx.alerts.count_active()

    sample, active_alerts = run_async(_status())
    load = ", ".join(f"{v:.2f}" for v in sample.cpu.load_avg)
    console.print(Panel(
        f"[bold]hostplane v{__version__}[/bold]\n\n"
        f"CPU:       {_pct(sample.cpu.percent)} ({sample.cpu.cores} cores, load {load})\n"
        f"Memory:    {_pct(sample.memory.percent)}\n"
        f"Disk:      {_pct(sample.disk.percent)}\n"
        f"Uptime:    {sample.uptime_s // 3600}h {sample.uptime_s % 3600 // 60}m\n"
        f"Sites:     {sample.totals.sites}\n"
        f"Services:  {sample.totals.services} "
        f"({sample.totals.services_running} running, {sample.totals.services_stopped} stopped)\n"
        f"Alerts:    {active_alerts} active",
        title="Host Status",
        border_style="cyan",
    ))


@app.command()
def sites(
    owner: Optional[str] = typer.Option(None, "--owner", help="Filter by owner"),
):
    """List sites."""
    ctx = _context()

    async def _sites():
        async with ctx:
            return await ctx.sites.list_sites(owner_id=owner)

    rows = run_async(_sites())
    if not rows:
        console.print("[dim]No sites yet.[/dim]")
        return

    table = Table(title="Sites")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Name", style="cyan")
    table.add_column("Status")
    table.add_column("Ports", style="white")
    table.add_column("Domain", style="blue")
    for site in rows:
        table.add_row(
            site.id,
            site.name,
            site.status.value,
            f"{site.port_range.start}-{site.port_range.end - 1}",
            site.primary_domain() or "",
        )
    console.print(table)


@app.command()
def alerts(
    all_: bool = typer.Option(False, "--all", help="Include resolved alerts"),
    limit: int = typer.Option(20, "--limit", "-n", help="Max alerts"),
):
    """List open alerts."""
    ctx = _context()
    flt = AlertFilter(limit=limit)

    async def _alerts():
        async with ctx:
            if not all_:
                return await ctx.alerts.list_alerts(flt)
            found = []
            for status_ in AlertStatus:
                found += await ctx.alerts.list_alerts(flt.model_copy(update={"status": status_}))
            return sorted(found, key=lambda a: a.created_at, reverse=True)[:limit]

    rows = run_async(_alerts())
    if not rows:
        console.print("[dim]No alerts.[/dim]")
        return

    table = Table(title="Alerts")
    table.add_column("When", style="dim", no_wrap=True, max_width=19)
    table.add_column("Severity")
    table.add_column("Type", style="cyan")
    table.add_column("Status")
    table.add_column("Seen", justify="right")
    table.add_column("Message", style="white")
    for alert in rows:
        sev = "[red]critical[/red]" if alert.severity.value == "critical" else "[yellow]warning[/yellow]"
        table.add_row(
            alert.created_at.strftime("%Y-%m-%d %H:%M"),
            sev,
            alert.type,
            alert.status.value,
            str(alert.occurrences),
            alert.message[:100],
        )
    console.print(table)


@app.command()
def collect():
    """Run one collection cycle now."""
    ctx = _context()

    async def _collect():
        async with ctx:
            return await ctx.collector.collect_once()

    sample = run_async(_collect())
    if sample is None:
        console.print("[red]Collection failed; see the log output above.[/red]")
        raise typer.Exit(1)
    console.print(
        f"[green]Sample stored[/green] cpu {_pct(sample.cpu.percent)} "
        f"memory {_pct(sample.memory.percent)} disk {_pct(sample.disk.percent)}"
    )


@app.command()
def version():
    """Show the installed version."""
    console.print(f"hostplane v{__version__}")


if __name__ == "__main__":
    app()
