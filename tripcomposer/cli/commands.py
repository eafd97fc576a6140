"""TripComposer CLI commands for marketplace maintenance."""

from __future__ import annotations

import asyncio
import datetime as dt
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

# Create Typer app
app = typer.Typer(help="TripComposer marketplace maintenance CLI", no_args_is_help=True)
console = Console()

# Workload subcommand
workload_app = typer.Typer(help="Advisor workload maintenance", no_args_is_help=True)
app.add_typer(workload_app, name="workload")

# Trust subcommand
trust_app = typer.Typer(help="Trust scores and response metrics", no_args_is_help=True)
app.add_typer(trust_app, name="trust")


def _async_run(coro):
    """Run an async coroutine."""
    return asyncio.run(coro)


async def _with_db(coro_factory):
    """Create tables, run the coroutine, then release the pool."""
    from tripcomposer.database import close_db, init_db

    await init_db()
    try:
        return await coro_factory()
    finally:
        await close_db()


@app.command()
def status() -> None:
    """Show configuration and scheduled maintenance jobs."""
    from tripcomposer.config import get_settings
    from tripcomposer.orchestrator import Orchestrator

    settings = get_settings()
    console.print("\n[bold cyan]TripComposer Status[/bold cyan]\n")
    console.print(f"Environment: [green]{settings.tripcomposer_env}[/green]")
    console.print(f"API: [green]{settings.api_host}:{settings.api_port}[/green]")
    console.print(f"Database: [green]{settings.database_url}[/green]")
    console.print(f"Event bus: [green]{settings.event_bus_backend}[/green]")
    console.print(f"Log Level: [green]{settings.tripcomposer_log_level}[/green]")

    async def _status():
        orch = Orchestrator()
        await orch.startup()
        try:
            return orch.scheduler.list_tasks(), orch.scheduler.next_run_times()
        finally:
            await orch.shutdown()

    tasks, next_runs = _async_run(_status())
    table = Table(title="Scheduled Jobs")
    table.add_column("Name", style="green")
    table.add_column("Type", style="cyan")
    table.add_column("Schedule", style="yellow")
    table.add_column("Next run (UTC)", style="white")
    for task in tasks:
        next_run = next_runs.get(task.name)
        table.add_row(task.name, task.task_type, task.schedule_info, next_run.isoformat() if next_run else "-")
    console.print(table)
    console.print()


@app.command()
def version() -> None:
    """Show TripComposer version."""
    from tripcomposer import __version__

    console.print(f"[bold cyan]TripComposer[/bold cyan] version [green]{__version__}[/green]")


@app.command()
def token(
    user_id: str = typer.Argument(..., help="User ID to mint a token for"),
    minutes: int = typer.Option(60, "--minutes", "-m", help="Token lifetime in minutes"),
) -> None:
    """Mint an access token for an existing user (development only)."""
    from tripcomposer.config import get_settings
    from tripcomposer.errors import NotFoundError
    from tripcomposer.modules.identity.service import IdentityService
    from tripcomposer.security.tokens import create_access_token

    if get_settings().is_production:
        console.print("[red]Refusing to mint tokens in production.[/red]")
        raise typer.Exit(code=1)

    async def _token():
        identity = await IdentityService().build_identity_context(user_id)
        return create_access_token(identity, dt.timedelta(minutes=minutes))

    try:
        console.print(_async_run(_with_db(_token)))
    except NotFoundError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(code=1) from exc


@app.command("peak-season")
def peak_season(
    date: Optional[str] = typer.Option(None, "--date", "-d", help="Date to check (YYYY-MM-DD), default today"),
) -> None:
    """Show which peak travel periods are active."""
    from tripcomposer.modules.matching.models import MatchingConfig
    from tripcomposer.modules.matching.peak_season import current_peak_periods

    config = MatchingConfig.from_settings()
    now = None
    if date:
        try:
            now = dt.datetime.combine(dt.date.fromisoformat(date), dt.time(12), tzinfo=dt.UTC)
        except ValueError as exc:
            console.print(f"[red]Invalid date: {date}[/red]")
            raise typer.Exit(code=1) from exc

    if not config.peak_season.enabled:
        console.print("[yellow]Peak season handling is disabled (PEAK_SEASON_ENABLED=false).[/yellow]")
    periods = current_peak_periods(config.peak_season, now)
    if periods:
        for name in periods:
            console.print(f"  [green]●[/green] {name}")
    else:
        console.print("No peak periods active.")


# ─────────────────────────────────────────────────────────────────────────────
# Workload Commands
# ─────────────────────────────────────────────────────────────────────────────

@workload_app.command("stats")
def workload_stats() -> None:
    """Show platform-wide advisor workload."""
    from tripcomposer.modules.workload.service import WorkloadService

    stats = _async_run(_with_db(lambda: WorkloadService().get_workload_stats()))

    table = Table(title="Advisor Workload")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")
    table.add_row("Advisors", str(stats.total_advisors))
    table.add_row("Available now", str(stats.available_now))
    table.add_row("On vacation", str(stats.on_vacation))
    table.add_row("At capacity", str(stats.at_capacity))
    table.add_row("Auto-paused", str(stats.auto_paused))
    table.add_row("Avg utilization", f"{stats.avg_capacity_utilization}%")
    console.print(table)


@workload_app.command("reset")
def workload_reset(
    weekly: bool = typer.Option(False, "--weekly", "-w", help="Also reset weekly match counters"),
) -> None:
    """Reset daily (and optionally weekly) match counters."""
    from tripcomposer.modules.workload.service import WorkloadService

    async def _reset():
        service = WorkloadService()
        daily = await service.reset_daily_counters()
        weekly_count = await service.reset_weekly_counters() if weekly else 0
        return daily, weekly_count

    daily, weekly_count = _async_run(_with_db(_reset))
    console.print(f"[green]✓[/green] Daily counters reset for {daily} advisors")
    if weekly:
        console.print(f"[green]✓[/green] Weekly counters reset for {weekly_count} advisors")


@workload_app.command("end-vacations")
def workload_end_vacations() -> None:
    """End vacations whose end date has passed."""
    from tripcomposer.modules.workload.service import WorkloadService

    ended = _async_run(_with_db(lambda: WorkloadService().end_expired_vacations()))
    console.print(f"[green]✓[/green] Ended {ended} expired vacations")


# ─────────────────────────────────────────────────────────────────────────────
# Trust Commands
# ─────────────────────────────────────────────────────────────────────────────

@trust_app.command("decay")
def trust_decay() -> None:
    """Apply inactivity decay to every agent score."""
    from tripcomposer.modules.trust import ScoreCalculatorService

    updated = _async_run(_with_db(lambda: ScoreCalculatorService().apply_decay_to_all()))
    console.print(f"[green]✓[/green] Decay applied to {updated} agent scores")


@trust_app.command("refresh-response-times")
def trust_refresh_response_times() -> None:
    """Recalculate response-time metrics for every agent."""
    from tripcomposer.modules.trust import ResponseTimeService

    updated = _async_run(_with_db(lambda: ResponseTimeService().recalculate_all()))
    console.print(f"[green]✓[/green] Response metrics refreshed for {updated} agents")


@trust_app.command("score")
def trust_score(agent_id: str = typer.Argument(..., help="Agent ID")) -> None:
    """Show an agent's internal score and recent history."""
    from tripcomposer.errors import NotFoundError
    from tripcomposer.modules.trust import ScoreCalculatorService

    async def _score():
        service = ScoreCalculatorService()
        return await service.get_score(agent_id), await service.get_history(agent_id, limit=10)

    try:
        score, history = _async_run(_with_db(_score))
    except NotFoundError as exc:
        console.print(f"[yellow]{exc.message}[/yellow]")
        raise typer.Exit(code=1) from exc

    console.print(f"\n[bold]{agent_id}[/bold]  tier=[cyan]{score.reliability_tier}[/cyan]  visibility={score.visibility}")
    console.print(f"  base={score.base_score:.2f}  internal={score.internal_score:.2f}  public={score.public_score}")
    if score.is_under_investigation:
        console.print("  [red]under investigation[/red]")

    table = Table(title="Recent history")
    table.add_column("When", style="dim")
    table.add_column("Score", justify="right")
    table.add_column("Tier", style="cyan")
    table.add_column("Trigger", style="yellow")
    for row in history:
        table.add_row(row.calculated_at.isoformat(), f"{row.internal_score:.2f}", row.reliability_tier, row.triggered_by)
    console.print(table)


if __name__ == "__main__":
    app()
