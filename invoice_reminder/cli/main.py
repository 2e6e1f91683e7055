"""CLI entry point.

Provides the main CLI application with commands for:
- run: Serve the scheduler until interrupted
- init-db: Create tables on a development database
- schedules: Manage per-user invoice check schedules
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from invoice_reminder.container import create_app
from invoice_reminder.exceptions import InvalidScheduleError
from invoice_reminder.logging_config import configure_logging
from invoice_reminder.scheduler.cron import next_fire_times
from invoice_reminder.services import JobScheduleAppService, JobScheduleViewModel, Result
from invoice_reminder.settings import get_settings

app = typer.Typer(
    name="invoice-reminder",
    help="Per-user cron scheduling for invoice payment reminders",
    add_completion=False,
    no_args_is_help=True,
)
schedules_app = typer.Typer(help="Manage invoice check schedules", no_args_is_help=True)
app.add_typer(schedules_app, name="schedules")

console = Console()

UserOption = Annotated[str, typer.Option("--user", "-u", help="Owner user id (UUID)")]
CronOption = Annotated[
    str,
    typer.Option("--cron", "-c", help="Quartz cron, e.g. '0 0/5 * * * ?'"),
]
ScheduleIdArgument = Annotated[str, typer.Argument(help="Schedule id")]


@app.callback()
def main(
    log_level: Annotated[
        Optional[str],  # noqa: UP007
        typer.Option("--log-level", help="Override LOG_LEVEL (DEBUG, INFO, WARNING, ERROR)"),
    ] = None,
) -> None:
    configure_logging(log_level.upper() if log_level else None)


@app.command()
def run() -> None:
    """Run the scheduler until interrupted.

    Loads every persisted schedule into the scheduler and keeps it in sync
    with the database.
    """
    settings = get_settings()
    console.print(
        Panel(
            f"[bold green]Starting Invoice Reminder scheduler[/bold green]\n"
            f"Role: {settings.reminder_role}\n"
            f"Timezone: {settings.scheduler_timezone}\n"
            f"Reconcile every: {settings.scheduler_reconcile_interval_minutes} min",
            title="⏰ Invoice Reminder",
            border_style="green",
        )
    )
    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        console.print("[yellow]Scheduler stopped[/yellow]")


async def _serve() -> None:
    reminder = create_app()
    report = await reminder.start()
    if report.suppressed:
        console.print("[yellow]Bootstrap suppressed for this process role[/yellow]")
    else:
        console.print(
            f"[green]Loaded {len(report.registered)} schedule(s)[/green]"
            + (f", [red]skipped {len(report.skipped)}[/red]" if report.skipped else "")
        )
    try:
        await asyncio.Event().wait()
    finally:
        await reminder.stop()


@app.command("init-db")
def init_db() -> None:
    """Create tables directly from the models (SQLite development databases).

    PostgreSQL deployments run `alembic upgrade head` instead.
    """
    from invoice_reminder.storage import close_db, create_schema

    async def _create() -> None:
        try:
            await create_schema()
        finally:
            await close_db()

    asyncio.run(_create())
    console.print("[green]✅ Schema created[/green]")


def _call_service(
    operation: Callable[[JobScheduleAppService], Awaitable[Result[Any]]],
) -> Result[Any]:
    async def _run() -> Result[Any]:
        reminder = create_app()
        try:
            return await operation(reminder.service)
        finally:
            await reminder.stop()

    result = asyncio.run(_run())
    if result.is_failure:
        console.print(f"[red]❌ {result.error_message}[/red]")
        raise typer.Exit(code=1)
    return result


def _print_schedules(title: str, schedules: list[JobScheduleViewModel]) -> None:
    table = Table(title=title, show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("User")
    table.add_column("Cron")
    table.add_column("Enabled", justify="center")
    table.add_column("Updated")

    for schedule in schedules:
        table.add_row(
            schedule.id or "",
            schedule.user_id,
            schedule.cron_expression,
            "[green]yes[/green]" if schedule.enabled else "[dim]paused[/dim]",
            schedule.updated_at.strftime("%Y-%m-%d %H:%M") if schedule.updated_at else "",
        )

    console.print(table)


@schedules_app.command("list")
def list_schedules(user: UserOption) -> None:
    """List a user's schedules."""
    result = _call_service(lambda service: service.get_by_user_id(user))
    _print_schedules(f"Schedules for {user}", result.value)


@schedules_app.command("add")
def add_schedule(user: UserOption, cron: CronOption) -> None:
    """Add a schedule for a user."""
    result = _call_service(lambda service: service.add_schedule(user, cron))
    console.print(f"[green]✅ Added schedule {result.value.id}[/green]")
    _print_schedules("Schedule", [result.value])


@schedules_app.command("update")
def update_schedule(
    schedule_id: ScheduleIdArgument,
    cron: CronOption,
    user: UserOption,
) -> None:
    """Change a schedule's cron expression."""
    schedule = JobScheduleViewModel(id=schedule_id, user_id=user, cron_expression=cron)
    result = _call_service(lambda service: service.update_schedule(schedule))
    console.print(f"[green]✅ Updated schedule {schedule_id}[/green]")
    _print_schedules("Schedule", [result.value])


@schedules_app.command("remove")
def remove_schedule(schedule_id: ScheduleIdArgument) -> None:
    """Delete a schedule."""
    _call_service(lambda service: service.remove_schedule(schedule_id))
    console.print(f"[green]✅ Removed schedule {schedule_id}[/green]")


@schedules_app.command("pause")
def pause_schedule(schedule_id: ScheduleIdArgument) -> None:
    """Stop a schedule from firing without deleting it."""
    _call_service(lambda service: service.pause_schedule(schedule_id))
    console.print(f"[yellow]⏸ Paused schedule {schedule_id}[/yellow]")


@schedules_app.command("resume")
def resume_schedule(schedule_id: ScheduleIdArgument) -> None:
    """Re-arm a paused schedule."""
    _call_service(lambda service: service.resume_schedule(schedule_id))
    console.print(f"[green]▶ Resumed schedule {schedule_id}[/green]")


@schedules_app.command("preview")
def preview(
    cron: Annotated[str, typer.Argument(help="Quartz cron expression")],
    count: Annotated[int, typer.Option("--count", "-n", help="Fire times to show")] = 5,
) -> None:
    """Show the next fire times of a cron expression."""
    settings = get_settings()
    try:
        times = next_fire_times(cron, count=count, timezone=settings.scheduler_timezone)
    except InvalidScheduleError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise typer.Exit(code=1) from None

    table = Table(title=f"Next fire times ({settings.scheduler_timezone})", show_header=True)
    table.add_column("#", justify="right")
    table.add_column("Time", style="cyan")
    for index, fire_time in enumerate(times, start=1):
        table.add_row(str(index), fire_time.isoformat())
    console.print(table)
