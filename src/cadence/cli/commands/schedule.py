"""Schedule management commands."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import click
import typer
from rich.table import Column
from rich.text import Text

from cadence.cli.console import (
    confirm_or_cancel,
    console,
    create_table,
    dim,
    error,
    format_countdown,
    success,
    warning,
)
from cadence.cli.runtime import open_store, resolve_config
from cadence.config import ConfigError
from cadence.scheduling.display import describe
from cadence.scheduling.errors import CadenceError
from cadence.scheduling.manager import ScheduleManager
from cadence.scheduling.store import ScheduleStore
from cadence.scheduling.types import ScheduleRecord

ACTIONS = ("list", "show", "pause", "resume", "cancel", "run-now", "stats")
# Actions that operate on one record and need an id
RECORD_ACTIONS = ("show", "pause", "resume", "cancel", "run-now")


def register(app: typer.Typer) -> None:
    """Register the schedule command."""

    @app.command()
    def schedule(
        action: Annotated[
            str | None,
            typer.Argument(help=f"Action: {', '.join(ACTIONS)}"),
        ] = None,
        record_id: Annotated[
            str | None,
            typer.Argument(help="Schedule ID (a unique prefix is enough)"),
        ] = None,
        group: Annotated[
            int | None,
            typer.Option("--group", "-g", help="Only schedules for this group"),
        ] = None,
        include_inactive: Annotated[
            bool,
            typer.Option("--all", "-a", help="Include paused and finished schedules"),
        ] = False,
        force: Annotated[
            bool,
            typer.Option("--force", "-f", help="Skip confirmation"),
        ] = False,
        config_path: Annotated[
            Path | None,
            typer.Option("--config", "-c", help="Path to configuration file"),
        ] = None,
    ) -> None:
        """Inspect and manage scheduled prompts and payments.

        Examples:
            cadence schedule list --group -100123   # Active schedules in a group
            cadence schedule show 3f2a9c1e          # Full details and last error
            cadence schedule run-now 3f2a9c1e       # Re-arm after fixing a failure
            cadence schedule cancel 3f2a9c1e -f     # Delete without asking
        """
        if action is None:
            ctx = click.get_current_context()
            click.echo(ctx.get_help())
            raise typer.Exit(0)

        if action not in ACTIONS:
            error(f"Unknown action: {action}")
            console.print(f"Valid actions: {', '.join(ACTIONS)}")
            raise typer.Exit(1)

        if action in RECORD_ACTIONS and record_id is None:
            error(f"A schedule ID is required for {action}")
            raise typer.Exit(1)

        try:
            config = resolve_config(config_path)
        except (FileNotFoundError, ConfigError) as e:
            error(str(e))
            raise typer.Exit(1) from None

        async def run() -> None:
            async with open_store(config) as store:
                if action == "list":
                    await _schedule_list(store, group, include_inactive)
                elif action == "stats":
                    await _schedule_stats(store)
                else:
                    assert record_id is not None
                    record = await _resolve_record(store, record_id)
                    await _record_action(store, action, record, force)

        try:
            asyncio.run(run())
        except CadenceError as e:
            error(str(e))
            raise typer.Exit(1) from None


async def _resolve_record(store: ScheduleStore, prefix: str) -> ScheduleRecord:
    record = await store.get_schedule(prefix)
    if record is not None:
        return record

    matches = [r for r in await store.list_schedules() if r.id.startswith(prefix)]
    if not matches:
        error(f"No schedule found with ID {prefix}")
        raise typer.Exit(1)
    if len(matches) > 1:
        error(f"ID prefix {prefix} matches {len(matches)} schedules; use more characters")
        raise typer.Exit(1)
    return matches[0]


async def _schedule_list(
    store: ScheduleStore, group: int | None, include_inactive: bool
) -> None:
    records = await store.list_schedules()
    if group is not None:
        records = [r for r in records if r.group_id == group]
    if not include_inactive:
        records = [r for r in records if r.active]

    if not records:
        warning("No schedules found")
        return

    records.sort(key=lambda r: (r.next_run_at is None, r.next_run_at or r.created_at))
    table = create_table(
        "Schedules",
        Column("ID", style="dim"),
        "Kind",
        "Group",
        "Repeat",
        Column("Next Run", style="cyan"),
        Column("Runs", justify="right"),
        "Status",
    )
    for record in records:
        table.add_row(
            record.id[:8],
            record.kind.value,
            str(record.group_id),
            record.repeat.label,
            format_countdown(record.next_run_at),
            str(record.run_count),
            _status(record),
        )

    console.print(table)
    dim(f"Total: {len(records)} schedule(s)")


async def _schedule_stats(store: ScheduleStore) -> None:
    stats = await store.get_stats()
    table = create_table(
        "Schedule Stats", Column("Metric", style="cyan"), Column("Value", style="green")
    )
    table.add_row("Total", str(stats["total"]))
    table.add_row("Active", str(stats["active"]))
    table.add_row("Failing", str(stats["failing"]))
    for kind, count in sorted(stats["by_kind"].items()):
        table.add_row(f"Kind '{kind}'", str(count))
    console.print(table)


async def _record_action(
    store: ScheduleStore, action: str, record: ScheduleRecord, force: bool
) -> None:
    manager = ScheduleManager(store)

    if action == "show":
        _print_record(record)
    elif action == "pause":
        await manager.pause(record.id)
        success(f"Paused {record.id}")
    elif action == "resume":
        updated = await manager.resume(record.id)
        success(f"Resumed {record.id}, next run {format_countdown(updated.next_run_at)}")
    elif action == "cancel":
        if not confirm_or_cancel(f"Delete schedule {record.id}?", force):
            return
        await manager.cancel(record.id)
        success(f"Cancelled {record.id}")
    elif action == "run-now":
        await manager.run_now(record.id, record.creator_id)
        success(f"Queued {record.id} for the next tick")


def _print_record(record: ScheduleRecord) -> None:
    console.print(f"[bold]{record.id}[/bold]")
    console.print(describe(record), markup=False)

    table = create_table("", Column("Field", style="cyan"), "Value")
    table.add_row("Kind", record.kind.value)
    table.add_row("Group", str(record.group_id))
    table.add_row("Creator", f"{record.creator_display_name} ({record.creator_id})")
    table.add_row("Repeat", record.repeat.label)
    table.add_row("Status", _status(record))
    table.add_row("Created", _format_dt(record.created_at))
    table.add_row("Next run", _format_dt(record.next_run_at))
    table.add_row("Last run", _format_dt(record.last_run_at))
    table.add_row("Runs", str(record.run_count))
    table.add_row(
        "Last result",
        record.last_attempt_status.value if record.last_attempt_status else "-",
    )
    if record.last_error:
        table.add_row("Last error", Text(record.last_error))
    if record.locked_until:
        table.add_row("Locked until", _format_dt(record.locked_until))
    console.print(table)


def _status(record: ScheduleRecord) -> str:
    if record.active:
        return "failing" if record.last_error else "active"
    return "paused" if record.next_run_at is not None else "finished"


def _format_dt(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC") if value else "-"
