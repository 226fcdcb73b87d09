"""Dispatcher preview command."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated

import typer
from rich.table import Column

from cadence.cli.console import console, create_table, dim, error, warning
from cadence.cli.runtime import open_store, resolve_config
from cadence.config import CadenceConfig, ConfigError


def register(app: typer.Typer) -> None:
    """Register the tick command."""

    @app.command()
    def tick(
        dry_run: Annotated[
            bool,
            typer.Option(
                "--dry-run",
                help="List what the next dispatcher tick would run",
            ),
        ] = False,
        config_path: Annotated[
            Path | None,
            typer.Option("--config", "-c", help="Path to configuration file"),
        ] = None,
    ) -> None:
        """Preview the schedules the dispatcher would run right now.

        Executors live in the host application, so the CLI never runs
        actions itself; use --dry-run to inspect what is due.
        """
        if not dry_run:
            error("The CLI has no executors configured; use --dry-run to preview")
            raise typer.Exit(1)

        try:
            config = resolve_config(config_path)
        except (FileNotFoundError, ConfigError) as e:
            error(str(e))
            raise typer.Exit(1) from None

        asyncio.run(_preview(config))


async def _preview(config: CadenceConfig) -> None:
    now = datetime.now(UTC)
    async with open_store(config) as store:
        due = await store.list_due(now)
        locked = [
            r
            for r in await store.list_schedules()
            if r.active and r.is_locked(now)
        ]

    if not due:
        warning("Nothing is due")
    else:
        table = create_table(
            "Due Schedules",
            Column("ID", style="dim"),
            "Kind",
            "Group",
            Column("Due Since", style="cyan"),
        )
        for record in due:
            assert record.next_run_at is not None
            table.add_row(
                record.id[:8],
                record.kind.value,
                str(record.group_id),
                record.next_run_at.strftime("%Y-%m-%d %H:%M UTC"),
            )
        console.print(table)
        dim(f"{len(due)} schedule(s) would run")

    if locked:
        dim(f"{len(locked)} schedule(s) currently claimed by a running dispatcher")
