"""Console output helpers shared by CLI commands."""

from __future__ import annotations

from datetime import UTC, datetime

import typer
from rich.console import Console
from rich.table import Column, Table

console = Console()


# Messages often embed schedule text, so markup is disabled.
def error(msg: str) -> None:
    console.print(msg, style="red", markup=False)


def warning(msg: str) -> None:
    console.print(msg, style="yellow", markup=False)


def success(msg: str) -> None:
    console.print(msg, style="green", markup=False)


def dim(msg: str) -> None:
    console.print(msg, style="dim", markup=False)


def create_table(title: str, *columns: str | Column) -> Table:
    """Table with a title; plain strings become unstyled columns."""
    return Table(*columns, title=title)


def confirm_or_cancel(prompt: str, force: bool) -> bool:
    """Ask before a destructive action unless ``--force`` was passed."""
    if force or typer.confirm(prompt):
        return True
    dim("Cancelled")
    return False


def format_countdown(when: datetime | None, now: datetime | None = None) -> str:
    """Relative time until ``when`` (``in 2h 5m``, ``now``, ``-``)."""
    if when is None:
        return "-"

    now = now or datetime.now(UTC)
    if when <= now:
        return "now"

    total_minutes = int((when - now).total_seconds()) // 60
    if total_minutes < 1:
        return "in <1m"
    if total_minutes < 60:
        return f"in {total_minutes}m"

    hours, minutes = divmod(total_minutes, 60)
    if hours < 24:
        return f"in {hours}h {minutes}m" if minutes else f"in {hours}h"

    days, hours = divmod(hours, 24)
    return f"in {days}d {hours}h" if hours else f"in {days}d"
