"""Configuration inspection commands."""

import tomllib
from pathlib import Path
from typing import Annotated

import click
import typer
from pydantic import ValidationError
from rich.syntax import Syntax
from rich.table import Column, Table

from cadence.cli.console import console, create_table, error, success
from cadence.config import CadenceConfig, load_config
from cadence.config.paths import get_all_paths, get_config_path

ACTIONS = ("show", "validate", "paths")


def register(app: typer.Typer) -> None:
    """Register the config command."""

    @app.command()
    def config(
        action: Annotated[
            str | None,
            typer.Argument(help="Action: show, validate, paths"),
        ] = None,
        path: Annotated[
            Path | None,
            typer.Option(
                "--path",
                "-p",
                help="Path to config file (default: $CADENCE_HOME/config.toml)",
            ),
        ] = None,
    ) -> None:
        """Inspect and validate configuration."""
        if action is None:
            click.echo(click.get_current_context().get_help())
            raise typer.Exit(0)

        if action not in ACTIONS:
            error(f"Unknown action: {action}")
            console.print(f"Valid actions: {', '.join(ACTIONS)}")
            raise typer.Exit(1)

        if action == "paths":
            _print_paths()
            return

        config_path = path.expanduser() if path else get_config_path()
        if not config_path.is_file():
            error(f"Config file not found: {config_path}")
            raise typer.Exit(1)

        if action == "show":
            console.print(f"[bold]Config file: {config_path}[/bold]\n")
            console.print(
                Syntax(config_path.read_text(), "toml", line_numbers=True)
            )
        else:
            _validate(config_path)


def _validate(config_path: Path) -> None:
    try:
        loaded = load_config(config_path)
    except tomllib.TOMLDecodeError as e:
        error(f"Invalid TOML: {e}")
        raise typer.Exit(1) from None
    except ValidationError as e:
        error("Configuration validation failed:")
        for err in e.errors():
            location = ".".join(str(part) for part in err["loc"]) or "(root)"
            error(f"  {location}: {err['msg']}")
        raise typer.Exit(1) from None

    console.print(_summary(loaded))
    success("Configuration is valid")


def _summary(config: CadenceConfig) -> Table:
    storage, scheduler, wizard = config.storage, config.scheduler, config.wizard
    table = create_table(
        "Configuration Summary",
        Column("Setting", style="cyan"),
        Column("Value", style="green"),
    )
    table.add_row("Database", storage.database_url or str(storage.database_path))
    table.add_row("Poll interval", f"{scheduler.poll_interval:g}s")
    table.add_row("Execution timeout", f"{scheduler.execution_timeout:g}s")
    table.add_row("Max concurrency", str(scheduler.max_concurrency))
    table.add_row("Prompt schedules per group", str(wizard.max_active_prompts_per_group))
    table.add_row(
        "Payment schedules per group", str(wizard.max_active_payments_per_group)
    )
    table.add_row("Minute step", str(wizard.minute_step))
    return table


def _print_paths() -> None:
    table = create_table("Cadence Paths", Column("Name", style="cyan"), "Path")
    for name, location in get_all_paths().items():
        table.add_row(name, str(location))
    console.print(table)
