"""Cadence operator CLI."""

from typing import Annotated

import typer

from cadence.cli.commands import config, schedule, tick
from cadence.logging import configure_logging

app = typer.Typer(
    name="cadence",
    help="Cadence - inspect and manage recurring prompt and payment schedules",
    no_args_is_help=True,
)


@app.callback()
def main(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
    log_file: Annotated[
        bool,
        typer.Option("--log-file", help="Also write JSONL logs under $CADENCE_HOME/logs"),
    ] = False,
) -> None:
    configure_logging(
        level="DEBUG" if verbose else "WARNING",
        use_rich=True,
        log_to_file=log_file,
    )


for module in (config, schedule, tick):
    module.register(app)
