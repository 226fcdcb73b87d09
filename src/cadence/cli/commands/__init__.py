"""CLI command modules."""

from cadence.cli.commands import config, schedule, tick

__all__ = [
    "config",
    "schedule",
    "tick",
]
