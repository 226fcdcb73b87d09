"""Filesystem layout for Cadence state.

Everything lives under one home directory, ``$CADENCE_HOME`` when set and
``~/.cadence`` otherwise::

    config.toml        optional configuration
    data/cadence.db    schedules and pending wizard sessions
    logs/              daily JSONL logs
"""

import os
from functools import lru_cache
from pathlib import Path

ENV_VAR = "CADENCE_HOME"
DEFAULT_HOME = "~/.cadence"

CONFIG_FILE = "config.toml"
DATABASE_FILE = Path("data") / "cadence.db"
LOGS_DIR = "logs"


@lru_cache(maxsize=1)
def get_cadence_home() -> Path:
    """Base directory for all Cadence state.

    Cached for the life of the process; tests that change ``CADENCE_HOME``
    must call ``get_cadence_home.cache_clear()``.
    """
    return Path(os.environ.get(ENV_VAR) or DEFAULT_HOME).expanduser().resolve()


def get_config_path() -> Path:
    return get_cadence_home() / CONFIG_FILE


def get_database_path() -> Path:
    return get_cadence_home() / DATABASE_FILE


def get_logs_path() -> Path:
    return get_cadence_home() / LOGS_DIR


def get_all_paths() -> dict[str, Path]:
    """Named state locations, as printed by ``cadence config paths``."""
    return {
        "home": get_cadence_home(),
        "config": get_config_path(),
        "database": get_database_path(),
        "logs": get_logs_path(),
    }
