"""Load configuration from TOML with environment overrides."""

import os
import tomllib
from pathlib import Path
from typing import Any

from cadence.config.models import CadenceConfig
from cadence.config.paths import CONFIG_FILE, get_config_path

SYSTEM_CONFIG_PATH = Path("/etc/cadence") / CONFIG_FILE

# Environment variable -> (section, key). Only fills keys the file leaves unset.
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "CADENCE_DATABASE_URL": ("storage", "database_url"),
    "CADENCE_POLL_INTERVAL": ("scheduler", "poll_interval"),
    "CADENCE_MAX_CONCURRENCY": ("scheduler", "max_concurrency"),
}


def config_search_paths() -> list[Path]:
    """Candidate config files, highest priority first."""
    return [Path.cwd() / CONFIG_FILE, get_config_path(), SYSTEM_CONFIG_PATH]


def apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    for env_var, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if not value:
            continue
        table = raw.setdefault(section, {})
        if table.get(key) is None:
            table[key] = value
    return raw


def load_config(path: Path | None = None) -> CadenceConfig:
    """Load and validate configuration.

    Args:
        path: Explicit config file. When omitted the first existing file from
            ``config_search_paths()`` is used.

    Raises:
        FileNotFoundError: The explicit path is missing, or no candidate exists.
        tomllib.TOMLDecodeError: The file is not valid TOML.
        pydantic.ValidationError: The values fail validation.
    """
    if path is not None:
        config_path = Path(path).expanduser()
        if not config_path.is_file():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        candidates = config_search_paths()
        config_path = next((p for p in candidates if p.is_file()), None)
        if config_path is None:
            searched = ", ".join(str(p) for p in candidates)
            raise FileNotFoundError(f"No config file found. Searched: {searched}")

    raw = tomllib.loads(config_path.read_text(encoding="utf-8"))
    return CadenceConfig.model_validate(apply_env_overrides(raw))


def get_default_config() -> CadenceConfig:
    """Built-in defaults plus environment overrides, used when no file exists."""
    return CadenceConfig.model_validate(apply_env_overrides({}))
