"""Config and store bootstrap shared by CLI commands."""

from __future__ import annotations

import tomllib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from pydantic import ValidationError

from cadence.config import CadenceConfig, ConfigError, get_default_config, load_config
from cadence.db import open_database
from cadence.scheduling.store import ScheduleStore


def resolve_config(path: Path | None) -> CadenceConfig:
    """Load ``path``, or the first default config file, or built-in defaults.

    Raises:
        FileNotFoundError: If an explicit ``path`` does not exist.
        ConfigError: If the file is not valid TOML or fails validation.
    """
    try:
        return load_config(path)
    except FileNotFoundError:
        if path is not None:
            raise
        return get_default_config()
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from e


@asynccontextmanager
async def open_store(config: CadenceConfig) -> AsyncIterator[ScheduleStore]:
    db = await open_database(
        database_url=config.storage.database_url,
        database_path=config.storage.database_path,
    )
    try:
        yield ScheduleStore(db)
    finally:
        await db.disconnect()
