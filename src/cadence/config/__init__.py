"""Configuration module."""

from cadence.config.loader import get_default_config, load_config
from cadence.config.models import (
    CadenceConfig,
    ConfigError,
    SchedulerConfig,
    StorageConfig,
    WizardConfig,
)
from cadence.config.paths import (
    get_cadence_home,
    get_config_path,
    get_database_path,
    get_logs_path,
)

__all__ = [
    "CadenceConfig",
    "ConfigError",
    "SchedulerConfig",
    "StorageConfig",
    "WizardConfig",
    "get_cadence_home",
    "get_config_path",
    "get_database_path",
    "get_default_config",
    "get_logs_path",
    "load_config",
]
