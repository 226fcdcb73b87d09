"""Configuration models using Pydantic."""

import logging
from pathlib import Path

from pydantic import BaseModel, Field, model_validator

from cadence.config.paths import get_database_path

logger = logging.getLogger(__name__)


class SchedulerConfig(BaseModel):
    """Configuration for the scheduler dispatcher.

    The execution timeout doubles as the lock lease: a claimed record stays
    fenced for this long, and executor calls are cancelled when it elapses so
    a call never outlives its lease.
    """

    poll_interval: float = Field(default=60.0, gt=0)
    execution_timeout: float = Field(default=120.0, gt=0)
    max_concurrency: int = Field(default=8, ge=1)
    # Heartbeat log every N polls
    heartbeat_every: int = Field(default=60, ge=1)


class WizardConfig(BaseModel):
    """Configuration for the schedule creation wizard."""

    max_active_prompts_per_group: int = Field(default=10, ge=1)
    max_active_payments_per_group: int = Field(default=50, ge=1)
    minute_step: int = 5
    max_prompt_length: int = Field(default=4000, ge=1)

    # Notification defaults applied to new records
    notify_prompt_success: bool = False
    notify_prompt_failure: bool = True
    notify_payment_success: bool = True
    notify_payment_failure: bool = True

    @model_validator(mode="after")
    def _validate_minute_step(self) -> "WizardConfig":
        if self.minute_step < 1 or 60 % self.minute_step != 0:
            raise ValueError("minute_step must evenly divide 60")
        return self


class StorageConfig(BaseModel):
    """Configuration for schedule persistence."""

    database_path: Path = Field(default_factory=get_database_path)
    # Full SQLAlchemy URL, takes precedence over database_path
    database_url: str | None = None


class ConfigError(Exception):
    """Configuration file could not be parsed or validated."""


class CadenceConfig(BaseModel):
    """Root configuration model."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    wizard: WizardConfig = Field(default_factory=WizardConfig)

    @model_validator(mode="after")
    def _validate_lease(self) -> "CadenceConfig":
        if self.scheduler.execution_timeout < self.scheduler.poll_interval:
            logger.warning(
                "Scheduler execution_timeout (%ss) is shorter than poll_interval "
                "(%ss); abandoned locks are reclaimed on the next tick.",
                self.scheduler.execution_timeout,
                self.scheduler.poll_interval,
            )
        return self
