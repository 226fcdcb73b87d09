"""Scheduling error taxonomy.

Lock contention is deliberately absent: losing a claim is an expected
outcome and is reported as ``False`` from ``ScheduleLock.try_acquire``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cadence.scheduling.types import WizardStep


class CadenceError(Exception):
    """Base class for scheduling errors."""


class WizardInputError(CadenceError):
    """Invalid input for the current wizard step. The session is unchanged."""

    def __init__(self, step: WizardStep, message: str) -> None:
        super().__init__(message)
        self.step = step


class NoActiveWizardError(CadenceError):
    """No wizard session is in progress for this creator and group."""


class ScheduleNotFoundError(CadenceError):
    """The referenced schedule record does not exist (or is unreadable)."""


class ScheduleLimitError(CadenceError):
    """The group already holds the maximum number of active schedules."""


class StorageError(CadenceError):
    """Serialization or storage-engine failure. Never swallowed."""


class ExecutionError(CadenceError):
    """An executor reported that an action could not be carried out."""
