"""Scheduling subsystem: recurring prompts and payments.

Public API:
- ScheduleWizard: Multi-step session that turns user input into a schedule
- ScheduleDispatcher: Claims due schedules and runs them through executors
- ScheduleManager: Pause, resume, cancel, run-now and edit existing schedules
- ScheduleStore: Key-value persistence for schedules and wizard sessions
- StoreLeaseLock: Default compare-and-swap ``locked_until`` lock

Types:
- ScheduleRecord: A persisted schedule (PromptAction or PaymentAction)
- RepeatPolicy: Supported cadences and next-occurrence arithmetic
- ActionExecutor / Notifier: Protocols implemented by the chat integration
"""

from cadence.scheduling.dispatcher import (
    ActionExecutor,
    ExecutionRequest,
    ExecutionResult,
    Notifier,
    ScheduleDispatcher,
    ScheduleNotification,
    TickReport,
)
from cadence.scheduling.display import describe
from cadence.scheduling.errors import (
    CadenceError,
    ExecutionError,
    NoActiveWizardError,
    ScheduleLimitError,
    ScheduleNotFoundError,
    StorageError,
    WizardInputError,
)
from cadence.scheduling.keyboards import Button, Keyboard, parse_callback
from cadence.scheduling.lock import ScheduleLock, StoreLeaseLock
from cadence.scheduling.manager import ScheduleManager
from cadence.scheduling.recurrence import RepeatPolicy, next_occurrence
from cadence.scheduling.store import ScheduleStore
from cadence.scheduling.types import (
    ActionKind,
    AttemptStatus,
    PaymentAction,
    PendingWizardState,
    PromptAction,
    ScheduleRecord,
    WizardStep,
)
from cadence.scheduling.wizard import (
    RecipientInput,
    ScheduleWizard,
    TokenInput,
    WizardReply,
)

__all__ = [
    "ActionExecutor",
    "ActionKind",
    "AttemptStatus",
    "Button",
    "CadenceError",
    "ExecutionError",
    "ExecutionRequest",
    "ExecutionResult",
    "Keyboard",
    "NoActiveWizardError",
    "Notifier",
    "PaymentAction",
    "PendingWizardState",
    "PromptAction",
    "RecipientInput",
    "RepeatPolicy",
    "ScheduleDispatcher",
    "ScheduleLimitError",
    "ScheduleLock",
    "ScheduleManager",
    "ScheduleNotFoundError",
    "ScheduleNotification",
    "ScheduleRecord",
    "ScheduleStore",
    "ScheduleWizard",
    "StorageError",
    "StoreLeaseLock",
    "TickReport",
    "TokenInput",
    "WizardInputError",
    "WizardReply",
    "WizardStep",
    "describe",
    "next_occurrence",
    "parse_callback",
]
