"""Schedule types.

Public types:
- PromptAction / PaymentAction: the two action payloads a schedule can carry
- ScheduleRecord: a persisted one-shot or recurring action plus its run state
- PendingWizardState: an in-flight wizard session for one creator in one group
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from cadence.scheduling.recurrence import RepeatPolicy


class ActionKind(StrEnum):
    PROMPT = "prompt"
    PAYMENT = "payment"


class AttemptStatus(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"


class WizardStep(StrEnum):
    """Wizard states. Prompt schedules skip recipient, token, amount and date."""

    AWAITING_PROMPT = "awaiting_prompt"
    AWAITING_RECIPIENT = "awaiting_recipient"
    AWAITING_TOKEN = "awaiting_token"
    AWAITING_AMOUNT = "awaiting_amount"
    AWAITING_DATE = "awaiting_date"
    AWAITING_HOUR = "awaiting_hour"
    AWAITING_MINUTE = "awaiting_minute"
    AWAITING_REPEAT = "awaiting_repeat"
    AWAITING_CONFIRM = "awaiting_confirm"


@dataclass
class PromptAction:
    """Re-issue a prompt to the assistant in the group."""

    text: str
    # Conversation handle returned by the assistant, chained between runs
    conversation_thread_ref: str | None = None
    # Chat thread (forum topic) the schedule was created in
    message_thread_id: int | None = None

    kind = ActionKind.PROMPT

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "text": self.text,
            "conversation_thread_ref": self.conversation_thread_ref,
            "message_thread_id": self.message_thread_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PromptAction:
        text = data["text"]
        if not isinstance(text, str) or not text:
            raise ValueError("prompt text is required")
        thread_id = data.get("message_thread_id")
        return cls(
            text=text,
            conversation_thread_ref=data.get("conversation_thread_ref"),
            message_thread_id=int(thread_id) if thread_id is not None else None,
        )


@dataclass
class PaymentAction:
    """Send a token payment to a recipient's wallet."""

    recipient_username: str
    recipient_address: str
    token_symbol: str
    token_type: str
    decimals: int
    amount_smallest_units: int

    kind = ActionKind.PAYMENT

    @property
    def display_amount(self) -> Decimal:
        return Decimal(self.amount_smallest_units).scaleb(-self.decimals)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "recipient_username": self.recipient_username,
            "recipient_address": self.recipient_address,
            "token_symbol": self.token_symbol,
            "token_type": self.token_type,
            "decimals": self.decimals,
            "amount_smallest_units": self.amount_smallest_units,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PaymentAction:
        amount = int(data["amount_smallest_units"])
        if amount <= 0:
            raise ValueError("payment amount must be positive")
        return cls(
            recipient_username=str(data["recipient_username"]),
            recipient_address=str(data["recipient_address"]),
            token_symbol=str(data["token_symbol"]),
            token_type=str(data["token_type"]),
            decimals=int(data["decimals"]),
            amount_smallest_units=amount,
        )


Action = PromptAction | PaymentAction


def action_from_dict(data: dict[str, Any]) -> Action:
    """Hydrate an action from its tagged dict form."""
    kind = ActionKind(data["kind"])
    if kind is ActionKind.PROMPT:
        return PromptAction.from_dict(data)
    return PaymentAction.from_dict(data)


@dataclass
class ScheduleRecord:
    """A persisted schedule: one action plus its timing and run state.

    Prompt schedules only pin a time of day (``start_hour_utc``/
    ``start_minute_utc``); payment schedules also carry an explicit first
    run timestamp in ``start_at``.
    """

    id: str
    group_id: int
    creator_id: int
    creator_display_name: str
    action: Action
    start_hour_utc: int
    start_minute_utc: int
    repeat: RepeatPolicy
    created_at: datetime
    start_at: datetime | None = None
    active: bool = True
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    run_count: int = 0
    locked_until: datetime | None = None
    scheduler_job_id: str | None = None
    last_error: str | None = None
    last_attempt_status: AttemptStatus | None = None
    notify_on_success: bool = False
    notify_on_failure: bool = True
    # Unknown fields from newer writers, preserved on rewrite
    _extra: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> ActionKind:
        return self.action.kind

    @property
    def is_one_shot(self) -> bool:
        return self.repeat.is_one_shot

    def is_locked(self, now: datetime) -> bool:
        """True while an unexpired claim fences this record."""
        return self.locked_until is not None and self.locked_until > now

    def is_due(self, now: datetime) -> bool:
        """Active, scheduled at or before ``now`` and not fenced by a live lock."""
        return (
            self.active
            and self.next_run_at is not None
            and self.next_run_at <= now
            and not self.is_locked(now)
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize record to a JSON-serializable dict."""
        data: dict[str, Any] = dict(self._extra)
        data.update(
            {
                "id": self.id,
                "group_id": self.group_id,
                "creator_id": self.creator_id,
                "creator_display_name": self.creator_display_name,
                "action": self.action.to_dict(),
                "start_hour_utc": self.start_hour_utc,
                "start_minute_utc": self.start_minute_utc,
                "start_at": _format_dt(self.start_at),
                "repeat": self.repeat.value,
                "active": self.active,
                "created_at": self.created_at.isoformat(),
                "last_run_at": _format_dt(self.last_run_at),
                "next_run_at": _format_dt(self.next_run_at),
                "run_count": self.run_count,
                "locked_until": _format_dt(self.locked_until),
                "scheduler_job_id": self.scheduler_job_id,
                "last_error": self.last_error,
                "last_attempt_status": self.last_attempt_status.value
                if self.last_attempt_status
                else None,
                "notify_on_success": self.notify_on_success,
                "notify_on_failure": self.notify_on_failure,
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScheduleRecord:
        """Parse record from dict payload.

        Optional fields missing from older payloads take their defaults.

        Raises:
            KeyError, TypeError, ValueError: If required fields are missing
                or malformed.
        """
        status = data.get("last_attempt_status")
        extra = {k: v for k, v in data.items() if k not in _RECORD_FIELDS}
        return cls(
            id=str(data["id"]),
            group_id=int(data["group_id"]),
            creator_id=int(data["creator_id"]),
            creator_display_name=str(data.get("creator_display_name", "")),
            action=action_from_dict(data["action"]),
            start_hour_utc=int(data.get("start_hour_utc", 0)),
            start_minute_utc=int(data.get("start_minute_utc", 0)),
            start_at=_parse_dt(data.get("start_at")),
            repeat=RepeatPolicy(data.get("repeat", RepeatPolicy.NONE.value)),
            active=bool(data.get("active", True)),
            created_at=_parse_dt(data["created_at"]) or datetime.now(UTC),
            last_run_at=_parse_dt(data.get("last_run_at")),
            next_run_at=_parse_dt(data.get("next_run_at")),
            run_count=int(data.get("run_count", 0)),
            locked_until=_parse_dt(data.get("locked_until")),
            scheduler_job_id=data.get("scheduler_job_id"),
            last_error=data.get("last_error"),
            last_attempt_status=AttemptStatus(status) if status else None,
            notify_on_success=bool(data.get("notify_on_success", False)),
            notify_on_failure=bool(data.get("notify_on_failure", True)),
            _extra=extra,
        )


_RECORD_FIELDS = {
    "id",
    "group_id",
    "creator_id",
    "creator_display_name",
    "action",
    "start_hour_utc",
    "start_minute_utc",
    "start_at",
    "repeat",
    "active",
    "created_at",
    "last_run_at",
    "next_run_at",
    "run_count",
    "locked_until",
    "scheduler_job_id",
    "last_error",
    "last_attempt_status",
    "notify_on_success",
    "notify_on_failure",
}


@dataclass
class PendingWizardState:
    """An in-flight wizard session, keyed by (group_id, creator_id).

    Fields fill in progressively as the creator answers each step.
    ``schedule_id`` is set when the session edits an existing record.
    ``record_id`` is the id reserved for the record a new session creates; it
    is written before the record so a repeated confirmation reuses it.
    """

    group_id: int
    creator_id: int
    creator_display_name: str
    kind: ActionKind
    step: WizardStep
    schedule_id: str | None = None
    record_id: str | None = None
    prompt_text: str | None = None
    message_thread_id: int | None = None
    recipient_username: str | None = None
    recipient_address: str | None = None
    token_symbol: str | None = None
    token_type: str | None = None
    decimals: int | None = None
    amount: Decimal | None = None
    start_date: date | None = None
    hour_utc: int | None = None
    minute_utc: int | None = None
    repeat: RepeatPolicy | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "creator_id": self.creator_id,
            "creator_display_name": self.creator_display_name,
            "kind": self.kind.value,
            "step": self.step.value,
            "schedule_id": self.schedule_id,
            "record_id": self.record_id,
            "prompt_text": self.prompt_text,
            "message_thread_id": self.message_thread_id,
            "recipient_username": self.recipient_username,
            "recipient_address": self.recipient_address,
            "token_symbol": self.token_symbol,
            "token_type": self.token_type,
            "decimals": self.decimals,
            "amount": str(self.amount) if self.amount is not None else None,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "hour_utc": self.hour_utc,
            "minute_utc": self.minute_utc,
            "repeat": self.repeat.value if self.repeat else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingWizardState:
        amount = data.get("amount")
        start_date = data.get("start_date")
        repeat = data.get("repeat")
        decimals = data.get("decimals")
        return cls(
            group_id=int(data["group_id"]),
            creator_id=int(data["creator_id"]),
            creator_display_name=str(data.get("creator_display_name", "")),
            kind=ActionKind(data["kind"]),
            step=WizardStep(data["step"]),
            schedule_id=data.get("schedule_id"),
            record_id=data.get("record_id"),
            prompt_text=data.get("prompt_text"),
            message_thread_id=data.get("message_thread_id"),
            recipient_username=data.get("recipient_username"),
            recipient_address=data.get("recipient_address"),
            token_symbol=data.get("token_symbol"),
            token_type=data.get("token_type"),
            decimals=int(decimals) if decimals is not None else None,
            amount=Decimal(amount) if amount is not None else None,
            start_date=date.fromisoformat(start_date) if start_date else None,
            hour_utc=data.get("hour_utc"),
            minute_utc=data.get("minute_utc"),
            repeat=RepeatPolicy(repeat) if repeat else None,
        )


def _format_dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


# Injectable time source; tests pass a fixed clock
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)
