"""Interactive schedule creation.

A wizard session collects one typed value per step and persists itself
after every accepted value:

    prompt:  AWAITING_PROMPT -> HOUR -> MINUTE -> REPEAT -> CONFIRM
    payment: AWAITING_RECIPIENT -> TOKEN -> AMOUNT -> DATE -> HOUR
             -> MINUTE -> REPEAT -> CONFIRM

Rejected input raises ``WizardInputError`` and leaves the stored session
exactly as it was. Confirming is the only way a ``ScheduleRecord`` gets
created; cancelling (or declining the confirmation) drops the session.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from cadence.config.models import WizardConfig
from cadence.scheduling.display import describe, to_smallest_units, truncate
from cadence.scheduling.errors import (
    NoActiveWizardError,
    ScheduleLimitError,
    ScheduleNotFoundError,
    WizardInputError,
)
from cadence.scheduling.keyboards import (
    Keyboard,
    confirm_keyboard,
    hour_keyboard,
    minute_keyboard,
    parse_callback,
    repeat_keyboard,
)
from cadence.scheduling.recurrence import (
    PAYMENT_POLICIES,
    PROMPT_POLICIES,
    RepeatPolicy,
    first_occurrence,
    time_of_day_anchor,
)
from cadence.scheduling.store import ScheduleStore
from cadence.scheduling.types import (
    ActionKind,
    Clock,
    PaymentAction,
    PendingWizardState,
    PromptAction,
    ScheduleRecord,
    WizardStep,
    utc_now,
)

logger = logging.getLogger(__name__)

_FLOWS: dict[ActionKind, tuple[WizardStep, ...]] = {
    ActionKind.PROMPT: (
        WizardStep.AWAITING_PROMPT,
        WizardStep.AWAITING_HOUR,
        WizardStep.AWAITING_MINUTE,
        WizardStep.AWAITING_REPEAT,
        WizardStep.AWAITING_CONFIRM,
    ),
    ActionKind.PAYMENT: (
        WizardStep.AWAITING_RECIPIENT,
        WizardStep.AWAITING_TOKEN,
        WizardStep.AWAITING_AMOUNT,
        WizardStep.AWAITING_DATE,
        WizardStep.AWAITING_HOUR,
        WizardStep.AWAITING_MINUTE,
        WizardStep.AWAITING_REPEAT,
        WizardStep.AWAITING_CONFIRM,
    ),
}

# (kind, step) -> step that follows it
TRANSITIONS: dict[tuple[ActionKind, WizardStep], WizardStep] = {
    (kind, step): flow[i + 1]
    for kind, flow in _FLOWS.items()
    for i, step in enumerate(flow[:-1])
}

_ALLOWED_POLICIES: dict[ActionKind, tuple[RepeatPolicy, ...]] = {
    ActionKind.PROMPT: PROMPT_POLICIES,
    ActionKind.PAYMENT: PAYMENT_POLICIES,
}

# Button action -> the step that button answers
_CALLBACK_STEPS: dict[str, WizardStep] = {
    "hour": WizardStep.AWAITING_HOUR,
    "min": WizardStep.AWAITING_MINUTE,
    "repeat": WizardStep.AWAITING_REPEAT,
    "confirm": WizardStep.AWAITING_CONFIRM,
}

_STEP_PROMPTS: dict[WizardStep, str] = {
    WizardStep.AWAITING_PROMPT: "📝 Send the prompt you want to schedule.",
    WizardStep.AWAITING_RECIPIENT: "👤 Send the @username of the recipient.",
    WizardStep.AWAITING_TOKEN: "💳 Send the token symbol (e.g. APT, USDC).",
    WizardStep.AWAITING_DATE: "📅 Send the start date as YYYY-MM-DD (UTC).",
}

MAX_TOKEN_DECIMALS = 30


def first_step(kind: ActionKind) -> WizardStep:
    return _FLOWS[kind][0]


def steps_for(kind: ActionKind) -> tuple[WizardStep, ...]:
    return _FLOWS[kind]


@dataclass(frozen=True)
class RecipientInput:
    """A resolved payment recipient (username lookup happens upstream)."""

    username: str
    address: str


@dataclass(frozen=True)
class TokenInput:
    """A resolved token (metadata lookup happens upstream)."""

    symbol: str
    token_type: str
    decimals: int


@dataclass
class WizardReply:
    """What the transport should present after a wizard transition."""

    text: str
    step: WizardStep | None = None
    keyboard: Keyboard | None = None
    record_id: str | None = None
    cancelled: bool = False

    @property
    def done(self) -> bool:
        return self.step is None


class ScheduleWizard:
    """Drives wizard sessions stored in a ``ScheduleStore``."""

    def __init__(
        self,
        store: ScheduleStore,
        config: WizardConfig | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._config = config or WizardConfig()
        self._clock = clock

    @property
    def config(self) -> WizardConfig:
        return self._config

    async def start(
        self,
        kind: ActionKind,
        group_id: int,
        creator_id: int,
        creator_display_name: str,
        *,
        message_thread_id: int | None = None,
    ) -> WizardReply:
        """Open a new session, replacing any in-flight one for this creator.

        Raises:
            ScheduleLimitError: If the group is already at its cap for ``kind``.
        """
        await self._check_limit(kind, group_id)
        state = PendingWizardState(
            group_id=group_id,
            creator_id=creator_id,
            creator_display_name=creator_display_name,
            kind=kind,
            step=first_step(kind),
            message_thread_id=message_thread_id,
        )
        await self._store.put_pending(state)
        logger.info(
            "wizard_started",
            extra={
                "schedule.kind": kind.value,
                "group.id": group_id,
                "user.id": creator_id,
            },
        )
        return self._reply_for(state)

    async def begin_edit(
        self, record: ScheduleRecord, step: WizardStep | None = None
    ) -> WizardReply:
        """Open a session pre-filled from ``record``, starting at ``step``.

        Confirming the session rewrites the same record id.
        """
        flow = steps_for(record.kind)
        step = step or flow[0]
        if step not in flow or step is WizardStep.AWAITING_CONFIRM:
            raise WizardInputError(step, f"Cannot edit a {record.kind} at {step}")

        state = PendingWizardState(
            group_id=record.group_id,
            creator_id=record.creator_id,
            creator_display_name=record.creator_display_name,
            kind=record.kind,
            step=step,
            schedule_id=record.id,
            hour_utc=record.start_hour_utc,
            minute_utc=record.start_minute_utc,
            repeat=record.repeat,
        )
        action = record.action
        if isinstance(action, PromptAction):
            state.prompt_text = action.text
            state.message_thread_id = action.message_thread_id
        else:
            state.recipient_username = action.recipient_username
            state.recipient_address = action.recipient_address
            state.token_symbol = action.token_symbol
            state.token_type = action.token_type
            state.decimals = action.decimals
            state.amount = action.display_amount
            if record.start_at is not None:
                state.start_date = record.start_at.date()

        await self._store.put_pending(state)
        logger.info(
            "wizard_edit_started",
            extra={"schedule.id": record.id, "wizard.step": step.value},
        )
        return self._reply_for(state)

    async def current(self, group_id: int, creator_id: int) -> PendingWizardState | None:
        return await self._store.get_pending(group_id, creator_id)

    async def submit(self, group_id: int, creator_id: int, value: Any) -> WizardReply:
        """Answer the session's current step.

        Raises:
            NoActiveWizardError: If there is no session for this creator.
            WizardInputError: If ``value`` is not valid for the current step.
            ScheduleLimitError: If confirming would exceed the group's cap.
        """
        state = await self._require_session(group_id, creator_id)
        step = state.step

        if step is WizardStep.AWAITING_CONFIRM:
            if not isinstance(value, bool):
                raise WizardInputError(step, "Answer with a yes or no confirmation")
            if value:
                return await self.confirm(group_id, creator_id)
            return await self.cancel(group_id, creator_id)

        updates = self._validate(state, value)
        for name, field_value in updates.items():
            setattr(state, name, field_value)
        state.step = TRANSITIONS[(state.kind, step)]
        await self._store.put_pending(state)
        logger.debug(
            "wizard_step_accepted",
            extra={"wizard.step": step.value, "wizard.next_step": state.step.value},
        )
        return self._reply_for(state)

    async def handle_callback(
        self, group_id: int, creator_id: int, data: str
    ) -> WizardReply:
        """Route a keyboard button press to the matching wizard operation."""
        state = await self._require_session(group_id, creator_id)
        callback = parse_callback(data)
        if callback is None or callback.kind != state.kind:
            raise WizardInputError(state.step, "That button is not part of this wizard")
        if callback.action == "cancel":
            return await self.cancel(group_id, creator_id)

        expected = _CALLBACK_STEPS.get(callback.action)
        if expected is None or expected != state.step:
            raise WizardInputError(state.step, "That button is no longer active")
        if callback.action == "confirm":
            return await self.confirm(group_id, creator_id)
        return await self.submit(group_id, creator_id, callback.arg)

    async def confirm(self, group_id: int, creator_id: int) -> WizardReply:
        """Turn a completed session into a persisted schedule.

        Raises:
            NoActiveWizardError: If there is no session for this creator.
            WizardInputError: If the session has not reached confirmation.
            ScheduleLimitError: If the group is at its cap; the session stays.
            ScheduleNotFoundError: If an edited record was deleted meanwhile.
        """
        state = await self._require_session(group_id, creator_id)
        if state.step is not WizardStep.AWAITING_CONFIRM:
            raise WizardInputError(state.step, "The schedule is not complete yet")

        now = self._clock()
        await self._check_limit(
            state.kind, group_id, exclude_id=state.schedule_id or state.record_id
        )

        if state.schedule_id is None:
            if state.record_id is None:
                state.record_id = str(uuid.uuid4())
                await self._store.put_pending(state)
            record = self._build_record(state, now)
            await self._store.put_schedule(record)
            event = "schedule_created"
        else:
            record = await self._apply_edit(state, now)
            event = "schedule_updated"

        await self._store.delete_pending(group_id, creator_id)
        logger.info(
            event,
            extra={
                "schedule.id": record.id,
                "schedule.kind": record.kind.value,
                "schedule.repeat": record.repeat.value,
                "schedule.next_run_at": record.next_run_at,
                "group.id": group_id,
            },
        )
        return WizardReply(
            text=f"✅ Schedule saved.\n\n{describe(record)}",
            record_id=record.id,
        )

    async def cancel(self, group_id: int, creator_id: int) -> WizardReply:
        """Drop the session without creating anything."""
        deleted = await self._store.delete_pending(group_id, creator_id)
        if deleted:
            logger.info(
                "wizard_cancelled", extra={"group.id": group_id, "user.id": creator_id}
            )
        return WizardReply(text="❌ Schedule cancelled.", cancelled=True)

    # -- internals ------------------------------------------------------------

    async def _require_session(
        self, group_id: int, creator_id: int
    ) -> PendingWizardState:
        state = await self._store.get_pending(group_id, creator_id)
        if state is None:
            raise NoActiveWizardError(
                f"No schedule wizard in progress for user {creator_id}"
            )
        return state

    async def _check_limit(
        self, kind: ActionKind, group_id: int, exclude_id: str | None = None
    ) -> None:
        cap = (
            self._config.max_active_prompts_per_group
            if kind is ActionKind.PROMPT
            else self._config.max_active_payments_per_group
        )
        active = [
            r
            for r in await self._store.list_schedules_for_group(group_id, kind)
            if r.id != exclude_id
        ]
        if len(active) >= cap:
            raise ScheduleLimitError(
                f"This group already has {len(active)} active {kind} schedules "
                f"(limit {cap})"
            )

    def _validate(self, state: PendingWizardState, value: Any) -> dict[str, Any]:
        """Check ``value`` against the current step and return field updates."""
        step = state.step
        if step is WizardStep.AWAITING_PROMPT:
            return {"prompt_text": self._parse_prompt(step, value)}
        if step is WizardStep.AWAITING_RECIPIENT:
            return _parse_recipient(step, value)
        if step is WizardStep.AWAITING_TOKEN:
            return _parse_token(step, value)
        if step is WizardStep.AWAITING_AMOUNT:
            return {"amount": self._parse_amount(step, value, state.decimals or 0)}
        if step is WizardStep.AWAITING_DATE:
            return {"start_date": self._parse_date(step, value)}
        if step is WizardStep.AWAITING_HOUR:
            return {"hour_utc": _parse_int(step, value, 0, 23, "Hour")}
        if step is WizardStep.AWAITING_MINUTE:
            minute = _parse_int(step, value, 0, 59, "Minute")
            if minute % self._config.minute_step:
                raise WizardInputError(
                    step, f"Minute must be a multiple of {self._config.minute_step}"
                )
            return {"minute_utc": minute}
        if step is WizardStep.AWAITING_REPEAT:
            return {"repeat": _parse_repeat(step, value, state.kind)}
        raise WizardInputError(step, f"Step {step} does not take input")

    def _parse_prompt(self, step: WizardStep, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise WizardInputError(step, "Send the prompt text to schedule")
        text = value.strip()
        if len(text) > self._config.max_prompt_length:
            raise WizardInputError(
                step,
                f"Prompt is too long ({len(text)} > "
                f"{self._config.max_prompt_length} characters)",
            )
        return text

    def _parse_amount(self, step: WizardStep, value: Any, decimals: int) -> Decimal:
        if isinstance(value, bool) or not isinstance(value, Decimal | int | str):
            raise WizardInputError(step, "Send the amount as a number")
        try:
            amount = Decimal(str(value).strip().replace("_", "").replace(",", ""))
        except InvalidOperation:
            raise WizardInputError(step, f"Not a number: {value!r}") from None
        if not amount.is_finite() or amount <= 0:
            raise WizardInputError(step, "Amount must be greater than zero")
        if to_smallest_units(amount, decimals) <= 0:
            raise WizardInputError(
                step, f"Amount is smaller than the token's precision ({decimals} decimals)"
            )
        return amount

    def _parse_date(self, step: WizardStep, value: Any) -> date:
        if isinstance(value, datetime):
            value = value.date()
        if isinstance(value, str):
            try:
                value = date.fromisoformat(value.strip())
            except ValueError:
                raise WizardInputError(step, "Send the date as YYYY-MM-DD") from None
        if not isinstance(value, date):
            raise WizardInputError(step, "Send the date as YYYY-MM-DD")
        if value < self._clock().date():
            raise WizardInputError(step, "The start date cannot be in the past")
        return value

    def _anchor(self, state: PendingWizardState, now: datetime) -> datetime:
        day = state.start_date if state.kind is ActionKind.PAYMENT else now.date()
        assert day is not None
        assert state.hour_utc is not None and state.minute_utc is not None
        return time_of_day_anchor(day, state.hour_utc, state.minute_utc)

    def _build_action(self, state: PendingWizardState) -> PromptAction | PaymentAction:
        if state.kind is ActionKind.PROMPT:
            assert state.prompt_text is not None
            return PromptAction(
                text=state.prompt_text, message_thread_id=state.message_thread_id
            )
        assert state.amount is not None and state.decimals is not None
        return PaymentAction(
            recipient_username=state.recipient_username or "",
            recipient_address=state.recipient_address or "",
            token_symbol=state.token_symbol or "",
            token_type=state.token_type or "",
            decimals=state.decimals,
            amount_smallest_units=to_smallest_units(state.amount, state.decimals),
        )

    def _build_record(self, state: PendingWizardState, now: datetime) -> ScheduleRecord:
        assert state.repeat is not None
        assert state.record_id is not None
        anchor = self._anchor(state, now)
        is_prompt = state.kind is ActionKind.PROMPT
        return ScheduleRecord(
            id=state.record_id,
            group_id=state.group_id,
            creator_id=state.creator_id,
            creator_display_name=state.creator_display_name,
            action=self._build_action(state),
            start_hour_utc=anchor.hour,
            start_minute_utc=anchor.minute,
            start_at=None if is_prompt else anchor,
            repeat=state.repeat,
            created_at=now,
            active=True,
            next_run_at=first_occurrence(state.repeat, anchor, now),
            run_count=0,
            locked_until=None,
            notify_on_success=self._config.notify_prompt_success
            if is_prompt
            else self._config.notify_payment_success,
            notify_on_failure=self._config.notify_prompt_failure
            if is_prompt
            else self._config.notify_payment_failure,
        )

    async def _apply_edit(
        self, state: PendingWizardState, now: datetime
    ) -> ScheduleRecord:
        assert state.schedule_id is not None and state.repeat is not None
        anchor = self._anchor(state, now)
        action = self._build_action(state)

        def mutate(record: ScheduleRecord) -> None:
            # Keep the conversation handle so prompt runs stay in one thread
            if isinstance(record.action, PromptAction) and isinstance(
                action, PromptAction
            ):
                action.conversation_thread_ref = record.action.conversation_thread_ref
            record.action = action
            record.start_hour_utc = anchor.hour
            record.start_minute_utc = anchor.minute
            record.start_at = None if state.kind is ActionKind.PROMPT else anchor
            record.repeat = state.repeat
            record.next_run_at = first_occurrence(state.repeat, anchor, now)

        record = await self._store.update_schedule(state.schedule_id, mutate)
        if record is None:
            await self._store.delete_pending(state.group_id, state.creator_id)
            raise ScheduleNotFoundError(f"Schedule {state.schedule_id} no longer exists")
        return record

    def _reply_for(self, state: PendingWizardState) -> WizardReply:
        kind = state.kind
        step = state.step
        keyboard: Keyboard | None = None
        if step is WizardStep.AWAITING_HOUR:
            text = "🕐 Select the start hour (UTC)."
            keyboard = hour_keyboard(kind)
        elif step is WizardStep.AWAITING_MINUTE:
            text = f"🕐 Hour {state.hour_utc:02d}. Now select the minutes (UTC)."
            keyboard = minute_keyboard(kind, self._config.minute_step)
        elif step is WizardStep.AWAITING_REPEAT:
            text = "🔁 How often should it repeat?"
            keyboard = repeat_keyboard(kind, _ALLOWED_POLICIES[kind])
        elif step is WizardStep.AWAITING_CONFIRM:
            text = f"Please confirm:\n\n{self._preview(state)}"
            keyboard = confirm_keyboard(kind)
        elif step is WizardStep.AWAITING_AMOUNT:
            text = f"💰 How much {state.token_symbol} should be sent?"
        else:
            text = _STEP_PROMPTS[step]
        return WizardReply(text=text, step=step, keyboard=keyboard)

    def _preview(self, state: PendingWizardState) -> str:
        assert state.repeat is not None
        now = self._clock()
        first_run = first_occurrence(state.repeat, self._anchor(state, now), now)
        lines: list[str] = []
        if state.kind is ActionKind.PROMPT:
            lines.append(f"📝 Prompt: {truncate(state.prompt_text or '', 200)}")
        else:
            lines.append(f"👤 Recipient: @{state.recipient_username}")
            lines.append(f"💰 Amount: {state.amount} {state.token_symbol}")
        lines.append(f"🔁 Repeat: {state.repeat.label}")
        lines.append(f"⏰ First run: {first_run:%Y-%m-%d %H:%M} UTC")
        return "\n".join(lines)


def _parse_int(step: WizardStep, value: Any, low: int, high: int, name: str) -> int:
    if isinstance(value, bool):
        raise WizardInputError(step, f"{name} must be a number")
    if isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError:
            raise WizardInputError(step, f"{name} must be a number") from None
    if not isinstance(value, int):
        raise WizardInputError(step, f"{name} must be a number")
    if not low <= value <= high:
        raise WizardInputError(step, f"{name} must be between {low} and {high}")
    return value


def _parse_repeat(step: WizardStep, value: Any, kind: ActionKind) -> RepeatPolicy:
    if isinstance(value, RepeatPolicy):
        policy = value
    elif isinstance(value, str):
        try:
            policy = RepeatPolicy.from_selector(value)
        except ValueError as e:
            raise WizardInputError(step, str(e)) from None
    else:
        raise WizardInputError(step, "Choose one of the repeat options")
    if policy not in _ALLOWED_POLICIES[kind]:
        raise WizardInputError(step, f"{policy.label} is not available for {kind}s")
    return policy


def _parse_recipient(step: WizardStep, value: Any) -> dict[str, Any]:
    if not isinstance(value, RecipientInput):
        raise WizardInputError(step, "Expected a resolved recipient")
    username = value.username.strip().lstrip("@")
    address = value.address.strip()
    if not username or not address:
        raise WizardInputError(step, "Recipient needs a username and an address")
    return {"recipient_username": username, "recipient_address": address}


def _parse_token(step: WizardStep, value: Any) -> dict[str, Any]:
    if not isinstance(value, TokenInput):
        raise WizardInputError(step, "Expected a resolved token")
    symbol = value.symbol.strip().upper()
    token_type = value.token_type.strip()
    if not symbol or not token_type:
        raise WizardInputError(step, "Token needs a symbol and a type")
    if isinstance(value.decimals, bool) or not 0 <= value.decimals <= MAX_TOKEN_DECIMALS:
        raise WizardInputError(step, "Token decimals out of range")
    return {"token_symbol": symbol, "token_type": token_type, "decimals": value.decimals}
