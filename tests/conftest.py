"""Shared test fixtures and factories."""

import asyncio
from collections.abc import AsyncGenerator, Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from cadence.config.models import SchedulerConfig, WizardConfig
from cadence.db import Database, open_database
from cadence.scheduling.dispatcher import (
    ExecutionRequest,
    ExecutionResult,
    ScheduleDispatcher,
    ScheduleNotification,
)
from cadence.scheduling.recurrence import RepeatPolicy
from cadence.scheduling.store import ScheduleStore
from cadence.scheduling.types import (
    ActionKind,
    PaymentAction,
    PromptAction,
    ScheduleRecord,
)
from cadence.scheduling.wizard import ScheduleWizard

# Monday 2026-03-02 08:30 UTC
T0 = datetime(2026, 3, 2, 8, 30, tzinfo=UTC)


# =============================================================================
# Time
# =============================================================================


class FixedClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


# =============================================================================
# Storage Fixtures
# =============================================================================


@pytest.fixture
async def database(tmp_path: Path) -> AsyncGenerator[Database, None]:
    """Create a temporary test database."""
    db = await open_database(database_path=tmp_path / "test.db")
    yield db
    await db.disconnect()


@pytest.fixture
def store(database: Database) -> ScheduleStore:
    return ScheduleStore(database)


# =============================================================================
# Record Factories
# =============================================================================


@pytest.fixture
def make_prompt_record() -> Callable[..., ScheduleRecord]:
    """Factory for prompt schedule records (due at T0 by default)."""

    def factory(**overrides: Any) -> ScheduleRecord:
        fields: dict[str, Any] = {
            "id": "prompt-1",
            "group_id": -100123,
            "creator_id": 42,
            "creator_display_name": "alice",
            "action": PromptAction(text="Summarize today's chat"),
            "start_hour_utc": T0.hour,
            "start_minute_utc": T0.minute,
            "repeat": RepeatPolicy.DAILY,
            "created_at": T0 - timedelta(days=1),
            "next_run_at": T0,
        }
        fields.update(overrides)
        return ScheduleRecord(**fields)

    return factory


@pytest.fixture
def make_payment_record() -> Callable[..., ScheduleRecord]:
    """Factory for payment schedule records (due at T0 by default)."""

    def factory(**overrides: Any) -> ScheduleRecord:
        fields: dict[str, Any] = {
            "id": "payment-1",
            "group_id": -100123,
            "creator_id": 42,
            "creator_display_name": "alice",
            "action": PaymentAction(
                recipient_username="bob",
                recipient_address="0xb0b",
                token_symbol="APT",
                token_type="0x1::aptos_coin::AptosCoin",
                decimals=8,
                amount_smallest_units=150_000_000,
            ),
            "start_hour_utc": T0.hour,
            "start_minute_utc": T0.minute,
            "start_at": T0,
            "repeat": RepeatPolicy.WEEKLY,
            "created_at": T0 - timedelta(days=1),
            "next_run_at": T0,
            "notify_on_success": True,
        }
        fields.update(overrides)
        return ScheduleRecord(**fields)

    return factory


# =============================================================================
# Executors and Notifier
# =============================================================================


class RecordingExecutor:
    """Executor that records requests and succeeds or raises on demand."""

    def __init__(
        self,
        fail_with: Exception | None = None,
        detail: str = "done",
        conversation_ref: str | None = None,
        delay: float = 0,
    ):
        self.fail_with = fail_with
        self.detail = detail
        self.conversation_ref = conversation_ref
        self.delay = delay
        self.requests: list[ExecutionRequest] = []

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        return ExecutionResult(detail=self.detail, conversation_ref=self.conversation_ref)


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.notifications: list[ScheduleNotification] = []

    async def notify(self, notification: ScheduleNotification) -> None:
        self.notifications.append(notification)
        if self.fail:
            raise ConnectionError("chat transport unavailable")


@pytest.fixture
def prompt_executor() -> RecordingExecutor:
    return RecordingExecutor(conversation_ref="resp_1")


@pytest.fixture
def payment_executor() -> RecordingExecutor:
    return RecordingExecutor(detail="tx 0xabc")


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def dispatcher(
    store: ScheduleStore,
    prompt_executor: RecordingExecutor,
    payment_executor: RecordingExecutor,
    notifier: RecordingNotifier,
    clock: FixedClock,
) -> ScheduleDispatcher:
    return ScheduleDispatcher(
        store,
        {ActionKind.PROMPT: prompt_executor, ActionKind.PAYMENT: payment_executor},
        notifier=notifier,
        config=SchedulerConfig(execution_timeout=120, max_concurrency=4),
        clock=clock,
    )


@pytest.fixture
def wizard(store: ScheduleStore, clock: FixedClock) -> ScheduleWizard:
    return ScheduleWizard(
        store, WizardConfig(max_active_prompts_per_group=2), clock=clock
    )


# =============================================================================
# CLI Test Helpers
# =============================================================================


@pytest.fixture
def cli_runner():
    """Create a Typer CLI test runner with colors disabled."""
    from typer.testing import CliRunner

    return CliRunner(env={"NO_COLOR": "1"})


@pytest.fixture
def cadence_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    """Point CADENCE_HOME at a temporary directory."""
    from cadence.config.loader import ENV_OVERRIDES
    from cadence.config.paths import ENV_VAR, get_cadence_home

    home = tmp_path / "cadence-home"
    monkeypatch.setenv(ENV_VAR, str(home))
    for env_var in ENV_OVERRIDES:
        monkeypatch.delenv(env_var, raising=False)
    monkeypatch.chdir(tmp_path)
    get_cadence_home.cache_clear()
    yield home
    get_cadence_home.cache_clear()
