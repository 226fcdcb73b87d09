"""Schedule dispatcher: finds due records, claims them and runs their actions.

Each tick:

1. Lists active records whose ``next_run_at`` has passed and whose lock is
   free or expired.
2. Claims each through ``ScheduleLock.try_acquire``. Losing a claim just
   skips the record.
3. Calls the executor registered for the record's action kind, bounded by
   the lock TTL.
4. Records the outcome: ``run_count + 1``, ``last_run_at``, status and
   error, the next occurrence (or retirement for one-shots), lock cleared.
5. Sends a notification when the record asks for one. Notification
   failures are logged and never undo step 4.

Failures consume their occurrence; nothing is retried within a tick.
Records run concurrently up to ``max_concurrency``; one record's failure
never stops the others.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol

from cadence.config.models import SchedulerConfig
from cadence.scheduling.errors import ExecutionError
from cadence.scheduling.keyboards import Keyboard, failure_keyboard
from cadence.scheduling.lock import ScheduleLock, StoreLeaseLock
from cadence.scheduling.recurrence import advance_past
from cadence.scheduling.store import ScheduleStore
from cadence.scheduling.types import (
    Action,
    ActionKind,
    AttemptStatus,
    Clock,
    PromptAction,
    ScheduleRecord,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionRequest:
    """One due occurrence handed to an executor.

    ``idempotency_key`` is ``<record_id>:<attempt number>`` and is stable if
    the same occurrence is ever handed out twice (e.g. after a crash).
    """

    record_id: str
    group_id: int
    creator_id: int
    action: Action
    idempotency_key: str
    message_thread_id: int | None = None


@dataclass
class ExecutionResult:
    detail: str = ""
    # Assistant conversation handle to continue from on the next prompt run
    conversation_ref: str | None = None


class ActionExecutor(Protocol):
    """Carries out one action. Raising means the attempt failed."""

    async def execute(self, request: ExecutionRequest) -> ExecutionResult: ...


@dataclass
class ScheduleNotification:
    record_id: str
    group_id: int
    creator_id: int
    kind: ActionKind
    outcome: AttemptStatus
    detail: str
    message_thread_id: int | None = None
    keyboard: Keyboard | None = None


class Notifier(Protocol):
    async def notify(self, notification: ScheduleNotification) -> None: ...


@dataclass
class RunOutcome:
    record_id: str
    status: AttemptStatus
    detail: str
    record: ScheduleRecord | None


@dataclass
class TickReport:
    due: int = 0
    skipped: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: int = 0
    outcomes: list[RunOutcome] = field(default_factory=list)

    @property
    def executed(self) -> int:
        return self.succeeded + self.failed


class ScheduleDispatcher:
    """Runs due schedules against registered executors.

    Example:
        dispatcher = ScheduleDispatcher(store, {ActionKind.PROMPT: prompts})
        dispatcher.register_executor(ActionKind.PAYMENT, payments)

        report = await dispatcher.tick()   # driven externally, or
        await dispatcher.start()           # poll every poll_interval
    """

    def __init__(
        self,
        store: ScheduleStore,
        executors: Mapping[ActionKind, ActionExecutor] | None = None,
        *,
        lock: ScheduleLock | None = None,
        notifier: Notifier | None = None,
        config: SchedulerConfig | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._executors: dict[ActionKind, ActionExecutor] = dict(executors or {})
        self._lock = lock or StoreLeaseLock(store)
        self._notifier = notifier
        self._config = config or SchedulerConfig()
        self._clock = clock
        self._running = False
        self._task: asyncio.Task | None = None
        self._poll_count = 0

    @property
    def store(self) -> ScheduleStore:
        return self._store

    @property
    def lock_ttl(self) -> timedelta:
        return timedelta(seconds=self._config.execution_timeout)

    def register_executor(self, kind: ActionKind, executor: ActionExecutor) -> None:
        self._executors[kind] = executor

    async def tick(self, now: datetime | None = None) -> TickReport:
        """Run every record due at ``now`` once."""
        now = now or self._clock()
        due = await self._store.list_due(now)
        report = TickReport(due=len(due))
        if not due:
            return report

        logger.debug("schedule_tick", extra={"schedule.due_count": len(due)})
        semaphore = asyncio.Semaphore(self._config.max_concurrency)
        results = await asyncio.gather(
            *(self._run_guarded(record.id, now, semaphore) for record in due)
        )

        for result in results:
            if result is None:
                report.skipped += 1
            elif isinstance(result, RunOutcome):
                report.outcomes.append(result)
                if result.status is AttemptStatus.SUCCESS:
                    report.succeeded += 1
                else:
                    report.failed += 1
            else:
                report.errors += 1
        return report

    async def _run_guarded(
        self, record_id: str, now: datetime, semaphore: asyncio.Semaphore
    ) -> RunOutcome | None | Exception:
        async with semaphore:
            try:
                return await self.run_one(record_id, now)
            except Exception as e:
                logger.error(
                    "schedule_run_error",
                    extra={"schedule.id": record_id, "error.message": str(e)},
                    exc_info=True,
                )
                return e

    async def run_one(self, record_id: str, now: datetime) -> RunOutcome | None:
        """Claim, execute and complete one record.

        Returns None when the record could not be claimed. ``now`` is the tick
        time and becomes ``last_run_at``; the lease starts when the claim is
        made, which can be later when the record waited for a free slot.
        """
        claimed_at = max(now, self._clock())
        if not await self._lock.try_acquire(record_id, self.lock_ttl, now=claimed_at):
            return None

        claimed = await self._store.get_schedule(record_id)
        if claimed is None:
            return None

        logger.info(
            "schedule_claimed",
            extra={
                "schedule.id": record_id,
                "schedule.kind": claimed.kind.value,
                "schedule.run": claimed.run_count + 1,
            },
        )
        status, detail, conversation_ref = await self._execute(
            claimed, claimed_at + self.lock_ttl
        )
        updated = await self._complete(claimed, now, status, detail, conversation_ref)

        if updated is None:
            logger.warning("schedule_deleted_during_run", extra={"schedule.id": record_id})
        else:
            logger.info(
                "schedule_run_completed",
                extra={
                    "schedule.id": record_id,
                    "schedule.status": status.value,
                    "schedule.run_count": updated.run_count,
                    "schedule.next_run_at": updated.next_run_at,
                },
            )

        await self._notify(updated or claimed, status, detail)
        return RunOutcome(record_id=record_id, status=status, detail=detail, record=updated)

    async def _execute(
        self, record: ScheduleRecord, lease_expires: datetime
    ) -> tuple[AttemptStatus, str, str | None]:
        executor = self._executors.get(record.kind)
        request = ExecutionRequest(
            record_id=record.id,
            group_id=record.group_id,
            creator_id=record.creator_id,
            action=record.action,
            idempotency_key=f"{record.id}:{record.run_count + 1}",
            message_thread_id=record.action.message_thread_id
            if isinstance(record.action, PromptAction)
            else None,
        )
        timeout = self._config.execution_timeout
        # The call must end before the lease does
        budget = max((lease_expires - self._clock()).total_seconds(), 0)
        try:
            if executor is None:
                raise ExecutionError(f"No executor registered for {record.kind} actions")
            async with asyncio.timeout(min(budget, timeout)):
                result = await executor.execute(request)
        except TimeoutError:
            detail = f"Execution timed out after {timeout:g}s"
        except Exception as e:
            detail = str(e) or type(e).__name__
        else:
            return AttemptStatus.SUCCESS, result.detail, result.conversation_ref

        logger.error(
            "schedule_execution_failed",
            extra={"schedule.id": record.id, "error.message": detail},
        )
        return AttemptStatus.FAILURE, detail, None

    async def _complete(
        self,
        claimed: ScheduleRecord,
        now: datetime,
        status: AttemptStatus,
        detail: str,
        conversation_ref: str | None,
    ) -> ScheduleRecord | None:
        scheduled = claimed.next_run_at or now

        def mutate(record: ScheduleRecord) -> None:
            record.run_count += 1
            record.last_run_at = now
            record.last_attempt_status = status
            record.last_error = None if status is AttemptStatus.SUCCESS else detail
            record.locked_until = None
            record.scheduler_job_id = None

            # An edit or run-now during the run already chose the next time
            if record.next_run_at == claimed.next_run_at:
                record.next_run_at = advance_past(record.repeat, scheduled, now)
            if record.next_run_at is None:
                record.active = False

            if (
                conversation_ref
                and status is AttemptStatus.SUCCESS
                and isinstance(record.action, PromptAction)
            ):
                record.action.conversation_thread_ref = conversation_ref

        return await self._store.update_schedule(claimed.id, mutate)

    async def _notify(
        self, record: ScheduleRecord, status: AttemptStatus, detail: str
    ) -> None:
        if self._notifier is None:
            return
        wanted = (
            record.notify_on_success
            if status is AttemptStatus.SUCCESS
            else record.notify_on_failure
        )
        if not wanted:
            return

        notification = ScheduleNotification(
            record_id=record.id,
            group_id=record.group_id,
            creator_id=record.creator_id,
            kind=record.kind,
            outcome=status,
            detail=detail,
            message_thread_id=record.action.message_thread_id
            if isinstance(record.action, PromptAction)
            else None,
            keyboard=failure_keyboard(record.kind, record.id)
            if status is AttemptStatus.FAILURE
            else None,
        )
        try:
            await self._notifier.notify(notification)
        except Exception as e:
            logger.warning(
                "schedule_notification_failed",
                extra={"schedule.id": record.id, "error.message": str(e)},
            )

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        logger.info(
            "schedule_dispatcher_started",
            extra={"poll.interval": self._config.poll_interval},
        )
        self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                self._poll_count += 1
                if self._poll_count % self._config.heartbeat_every == 0:
                    logger.info(
                        "schedule_dispatcher_heartbeat",
                        extra={"poll.count": self._poll_count},
                    )
                report = await self.tick()
                if report.executed or report.errors:
                    logger.info(
                        "schedule_tick_completed",
                        extra={
                            "schedule.succeeded": report.succeeded,
                            "schedule.failed": report.failed,
                            "schedule.skipped": report.skipped,
                            "schedule.errors": report.errors,
                        },
                    )
            except Exception as e:
                logger.error(
                    "schedule_tick_error",
                    extra={"error.message": str(e)},
                    exc_info=True,
                )
            await asyncio.sleep(self._config.poll_interval)
