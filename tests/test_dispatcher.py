"""Tests for the schedule dispatcher."""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import text

from cadence.config.models import SchedulerConfig
from cadence.scheduling.dispatcher import (
    ExecutionRequest,
    ExecutionResult,
    ScheduleDispatcher,
)
from cadence.scheduling.errors import ExecutionError
from cadence.scheduling.lock import StoreLeaseLock
from cadence.scheduling.recurrence import RepeatPolicy
from cadence.scheduling.types import ActionKind, AttemptStatus, PromptAction

T0 = datetime(2026, 3, 2, 8, 30, tzinfo=UTC)


class HookExecutor:
    """Executor that runs ``hook`` mid-execution, then succeeds."""

    def __init__(self, hook: Callable[[ExecutionRequest], Awaitable[None]]):
        self.hook = hook
        self.calls = 0

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        self.calls += 1
        await self.hook(request)
        return ExecutionResult(detail="ok")


class ExplodingLock:
    """Lock whose backend fails for one record id."""

    def __init__(self, inner: StoreLeaseLock, bad_id: str):
        self.inner = inner
        self.bad_id = bad_id

    async def try_acquire(self, record_id, ttl, *, now):
        if record_id == self.bad_id:
            raise RuntimeError("lock backend down")
        return await self.inner.try_acquire(record_id, ttl, now=now)


class TestTick:
    @pytest.mark.asyncio
    async def test_daily_prompt_runs_and_advances(
        self, dispatcher, store, prompt_executor, make_prompt_record
    ):
        await store.put_schedule(make_prompt_record())

        report = await dispatcher.tick()

        assert report.due == 1
        assert report.succeeded == 1
        record = await store.get_schedule("prompt-1")
        assert record.run_count == 1
        assert record.last_run_at == T0
        assert record.next_run_at == T0 + timedelta(days=1)
        assert record.last_attempt_status is AttemptStatus.SUCCESS
        assert record.last_error is None
        assert record.locked_until is None
        assert record.scheduler_job_id is None
        assert record.active is True

        [request] = prompt_executor.requests
        assert request.record_id == "prompt-1"
        assert request.group_id == -100123
        assert request.idempotency_key == "prompt-1:1"

    @pytest.mark.asyncio
    async def test_nothing_due(self, dispatcher, store, prompt_executor, make_prompt_record):
        await store.put_schedule(make_prompt_record(next_run_at=T0 + timedelta(hours=1)))

        report = await dispatcher.tick()

        assert report.due == 0
        assert prompt_executor.requests == []

    @pytest.mark.asyncio
    async def test_one_shot_payment_retires(
        self, dispatcher, store, payment_executor, make_payment_record, clock
    ):
        await store.put_schedule(make_payment_record(repeat=RepeatPolicy.NONE))

        await dispatcher.tick()
        clock.advance(days=2)
        await dispatcher.tick()

        record = await store.get_schedule("payment-1")
        assert record.active is False
        assert record.next_run_at is None
        assert record.run_count == 1
        assert len(payment_executor.requests) == 1

    @pytest.mark.asyncio
    async def test_run_count_matches_attempts(
        self, dispatcher, store, prompt_executor, make_prompt_record, clock
    ):
        await store.put_schedule(make_prompt_record())

        for i in range(6):
            prompt_executor.fail_with = RuntimeError("assistant busy") if i % 2 else None
            await dispatcher.tick()
            clock.advance(days=1)

        record = await store.get_schedule("prompt-1")
        assert record.run_count == 6
        assert record.last_attempt_status is AttemptStatus.FAILURE
        assert [r.idempotency_key for r in prompt_executor.requests] == [
            f"prompt-1:{n}" for n in range(1, 7)
        ]

    @pytest.mark.asyncio
    async def test_missed_occurrences_are_skipped(
        self, dispatcher, store, prompt_executor, make_prompt_record, clock
    ):
        await store.put_schedule(make_prompt_record())
        clock.advance(days=3, hours=1)

        await dispatcher.tick()

        assert len(prompt_executor.requests) == 1
        record = await store.get_schedule("prompt-1")
        assert record.next_run_at == T0 + timedelta(days=4)

    @pytest.mark.asyncio
    async def test_locked_records_wait_and_abandoned_locks_are_reclaimed(
        self, dispatcher, store, prompt_executor, make_prompt_record
    ):
        await store.put_schedule(
            make_prompt_record(id="held", locked_until=T0 + timedelta(seconds=30))
        )
        await store.put_schedule(
            make_prompt_record(id="abandoned", locked_until=T0 - timedelta(seconds=1))
        )

        await dispatcher.tick()

        assert [r.record_id for r in prompt_executor.requests] == ["abandoned"]

    @pytest.mark.asyncio
    async def test_explicit_now(self, dispatcher, store, prompt_executor, make_prompt_record):
        await store.put_schedule(make_prompt_record(next_run_at=T0 + timedelta(hours=2)))

        report = await dispatcher.tick(now=T0 + timedelta(hours=2))

        assert report.succeeded == 1
        record = await store.get_schedule("prompt-1")
        assert record.last_run_at == T0 + timedelta(hours=2)


class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_payment_is_recorded_and_advanced(
        self, dispatcher, store, payment_executor, notifier, make_payment_record
    ):
        payment_executor.fail_with = ExecutionError("insufficient funds")
        await store.put_schedule(make_payment_record())

        report = await dispatcher.tick()

        assert report.failed == 1
        record = await store.get_schedule("payment-1")
        assert record.last_attempt_status is AttemptStatus.FAILURE
        assert record.last_error == "insufficient funds"
        assert record.run_count == 1
        assert record.next_run_at == T0 + timedelta(weeks=1)
        assert record.locked_until is None

        [notification] = notifier.notifications
        assert notification.outcome is AttemptStatus.FAILURE
        assert notification.detail == "insufficient funds"
        assert "schedpay_runnow:payment-1" in [
            b.data for b in notification.keyboard.buttons()
        ]

    @pytest.mark.asyncio
    async def test_success_clears_previous_error(
        self, dispatcher, store, make_prompt_record
    ):
        await store.put_schedule(make_prompt_record(last_error="assistant busy"))

        await dispatcher.tick()

        assert (await store.get_schedule("prompt-1")).last_error is None

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(
        self, store, prompt_executor, make_prompt_record, clock
    ):
        prompt_executor.delay = 1
        dispatcher = ScheduleDispatcher(
            store,
            {ActionKind.PROMPT: prompt_executor},
            config=SchedulerConfig(execution_timeout=0.05),
            clock=clock,
        )
        await store.put_schedule(make_prompt_record())

        report = await dispatcher.tick()

        assert report.failed == 1
        record = await store.get_schedule("prompt-1")
        assert record.last_error == "Execution timed out after 0.05s"
        assert record.locked_until is None

    @pytest.mark.asyncio
    async def test_missing_executor_counts_as_failure(
        self, store, make_payment_record, clock
    ):
        dispatcher = ScheduleDispatcher(store, clock=clock)
        await store.put_schedule(make_payment_record())

        await dispatcher.tick()

        record = await store.get_schedule("payment-1")
        assert record.last_attempt_status is AttemptStatus.FAILURE
        assert record.last_error == "No executor registered for payment actions"

    @pytest.mark.asyncio
    async def test_registered_executor_is_used(
        self, store, payment_executor, make_payment_record, clock
    ):
        dispatcher = ScheduleDispatcher(store, clock=clock)
        dispatcher.register_executor(ActionKind.PAYMENT, payment_executor)
        await store.put_schedule(make_payment_record())

        report = await dispatcher.tick()

        assert report.succeeded == 1
        assert len(payment_executor.requests) == 1

    @pytest.mark.asyncio
    async def test_corrupted_record_does_not_break_tick(
        self, dispatcher, store, database, prompt_executor, make_prompt_record
    ):
        async with database.session() as session:
            await session.execute(
                text(
                    "INSERT INTO kv_entries (namespace, key, value, revision, updated_at) "
                    "VALUES ('schedules', 'broken', '{oops', 1, :now)"
                ),
                {"now": T0.isoformat()},
            )
        await store.put_schedule(make_prompt_record())

        report = await dispatcher.tick()

        assert report.succeeded == 1
        assert len(prompt_executor.requests) == 1

    @pytest.mark.asyncio
    async def test_out_of_range_number_does_not_break_tick(
        self, dispatcher, store, database, prompt_executor, make_prompt_record
    ):
        payload = json.dumps(make_prompt_record(id="broken").to_dict())
        payload = payload.replace('"run_count": 0', '"run_count": 1e400')
        async with database.session() as session:
            await session.execute(
                text(
                    "INSERT INTO kv_entries (namespace, key, value, revision, updated_at) "
                    "VALUES ('schedules', 'broken', :value, 1, :now)"
                ),
                {"value": payload, "now": T0.isoformat()},
            )
        await store.put_schedule(make_prompt_record())

        report = await dispatcher.tick()

        assert report.succeeded == 1
        assert [r.record_id for r in prompt_executor.requests] == ["prompt-1"]
        assert await store.get_schedule("broken") is None

    @pytest.mark.asyncio
    async def test_one_record_error_does_not_stop_others(
        self, store, prompt_executor, make_prompt_record, clock
    ):
        lock = ExplodingLock(StoreLeaseLock(store), bad_id="bad")
        dispatcher = ScheduleDispatcher(
            store, {ActionKind.PROMPT: prompt_executor}, lock=lock, clock=clock
        )
        await store.put_schedule(make_prompt_record(id="bad"))
        await store.put_schedule(make_prompt_record(id="good"))

        report = await dispatcher.tick()

        assert report.errors == 1
        assert report.succeeded == 1
        assert [r.record_id for r in prompt_executor.requests] == ["good"]


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_overlapping_ticks_run_once(
        self, store, prompt_executor, make_prompt_record, clock
    ):
        prompt_executor.delay = 0.05
        executors = {ActionKind.PROMPT: prompt_executor}
        first = ScheduleDispatcher(store, executors, clock=clock)
        second = ScheduleDispatcher(store, executors, clock=clock)
        await store.put_schedule(make_prompt_record())

        reports = await asyncio.gather(first.tick(), second.tick())

        assert sum(r.executed for r in reports) == 1
        assert len(prompt_executor.requests) == 1
        assert (await store.get_schedule("prompt-1")).run_count == 1

    @pytest.mark.asyncio
    async def test_lease_starts_when_a_queued_record_is_claimed(
        self, store, prompt_executor, make_prompt_record
    ):
        # Real clock: "b" waits behind "a" for most of a lease before its claim
        prompt_executor.delay = 0.8
        executors = {ActionKind.PROMPT: prompt_executor}
        config = SchedulerConfig(execution_timeout=1.0, max_concurrency=1)
        first = ScheduleDispatcher(store, executors, config=config)
        second = ScheduleDispatcher(store, executors, config=config)
        await store.put_schedule(make_prompt_record(id="a"))
        await store.put_schedule(make_prompt_record(id="b"))

        first_run = asyncio.create_task(first.tick())
        await asyncio.sleep(1.2)
        second_report = await second.tick()
        first_report = await first_run

        assert sorted(r.record_id for r in prompt_executor.requests) == ["a", "b"]
        assert first_report.succeeded == 2
        assert second_report.executed == 0
        for record_id in ("a", "b"):
            record = await store.get_schedule(record_id)
            assert record.run_count == 1
            assert record.last_error is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("max_concurrency", "parallel"), [(4, True), (1, False)])
    async def test_max_concurrency(
        self, store, make_prompt_record, clock, max_concurrency, parallel
    ):
        in_flight = 0
        peak = 0

        async def track(request):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.05)
            in_flight -= 1

        dispatcher = ScheduleDispatcher(
            store,
            {ActionKind.PROMPT: HookExecutor(track)},
            config=SchedulerConfig(max_concurrency=max_concurrency),
            clock=clock,
        )
        for i in range(4):
            await store.put_schedule(make_prompt_record(id=f"p{i}"))

        report = await dispatcher.tick()

        assert report.succeeded == 4
        assert (peak > 1) is parallel

    @pytest.mark.asyncio
    async def test_pause_during_run_is_kept(
        self, store, make_prompt_record, clock
    ):
        async def pause(request):
            def mutate(record):
                record.active = False

            await store.update_schedule(request.record_id, mutate)

        dispatcher = ScheduleDispatcher(
            store, {ActionKind.PROMPT: HookExecutor(pause)}, clock=clock
        )
        await store.put_schedule(make_prompt_record())

        await dispatcher.tick()

        record = await store.get_schedule("prompt-1")
        assert record.active is False
        assert record.run_count == 1
        assert record.next_run_at == T0 + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_run_now_during_run_is_kept(self, store, make_prompt_record, clock):
        rearmed = T0 + timedelta(minutes=5)

        async def rearm(request):
            def mutate(record):
                record.next_run_at = rearmed

            await store.update_schedule(request.record_id, mutate)

        dispatcher = ScheduleDispatcher(
            store, {ActionKind.PROMPT: HookExecutor(rearm)}, clock=clock
        )
        await store.put_schedule(make_prompt_record())

        await dispatcher.tick()

        assert (await store.get_schedule("prompt-1")).next_run_at == rearmed

    @pytest.mark.asyncio
    async def test_cancel_during_run_drops_completion(
        self, store, make_prompt_record, clock
    ):
        async def delete(request):
            await store.delete_schedule(request.record_id)

        executor = HookExecutor(delete)
        dispatcher = ScheduleDispatcher(store, {ActionKind.PROMPT: executor}, clock=clock)
        await store.put_schedule(make_prompt_record())

        report = await dispatcher.tick()

        assert executor.calls == 1
        assert report.succeeded == 1
        assert report.outcomes[0].record is None
        assert await store.get_schedule("prompt-1") is None


class TestNotifications:
    @pytest.mark.asyncio
    async def test_flags_select_notifications(
        self, dispatcher, store, notifier, make_prompt_record, make_payment_record
    ):
        await store.put_schedule(make_prompt_record())
        await store.put_schedule(make_payment_record())

        await dispatcher.tick()

        [notification] = notifier.notifications
        assert notification.record_id == "payment-1"
        assert notification.outcome is AttemptStatus.SUCCESS
        assert notification.detail == "tx 0xabc"
        assert notification.keyboard is None

    @pytest.mark.asyncio
    async def test_failed_notification_keeps_the_update(
        self, dispatcher, store, notifier, make_payment_record
    ):
        notifier.fail = True
        await store.put_schedule(make_payment_record())

        report = await dispatcher.tick()

        assert report.succeeded == 1
        assert len(notifier.notifications) == 1
        record = await store.get_schedule("payment-1")
        assert record.run_count == 1
        assert record.next_run_at == T0 + timedelta(weeks=1)

    @pytest.mark.asyncio
    async def test_prompt_thread_is_forwarded(
        self, dispatcher, store, prompt_executor, notifier, make_prompt_record
    ):
        prompt_executor.fail_with = RuntimeError("assistant busy")
        await store.put_schedule(
            make_prompt_record(action=PromptAction(text="Summarize", message_thread_id=7))
        )

        await dispatcher.tick()

        assert prompt_executor.requests[0].message_thread_id == 7
        [notification] = notifier.notifications
        assert notification.message_thread_id == 7
        assert notification.kind is ActionKind.PROMPT


class TestConversationChaining:
    @pytest.mark.asyncio
    async def test_conversation_ref_is_carried_to_next_run(
        self, dispatcher, store, prompt_executor, make_prompt_record, clock
    ):
        await store.put_schedule(make_prompt_record())

        await dispatcher.tick()
        clock.advance(days=1)
        await dispatcher.tick()

        first, second = prompt_executor.requests
        assert first.action.conversation_thread_ref is None
        assert second.action.conversation_thread_ref == "resp_1"

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_ref(
        self, dispatcher, store, prompt_executor, make_prompt_record
    ):
        prompt_executor.fail_with = RuntimeError("assistant busy")
        await store.put_schedule(
            make_prompt_record(
                action=PromptAction(text="Summarize", conversation_thread_ref="resp_0")
            )
        )

        await dispatcher.tick()

        record = await store.get_schedule("prompt-1")
        assert record.action.conversation_thread_ref == "resp_0"


class TestPollLoop:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, store, prompt_executor, make_prompt_record, clock):
        dispatcher = ScheduleDispatcher(
            store,
            {ActionKind.PROMPT: prompt_executor},
            config=SchedulerConfig(poll_interval=0.01, heartbeat_every=2),
            clock=clock,
        )
        await store.put_schedule(make_prompt_record())

        await dispatcher.start()
        await dispatcher.start()
        await asyncio.sleep(0.1)
        await dispatcher.stop()
        await dispatcher.stop()

        assert len(prompt_executor.requests) == 1
        assert (await store.get_schedule("prompt-1")).run_count == 1

    @pytest.mark.asyncio
    async def test_tick_error_is_logged_with_traceback(
        self, store, monkeypatch, caplog, clock
    ):
        dispatcher = ScheduleDispatcher(
            store, config=SchedulerConfig(poll_interval=0.01), clock=clock
        )

        async def broken_tick(now=None):
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(dispatcher, "tick", broken_tick)
        caplog.set_level(logging.ERROR, logger="cadence.scheduling.dispatcher")

        await dispatcher.start()
        await asyncio.sleep(0.05)
        await dispatcher.stop()

        errors = [r for r in caplog.records if r.getMessage() == "schedule_tick_error"]
        assert errors
        assert errors[0].exc_info is not None
        assert errors[0].exc_info[0] is RuntimeError

    @pytest.mark.asyncio
    async def test_lock_ttl_follows_execution_timeout(self, store):
        dispatcher = ScheduleDispatcher(
            store, config=SchedulerConfig(execution_timeout=90)
        )
        assert dispatcher.lock_ttl == timedelta(seconds=90)
