"""User-facing management of existing schedules."""

from __future__ import annotations

import logging

from cadence.scheduling.display import describe
from cadence.scheduling.errors import CadenceError, ScheduleNotFoundError
from cadence.scheduling.keyboards import manage_keyboard, parse_callback
from cadence.scheduling.recurrence import first_occurrence
from cadence.scheduling.store import ScheduleStore
from cadence.scheduling.types import (
    ActionKind,
    Clock,
    ScheduleRecord,
    WizardStep,
    utc_now,
)
from cadence.scheduling.wizard import ScheduleWizard, WizardReply

logger = logging.getLogger(__name__)


class ScheduleManager:
    """List, pause, resume, cancel, re-arm and edit schedules.

    Every operation that names a record takes the acting ``group_id`` and
    refuses records from other groups. Creator-only operations (edit,
    run-now) also take the acting ``user_id``.
    """

    def __init__(
        self,
        store: ScheduleStore,
        wizard: ScheduleWizard | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._wizard = wizard or ScheduleWizard(store, clock=clock)
        self._clock = clock

    async def list_for_group(
        self, group_id: int, kind: ActionKind | None = None
    ) -> list[ScheduleRecord]:
        """Active schedules for a group, soonest first."""
        records = await self._store.list_schedules_for_group(group_id, kind)
        return sorted(
            records,
            key=lambda r: (r.next_run_at is None, r.next_run_at or r.created_at),
        )

    async def listing(
        self, group_id: int, kind: ActionKind | None = None
    ) -> list[WizardReply]:
        """One reply per active schedule, each with its management buttons."""
        return [
            WizardReply(
                text=describe(record),
                keyboard=manage_keyboard(record.kind, record.id, record.active),
                record_id=record.id,
            )
            for record in await self.list_for_group(group_id, kind)
        ]

    async def get(self, record_id: str, group_id: int | None = None) -> ScheduleRecord:
        """Raises ``ScheduleNotFoundError`` when missing or in another group."""
        record = await self._store.get_schedule(record_id)
        if record is None or (group_id is not None and record.group_id != group_id):
            raise ScheduleNotFoundError(f"Schedule {record_id} not found")
        return record

    async def pause(self, record_id: str, group_id: int | None = None) -> ScheduleRecord:
        await self.get(record_id, group_id)

        def mutate(record: ScheduleRecord) -> None:
            record.active = False

        record = await self._update(record_id, mutate)
        logger.info("schedule_paused", extra={"schedule.id": record_id})
        return record

    async def resume(
        self, record_id: str, group_id: int | None = None
    ) -> ScheduleRecord:
        """Re-activate a paused schedule.

        A stale ``next_run_at`` is moved to the first occurrence from now so
        the time paused is not replayed.

        Raises:
            CadenceError: If the schedule already fired its last occurrence.
        """
        await self.get(record_id, group_id)
        now = self._clock()

        def mutate(record: ScheduleRecord) -> None:
            if record.next_run_at is None:
                raise CadenceError("This schedule has finished and cannot be resumed")
            if record.next_run_at < now:
                record.next_run_at = first_occurrence(
                    record.repeat, record.next_run_at, now
                )
            record.active = True

        record = await self._update(record_id, mutate)
        logger.info(
            "schedule_resumed",
            extra={"schedule.id": record_id, "schedule.next_run_at": record.next_run_at},
        )
        return record

    async def toggle(
        self, record_id: str, group_id: int | None = None
    ) -> ScheduleRecord:
        record = await self.get(record_id, group_id)
        if record.active:
            return await self.pause(record_id, group_id)
        return await self.resume(record_id, group_id)

    async def cancel(self, record_id: str, group_id: int | None = None) -> None:
        """Delete a schedule permanently.

        A run already claimed by the dispatcher finishes; its completion
        write is dropped because the record is gone.
        """
        await self.get(record_id, group_id)
        await self._store.delete_schedule(record_id)
        logger.info("schedule_cancelled", extra={"schedule.id": record_id})

    async def run_now(
        self, record_id: str, user_id: int, group_id: int | None = None
    ) -> ScheduleRecord:
        """Make a schedule due immediately so the next tick runs it."""
        record = await self.get(record_id, group_id)
        _require_creator(record, user_id, "run")
        now = self._clock()

        def mutate(current: ScheduleRecord) -> None:
            current.next_run_at = now
            current.active = True

        record = await self._update(record_id, mutate)
        logger.info("schedule_run_now", extra={"schedule.id": record_id})
        return record

    async def begin_edit(
        self,
        record_id: str,
        user_id: int,
        step: WizardStep | None = None,
        group_id: int | None = None,
    ) -> WizardReply:
        """Open a wizard session pre-filled from an existing schedule."""
        record = await self.get(record_id, group_id)
        _require_creator(record, user_id, "edit")
        return await self._wizard.begin_edit(record, step)

    async def handle_callback(
        self, group_id: int, user_id: int, data: str
    ) -> WizardReply:
        """Route a management button (run now, pause/resume, delete, edit).

        Raises:
            CadenceError: For foreign buttons or a refused action.
            ScheduleNotFoundError: If the record is gone or in another group.
        """
        callback = parse_callback(data)
        if callback is None or callback.arg is None:
            raise CadenceError("That button is not a schedule action")
        record_id = callback.arg

        if callback.action == "runnow":
            await self.run_now(record_id, user_id, group_id)
            return WizardReply(text="▶️ Queued to run on the next tick.", record_id=record_id)
        if callback.action == "toggle":
            record = await self.toggle(record_id, group_id)
            verb = "resumed" if record.active else "paused"
            return WizardReply(
                text=f"Schedule {verb}.\n\n{describe(record)}",
                keyboard=manage_keyboard(record.kind, record.id, record.active),
                record_id=record_id,
            )
        if callback.action == "delete":
            await self.cancel(record_id, group_id)
            return WizardReply(text="🗑 Schedule deleted.", record_id=record_id)
        if callback.action == "edit":
            return await self.begin_edit(record_id, user_id, group_id=group_id)
        raise CadenceError(f"Unknown schedule action: {callback.action}")

    async def _update(self, record_id: str, mutate) -> ScheduleRecord:
        record = await self._store.update_schedule(record_id, mutate)
        if record is None:
            raise ScheduleNotFoundError(f"Schedule {record_id} not found")
        return record


def _require_creator(record: ScheduleRecord, user_id: int, verb: str) -> None:
    if record.creator_id != user_id:
        raise CadenceError(f"Only the creator can {verb} this schedule")
