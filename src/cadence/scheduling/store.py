"""Persistence for schedule records and wizard sessions.

Both live in the ``kv_entries`` table as JSON documents:

- ``schedules``: keyed by record id
- ``pending``: keyed by ``pending_key(group_id, creator_id)``

Every write bumps the row's ``revision``. ``compare_and_set_schedule`` only
writes when the revision still matches what the caller read, which is the
single-key read-modify-write primitive the dispatcher's lock relies on.
"""

from __future__ import annotations

import json
import logging
import struct
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from cadence.db import Database
from cadence.scheduling.errors import StorageError
from cadence.scheduling.types import ActionKind, PendingWizardState, ScheduleRecord

logger = logging.getLogger(__name__)

SCHEDULES_NAMESPACE = "schedules"
PENDING_NAMESPACE = "pending"

# Conflicting writers to one record before update_schedule gives up
CAS_ATTEMPTS = 5


def pending_key(group_id: int, creator_id: int) -> str:
    """Fixed-width key for a wizard session.

    Both ids are packed as big-endian signed 64-bit integers, so negative
    chat ids (groups) never collide with positive ones.
    """
    return struct.pack(">qq", group_id, creator_id).hex()


class ScheduleStore:
    """Schedule and wizard-session storage over a key-value table."""

    def __init__(self, database: Database) -> None:
        self._db = database

    # -- raw key-value access -------------------------------------------------

    async def _get_raw(self, namespace: str, key: str) -> tuple[str, int] | None:
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    text(
                        "SELECT value, revision FROM kv_entries "
                        "WHERE namespace = :ns AND key = :key"
                    ),
                    {"ns": namespace, "key": key},
                )
                row = result.fetchone()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read {namespace}/{key}: {e}") from e
        if row is None:
            return None
        return row[0], int(row[1])

    async def _scan_raw(self, namespace: str) -> list[tuple[str, str]]:
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    text(
                        "SELECT key, value FROM kv_entries "
                        "WHERE namespace = :ns ORDER BY key"
                    ),
                    {"ns": namespace},
                )
                rows = result.fetchall()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to scan {namespace}: {e}") from e
        return [(row[0], row[1]) for row in rows]

    async def _put_raw(self, namespace: str, key: str, value: str) -> None:
        params = {
            "ns": namespace,
            "key": key,
            "value": value,
            "now": datetime.now(UTC).isoformat(),
        }
        update = text(
            "UPDATE kv_entries SET value = :value, revision = revision + 1, "
            "updated_at = :now WHERE namespace = :ns AND key = :key"
        )
        try:
            async with self._db.session() as session:
                r = await session.execute(update, params)
                if r.rowcount == 0:
                    await session.execute(
                        text(
                            "INSERT INTO kv_entries "
                            "(namespace, key, value, revision, updated_at) "
                            "VALUES (:ns, :key, :value, 1, :now)"
                        ),
                        params,
                    )
        except IntegrityError:
            # Lost an insert race; the row exists now, so overwrite it
            try:
                async with self._db.session() as session:
                    await session.execute(update, params)
            except SQLAlchemyError as e:
                raise StorageError(f"Failed to write {namespace}/{key}: {e}") from e
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to write {namespace}/{key}: {e}") from e

    async def _delete_raw(self, namespace: str, key: str) -> bool:
        try:
            async with self._db.session() as session:
                r = await session.execute(
                    text("DELETE FROM kv_entries WHERE namespace = :ns AND key = :key"),
                    {"ns": namespace, "key": key},
                )
                return r.rowcount > 0
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to delete {namespace}/{key}: {e}") from e

    # -- schedules ------------------------------------------------------------

    async def put_schedule(self, record: ScheduleRecord) -> None:
        """Insert or overwrite a schedule record.

        Raises:
            StorageError: On serialization or database failure.
        """
        await self._put_raw(SCHEDULES_NAMESPACE, record.id, _encode_record(record))

    async def get_schedule(self, record_id: str) -> ScheduleRecord | None:
        """Fetch a record; missing and unreadable records are both None."""
        versioned = await self.get_schedule_versioned(record_id)
        return versioned[0] if versioned else None

    async def get_schedule_versioned(
        self, record_id: str
    ) -> tuple[ScheduleRecord, int] | None:
        """Fetch a record together with its current revision."""
        raw = await self._get_raw(SCHEDULES_NAMESPACE, record_id)
        if raw is None:
            return None
        value, revision = raw
        record = _decode_record(record_id, value)
        if record is None:
            return None
        return record, revision

    async def compare_and_set_schedule(
        self, record: ScheduleRecord, expected_revision: int
    ) -> bool:
        """Overwrite ``record`` only if its stored revision is unchanged.

        Returns:
            True if the write happened, False if another writer got there
            first (or the record was deleted).
        """
        try:
            async with self._db.session() as session:
                r = await session.execute(
                    text(
                        "UPDATE kv_entries SET value = :value, "
                        "revision = revision + 1, updated_at = :now "
                        "WHERE namespace = :ns AND key = :key "
                        "AND revision = :expected"
                    ),
                    {
                        "ns": SCHEDULES_NAMESPACE,
                        "key": record.id,
                        "value": _encode_record(record),
                        "now": datetime.now(UTC).isoformat(),
                        "expected": expected_revision,
                    },
                )
                return r.rowcount == 1
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to update schedule {record.id}: {e}") from e

    async def update_schedule(
        self,
        record_id: str,
        mutate: Callable[[ScheduleRecord], None],
        *,
        attempts: int = CAS_ATTEMPTS,
    ) -> ScheduleRecord | None:
        """Read-modify-write a record, retrying when a concurrent write wins.

        ``mutate`` edits the record in place and may raise to abort without
        writing. Returns the written record, or None if it does not exist.

        Raises:
            StorageError: If every attempt lost a race.
        """
        for _ in range(attempts):
            versioned = await self.get_schedule_versioned(record_id)
            if versioned is None:
                return None
            record, revision = versioned
            mutate(record)
            if await self.compare_and_set_schedule(record, revision):
                return record
            logger.debug("schedule_update_conflict", extra={"schedule.id": record_id})
        raise StorageError(
            f"Gave up updating schedule {record_id} after {attempts} conflicting writes"
        )

    async def delete_schedule(self, record_id: str) -> bool:
        return await self._delete_raw(SCHEDULES_NAMESPACE, record_id)

    async def list_schedules(self) -> list[ScheduleRecord]:
        """All readable records, active or not."""
        records: list[ScheduleRecord] = []
        for key, value in await self._scan_raw(SCHEDULES_NAMESPACE):
            record = _decode_record(key, value)
            if record is not None:
                records.append(record)
        return records

    async def list_schedules_for_group(
        self, group_id: int, kind: ActionKind | None = None
    ) -> list[ScheduleRecord]:
        """Active records belonging to ``group_id``.

        This is a full scan; schedule counts are expected to stay small.
        """
        return [
            r
            for r in await self.list_schedules()
            if r.group_id == group_id
            and r.active
            and (kind is None or r.kind == kind)
        ]

    async def list_due(self, now: datetime) -> list[ScheduleRecord]:
        """Active records whose next run has passed and that are not locked."""
        due = [r for r in await self.list_schedules() if r.is_due(now)]
        due.sort(key=lambda r: r.next_run_at or now)
        return due

    async def get_stats(self) -> dict[str, Any]:
        records = await self.list_schedules()
        by_kind: dict[str, int] = {}
        for record in records:
            by_kind[record.kind.value] = by_kind.get(record.kind.value, 0) + 1
        return {
            "total": len(records),
            "active": sum(1 for r in records if r.active),
            "failing": sum(
                1 for r in records if r.active and r.last_error is not None
            ),
            "by_kind": by_kind,
        }

    # -- wizard sessions ------------------------------------------------------

    async def put_pending(self, state: PendingWizardState) -> None:
        try:
            value = json.dumps(state.to_dict())
        except (TypeError, ValueError) as e:
            raise StorageError(f"Failed to serialize wizard session: {e}") from e
        await self._put_raw(
            PENDING_NAMESPACE, pending_key(state.group_id, state.creator_id), value
        )

    async def get_pending(
        self, group_id: int, creator_id: int
    ) -> PendingWizardState | None:
        key = pending_key(group_id, creator_id)
        raw = await self._get_raw(PENDING_NAMESPACE, key)
        if raw is None:
            return None
        try:
            return PendingWizardState.from_dict(json.loads(raw[0]))
        except (KeyError, TypeError, ValueError, ArithmeticError):
            logger.warning(
                "wizard_session_unreadable",
                extra={"wizard.key": key},
                exc_info=True,
            )
            return None

    async def delete_pending(self, group_id: int, creator_id: int) -> bool:
        return await self._delete_raw(
            PENDING_NAMESPACE, pending_key(group_id, creator_id)
        )


def _encode_record(record: ScheduleRecord) -> str:
    try:
        return json.dumps(record.to_dict())
    except (TypeError, ValueError) as e:
        raise StorageError(f"Failed to serialize schedule {record.id}: {e}") from e


def _decode_record(key: str, value: str) -> ScheduleRecord | None:
    try:
        return ScheduleRecord.from_dict(json.loads(value))
    except (KeyError, TypeError, ValueError, AttributeError, ArithmeticError):
        logger.warning(
            "schedule_record_unreadable",
            extra={"schedule.id": key},
            exc_info=True,
        )
        return None
