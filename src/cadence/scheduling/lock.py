"""Claiming due records before execution.

The dispatcher only talks to ``ScheduleLock.try_acquire``. The bundled
``StoreLeaseLock`` fences a record by writing ``locked_until`` through the
store's revision compare-and-swap. That is atomic per key within one
database, which is enough for a single dispatcher process. Running several
dispatcher processes against separate stores needs a different
``ScheduleLock`` (e.g. a lease in a shared coordination service).
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Protocol

from cadence.scheduling.store import ScheduleStore

logger = logging.getLogger(__name__)


class ScheduleLock(Protocol):
    async def try_acquire(
        self, record_id: str, ttl: timedelta, *, now: datetime
    ) -> bool:
        """Claim the record's current occurrence for ``ttl``.

        Returns False when the record is no longer due or someone else
        holds an unexpired claim. Contention is never an error.
        """
        ...


class StoreLeaseLock:
    """Optimistic ``locked_until`` lease written with compare-and-swap."""

    def __init__(self, store: ScheduleStore, holder_id: str | None = None) -> None:
        self._store = store
        self.holder_id = holder_id or f"dispatcher-{uuid.uuid4().hex[:8]}"

    async def try_acquire(
        self, record_id: str, ttl: timedelta, *, now: datetime
    ) -> bool:
        versioned = await self._store.get_schedule_versioned(record_id)
        if versioned is None:
            return False
        record, revision = versioned

        # An expired lease counts as abandoned and may be taken over
        if not record.is_due(now):
            logger.debug(
                "schedule_claim_skipped",
                extra={
                    "schedule.id": record_id,
                    "schedule.locked_until": record.locked_until,
                },
            )
            return False

        record.locked_until = now + ttl
        record.scheduler_job_id = self.holder_id
        claimed = await self._store.compare_and_set_schedule(record, revision)
        if not claimed:
            logger.debug("schedule_claim_lost", extra={"schedule.id": record_id})
        return claimed
