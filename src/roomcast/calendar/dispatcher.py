"""Sync dispatch: decides which calendars sync on each scheduler tick.

Each tick:
1. Recovers calendars stuck in SYNCING (a crashed worker never released
   them) by moving them to ERROR and making them due immediately
2. Selects up to `batch_size` enabled, idle-or-failed calendars whose
   `next_sync_at` has passed (or was never set)
3. Runs the reconciler for all of them concurrently

Ticks come from the background worker (`PeriodicTask`), the CLI or the
cron endpoint.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from roomcast.calendar.sync import SyncOutcome, SyncReconciler, SyncResult
from roomcast.database.models import Calendar, SyncStatus

logger = logging.getLogger(__name__)

STALE_SYNC_MESSAGE = "Sync timed out (stuck in SYNCING state)"


class SyncDispatcher:
    """Select due calendars and sync them concurrently.

    Example:
        ```python
        dispatcher = SyncDispatcher(session_factory, reconciler)
        results = await dispatcher.dispatch()
        ```
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        reconciler: SyncReconciler,
        batch_size: int = 10,
        stale_after_seconds: int = 300,
        clock: Callable[[], datetime] | None = None,
    ):
        self.session_factory = session_factory
        self.reconciler = reconciler
        self.batch_size = batch_size
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def recover_stale(self, now: datetime) -> int:
        """Release calendars that have been SYNCING for too long."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(Calendar)
                .where(
                    Calendar.sync_status == SyncStatus.SYNCING.value,
                    Calendar.updated_at <= now - self.stale_after,
                )
                .values(
                    sync_status=SyncStatus.ERROR.value,
                    last_sync_error=STALE_SYNC_MESSAGE,
                    next_sync_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        count = result.rowcount or 0
        if count:
            logger.warning("Recovered %d stale SYNCING calendar(s)", count)
        return count

    async def due_calendars(self, now: datetime) -> list[tuple]:
        """(id, name) of calendars due for sync, oldest schedule first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Calendar.id, Calendar.name)
                .where(
                    Calendar.enabled.is_(True),
                    Calendar.sync_status != SyncStatus.SYNCING.value,
                    or_(Calendar.next_sync_at.is_(None), Calendar.next_sync_at <= now),
                )
                .order_by(Calendar.next_sync_at.is_not(None), Calendar.next_sync_at)
                .limit(self.batch_size)
            )
            return [tuple(row) for row in result.all()]

    async def dispatch(self) -> list[SyncResult]:
        """Run one dispatch tick.

        Returns:
            One result per dispatched calendar
        """
        now = self.clock()
        await self.recover_stale(now)

        due = await self.due_calendars(now)
        if not due:
            return []

        logger.info("Dispatching sync for %d calendar(s)", len(due))
        outcomes = await asyncio.gather(
            *(self.reconciler.run(calendar_id) for calendar_id, _ in due),
            return_exceptions=True,
        )

        results: list[SyncResult] = []
        for (calendar_id, name), outcome in zip(due, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Sync dispatch failed for calendar %s", name, exc_info=outcome)
                results.append(
                    SyncResult(calendar_id, SyncOutcome.ERROR, calendar_name=name, error=str(outcome))
                )
            else:
                results.append(outcome)
        return results
