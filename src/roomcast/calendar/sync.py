"""Calendar synchronization service.

Converges the local event cache of one calendar to the provider's current
state and pushes the result to connected displays.

## Sync Process

1. Claim the calendar: set SYNCING only if it is not already syncing
2. Decrypt and validate the stored credentials
3. Fetch events over `[now - cache_past_days, now + cache_future_days]`
4. Diff against cached events overlapping the same window, by external id:
   - creates: fetched only
   - updates: both sides, title/start/end/location/organizer differ
   - deletes: cached only
5. Apply the diff and the new calendar state in one transaction
6. If anything changed, push the full current event list of the window
   to subscribed displays

## State Machine

```
IDLE ──claim──▶ SYNCING ──success──▶ IDLE
                   │
                   └──failure──▶ ERROR ──next success──▶ IDLE
```

## Scheduling

| Outcome | next_sync_at |
|---------|--------------|
| success | now + sync_interval_seconds |
| rate_limit | now + provider retry-after |
| any other failure | now + min(60s * 2^consecutive_errors, 1800s) |

Failures never disable a calendar; it keeps retrying on the schedule.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError
from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from roomcast.calendar.queries import load_window_events, serialize_event
from roomcast.database.encryption import CredentialCodec, DecryptionError, get_codec
from roomcast.database.models import Calendar, CalendarEvent, SyncStatus
from roomcast.models.event import DateRange, ExternalEvent, isoformat_utc
from roomcast.providers.base import ErrorKind, ProviderAdapter, ProviderError
from roomcast.providers.credentials import parse_credentials
from roomcast.providers.factory import get_provider_adapter

if TYPE_CHECKING:
    from roomcast.sse.registry import ConnectionRegistry

logger = logging.getLogger(__name__)

BACKOFF_BASE_SECONDS = 60
BACKOFF_MAX_SECONDS = 1800


def compute_backoff(consecutive_errors: int) -> int:
    """Seconds to wait after `consecutive_errors` failures in a row."""
    # 2**5 * 60 already exceeds the cap
    exponent = min(max(consecutive_errors, 0), 6)
    return min(BACKOFF_BASE_SECONDS * 2**exponent, BACKOFF_MAX_SECONDS)


class SyncOutcome(str, Enum):
    """How a sync run ended."""

    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"
    NOT_FOUND = "not_found"


@dataclass
class SyncResult:
    """Result of one calendar sync run."""

    calendar_id: uuid.UUID
    outcome: SyncOutcome
    calendar_name: str | None = None
    created: int = 0
    updated: int = 0
    deleted: int = 0
    pruned: int = 0
    total: int = 0
    error: str | None = None
    error_kind: ErrorKind | None = None
    next_sync_at: datetime | None = None
    synced_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success(self) -> bool:
        return self.outcome is SyncOutcome.SUCCESS

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.deleted)

    def to_dict(self) -> dict[str, Any]:
        return {
            "calendarId": str(self.calendar_id),
            "calendarName": self.calendar_name,
            "outcome": self.outcome.value,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "pruned": self.pruned,
            "total": self.total,
            "error": self.error,
            "errorKind": self.error_kind.value if self.error_kind else None,
            "nextSyncAt": isoformat_utc(self.next_sync_at) if self.next_sync_at else None,
        }


@dataclass
class SyncPlan:
    """Minimal write set that converges the cache to the fetched events."""

    creates: list[ExternalEvent] = field(default_factory=list)
    updates: list[tuple[CalendarEvent, ExternalEvent]] = field(default_factory=list)
    deletes: list[CalendarEvent] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.creates or self.updates or self.deletes)


def has_changed(cached: CalendarEvent, event: ExternalEvent) -> bool:
    """True if any displayed field differs between cache and provider."""
    return (
        cached.title != event.title
        or cached.start_time != event.start
        or cached.end_time != event.end
        or cached.location != event.location
        or cached.organizer != event.organizer
    )


def diff_events(cached: list[CalendarEvent], fetched: list[ExternalEvent]) -> SyncPlan:
    """Compare cached rows and fetched events by external id.

    When the provider repeats an external id, the last occurrence wins.
    Output order follows the fetched list, then the cached list.
    """
    fetched_by_id = {event.external_id: event for event in fetched}
    cached_by_id = {row.external_id: row for row in cached}

    plan = SyncPlan()
    for external_id, event in fetched_by_id.items():
        row = cached_by_id.get(external_id)
        if row is None:
            plan.creates.append(event)
        elif has_changed(row, event):
            plan.updates.append((row, event))

    plan.deletes = [row for external_id, row in cached_by_id.items() if external_id not in fetched_by_id]
    return plan


def _apply_event(row: CalendarEvent, event: ExternalEvent) -> None:
    row.title = event.title
    row.description = event.description
    row.location = event.location
    row.organizer = event.organizer
    row.attendee_count = event.attendee_count
    row.start_time = event.start
    row.end_time = event.end
    row.is_all_day = event.is_all_day
    row.is_recurring = event.is_recurring
    row.recurrence_id = event.recurrence_id
    row.raw_data = event.raw_data if isinstance(event.raw_data, dict) else None


class SyncReconciler:
    """Runs sync cycles for individual calendars.

    The reconciler is the single place where sync failures are caught:
    `run` always returns a `SyncResult` and never raises.

    Example:
        ```python
        reconciler = SyncReconciler(get_session_factory(), registry=registry)

        result = await reconciler.run(calendar_id)
        if not result.success:
            print(result.error_kind, result.error)
        ```
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ConnectionRegistry | None = None,
        codec: CredentialCodec | None = None,
        adapter_factory: Callable[..., ProviderAdapter] = get_provider_adapter,
        adapter_options: dict[str, Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize the reconciler.

        Args:
            session_factory: Factory for database sessions
            registry: Connection registry to notify (None disables pushes)
            codec: Credential codec (defaults to the configured one)
            adapter_factory: Returns an adapter for a provider kind
            adapter_options: Keyword arguments for every adapter
            clock: Returns the current UTC time
        """
        self.session_factory = session_factory
        self.registry = registry
        self._codec = codec
        self.adapter_factory = adapter_factory
        self.adapter_options = adapter_options or {}
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def codec(self) -> CredentialCodec:
        if self._codec is None:
            self._codec = get_codec()
        return self._codec

    async def run(self, calendar_id: uuid.UUID) -> SyncResult:
        """Run one sync cycle for a calendar.

        Args:
            calendar_id: Calendar to sync

        Returns:
            SyncResult; `skipped` if another run holds the calendar
        """
        now = self.clock()

        calendar = await self._claim(calendar_id, now)
        if calendar is None:
            return await self._unclaimed_result(calendar_id)

        try:
            return await self._sync(calendar, now)
        except Exception as e:
            return await self._record_failure(calendar, e)

    async def _claim(self, calendar_id: uuid.UUID, now: datetime) -> Calendar | None:
        """Atomically move the calendar to SYNCING.

        Returns None if it does not exist or another run already holds it.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                update(Calendar)
                .where(
                    Calendar.id == calendar_id,
                    Calendar.sync_status != SyncStatus.SYNCING.value,
                )
                .values(sync_status=SyncStatus.SYNCING.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount != 1:
                return None
            return await session.get(Calendar, calendar_id)

    async def _unclaimed_result(self, calendar_id: uuid.UUID) -> SyncResult:
        async with self.session_factory() as session:
            calendar = await session.get(Calendar, calendar_id)

        if calendar is None:
            logger.warning("Sync requested for unknown calendar %s", calendar_id)
            return SyncResult(calendar_id, SyncOutcome.NOT_FOUND, error="Calendar not found")

        logger.info("Calendar %s is already syncing, skipping", calendar.name)
        return SyncResult(calendar_id, SyncOutcome.SKIPPED, calendar_name=calendar.name)

    def _load_credentials(self, calendar: Calendar) -> Any:
        try:
            data = self.codec.decrypt(calendar.credentials_encrypted)
        except DecryptionError:
            logger.error("Credential decryption failed for calendar %s", calendar.id)
            raise

        try:
            credentials = parse_credentials(data)
        except ValidationError as e:
            raise ValueError(f"Stored credentials are invalid: {e.error_count()} validation error(s)") from None

        if credentials.provider != calendar.provider:
            raise ValueError(
                f"Credentials are for {credentials.provider}, calendar provider is {calendar.provider}"
            )
        return credentials

    async def _sync(self, calendar: Calendar, now: datetime) -> SyncResult:
        credentials = self._load_credentials(calendar)
        window = DateRange(
            now - timedelta(days=calendar.cache_past_days),
            now + timedelta(days=calendar.cache_future_days),
        )

        async with self.adapter_factory(calendar.provider, **self.adapter_options) as adapter:
            fetched = await adapter.fetch_events(credentials, window)

        async with self.session_factory() as session:
            async with session.begin():
                pruned = await self._prune(session, calendar.id, window)
                cached = await load_window_events(session, [calendar.id], window)
                plan = diff_events(cached, fetched)

                for event in plan.creates:
                    row = CalendarEvent(calendar_id=calendar.id, external_id=event.external_id)
                    _apply_event(row, event)
                    session.add(row)
                for row, event in plan.updates:
                    _apply_event(row, event)
                for row in plan.deletes:
                    await session.delete(row)

                next_sync_at = now + timedelta(seconds=calendar.sync_interval_seconds)
                await session.execute(
                    update(Calendar)
                    .where(Calendar.id == calendar.id)
                    .values(
                        sync_status=SyncStatus.IDLE.value,
                        last_sync_at=now,
                        last_sync_error=None,
                        last_error_kind=None,
                        consecutive_errors=0,
                        next_sync_at=next_sync_at,
                        updated_at=self.clock(),
                    )
                    .execution_options(synchronize_session=False)
                )

        result = SyncResult(
            calendar.id,
            SyncOutcome.SUCCESS,
            calendar_name=calendar.name,
            created=len(plan.creates),
            updated=len(plan.updates),
            deleted=len(plan.deletes),
            pruned=pruned,
            total=len({event.external_id for event in fetched}),
            next_sync_at=next_sync_at,
        )
        logger.info(
            "Synced calendar %s: %d created, %d updated, %d deleted, %d total",
            calendar.name,
            result.created,
            result.updated,
            result.deleted,
            result.total,
        )

        if result.changed:
            await self._notify(calendar.id, window)
        return result

    async def _prune(self, session: AsyncSession, calendar_id: uuid.UUID, window: DateRange) -> int:
        """Delete cached events that no longer touch the cache window."""
        result = await session.execute(
            delete(CalendarEvent)
            .where(
                CalendarEvent.calendar_id == calendar_id,
                or_(CalendarEvent.end_time < window.start, CalendarEvent.start_time > window.end),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def _notify(self, calendar_id: uuid.UUID, window: DateRange) -> None:
        if self.registry is None:
            return
        async with self.session_factory() as session:
            events = await load_window_events(session, [calendar_id], window)
        delivered = self.registry.notify_calendar_update(
            str(calendar_id),
            [serialize_event(event) for event in events],
        )
        logger.debug("Pushed %d events of calendar %s to %d client(s)", len(events), calendar_id, delivered)

    async def _record_failure(self, calendar: Calendar, error: Exception) -> SyncResult:
        kind = error.kind if isinstance(error, ProviderError) else ErrorKind.UNKNOWN
        message = str(error) or error.__class__.__name__
        now = self.clock()

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    current = await session.scalar(
                        select(Calendar.consecutive_errors).where(Calendar.id == calendar.id)
                    )
                    consecutive_errors = (current or 0) + 1
                    retry_after = getattr(error, "retry_after", None)
                    if kind is ErrorKind.RATE_LIMIT and retry_after is not None:
                        delay = max(retry_after, 1)
                    else:
                        delay = compute_backoff(consecutive_errors)
                    next_sync_at = now + timedelta(seconds=delay)

                    await session.execute(
                        update(Calendar)
                        .where(Calendar.id == calendar.id)
                        .values(
                            sync_status=SyncStatus.ERROR.value,
                            last_sync_error=message[:2000],
                            last_error_kind=kind.value,
                            consecutive_errors=consecutive_errors,
                            next_sync_at=next_sync_at,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
        except Exception:
            logger.exception("Could not record sync failure for calendar %s", calendar.id)
            return SyncResult(
                calendar.id,
                SyncOutcome.ERROR,
                calendar_name=calendar.name,
                error=message,
                error_kind=kind,
            )

        if isinstance(error, ProviderError):
            logger.warning(
                "Sync failed for calendar %s (%s, %d in a row), next attempt at %s: %s",
                calendar.name,
                kind.value,
                consecutive_errors,
                isoformat_utc(next_sync_at),
                message,
            )
        else:
            logger.exception(
                "Sync failed for calendar %s (%d in a row), next attempt at %s",
                calendar.name,
                consecutive_errors,
                isoformat_utc(next_sync_at),
                exc_info=error,
            )

        return SyncResult(
            calendar.id,
            SyncOutcome.ERROR,
            calendar_name=calendar.name,
            error=message,
            error_kind=kind,
            next_sync_at=next_sync_at,
        )
