"""Read and trigger operations on the calendar cache.

These are the entry points the admin surface and the display stream use:
trigger a sync, read cached events, load a display with its calendars and
store display configuration. Events leave this module as camelCase dicts,
the same shape that is pushed to display clients.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from roomcast.database.models import Calendar, CalendarEvent, Display, SyncStatus
from roomcast.models.event import DateRange, isoformat_utc

logger = logging.getLogger(__name__)


def serialize_event(event: CalendarEvent, calendar: Calendar | None = None) -> dict[str, Any]:
    """Convert a cached event to its wire representation."""
    data: dict[str, Any] = {
        "id": str(event.id),
        "calendarId": str(event.calendar_id),
        "externalId": event.external_id,
        "title": event.title,
        "description": event.description,
        "location": event.location,
        "organizer": event.organizer,
        "attendeeCount": event.attendee_count,
        "startTime": isoformat_utc(event.start_time),
        "endTime": isoformat_utc(event.end_time),
        "isAllDay": event.is_all_day,
        "isRecurring": event.is_recurring,
        "recurrenceId": event.recurrence_id,
    }
    if calendar is not None:
        data["calendarName"] = calendar.name
        data["calendarColor"] = calendar.color
    return data


def serialize_calendar_state(calendar: Calendar) -> dict[str, Any]:
    """Sync health of one calendar for status screens."""
    return {
        "id": str(calendar.id),
        "name": calendar.name,
        "provider": calendar.provider,
        "enabled": calendar.enabled,
        "syncStatus": calendar.sync_status,
        "lastSyncAt": isoformat_utc(calendar.last_sync_at) if calendar.last_sync_at else None,
        "lastSyncError": calendar.last_sync_error,
        "lastErrorKind": calendar.last_error_kind,
        "consecutiveErrors": calendar.consecutive_errors,
        "nextSyncAt": isoformat_utc(calendar.next_sync_at) if calendar.next_sync_at else None,
    }


async def load_window_events(
    session: AsyncSession,
    calendar_ids: list[uuid.UUID],
    date_range: DateRange,
) -> list[CalendarEvent]:
    """Cached events of the given calendars that overlap the window, by start time."""
    if not calendar_ids:
        return []
    result = await session.execute(
        select(CalendarEvent)
        .where(
            CalendarEvent.calendar_id.in_(calendar_ids),
            CalendarEvent.end_time >= date_range.start,
            CalendarEvent.start_time <= date_range.end,
        )
        .order_by(CalendarEvent.start_time, CalendarEvent.external_id)
    )
    return list(result.scalars().all())


async def trigger_sync(
    session: AsyncSession,
    calendar_id: uuid.UUID,
    now: datetime | None = None,
) -> Calendar | None:
    """Mark a calendar due so the next dispatch picks it up.

    A calendar that is currently syncing is left alone; its running sync
    already covers the request.

    Returns:
        The calendar, or None if it does not exist
    """
    calendar = await session.get(Calendar, calendar_id)
    if calendar is None:
        return None

    if calendar.sync_status == SyncStatus.SYNCING.value:
        logger.info("Calendar %s is already syncing, sync request not queued", calendar.name)
        return calendar

    calendar.next_sync_at = now or datetime.now(timezone.utc)
    await session.commit()
    logger.info("Sync requested for calendar %s (%s)", calendar.name, calendar.id)
    return calendar


async def get_calendar_events(
    session: AsyncSession,
    calendar_id: uuid.UUID,
    date_range: DateRange,
) -> list[dict[str, Any]]:
    """Serialized cached events of one calendar within the window."""
    events = await load_window_events(session, [calendar_id], date_range)
    return [serialize_event(event) for event in events]


async def get_display_by_token(session: AsyncSession, token: str) -> Display | None:
    """Load an enabled display and its calendars by access token."""
    result = await session.execute(
        select(Display)
        .options(selectinload(Display.calendars))
        .where(Display.token == token, Display.enabled.is_(True))
    )
    return result.scalar_one_or_none()


async def get_display_events(
    session: AsyncSession,
    display: Display,
    days: int,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Events of every enabled calendar on a display.

    The window runs from the start of the current UTC day for `days` days,
    so events earlier today stay on screen.
    """
    now = now or datetime.now(timezone.utc)
    day_start = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    calendars = {calendar.id: calendar for calendar in display.calendars if calendar.enabled}
    events = await load_window_events(
        session,
        list(calendars),
        DateRange(day_start, day_start + timedelta(days=days)),
    )
    return [serialize_event(event, calendars[event.calendar_id]) for event in events]


async def update_display_config(
    session: AsyncSession,
    display_id: uuid.UUID,
    config: dict[str, Any],
) -> Display | None:
    """Replace a display's configuration.

    Returns:
        The updated display, or None if it does not exist
    """
    display = await session.get(Display, display_id)
    if display is None:
        return None

    display.config = config
    await session.commit()
    return display


async def get_cache_overview(session: AsyncSession) -> dict[str, Any]:
    """Counts and per-calendar sync state for the health endpoint."""
    calendars = (await session.execute(select(Calendar).order_by(Calendar.name))).scalars().all()
    event_count = await session.scalar(select(func.count()).select_from(CalendarEvent))
    display_count = await session.scalar(select(func.count()).select_from(Display))

    return {
        "calendarCount": len(calendars),
        "eventCount": event_count or 0,
        "displayCount": display_count or 0,
        "failingCalendars": sum(1 for c in calendars if c.consecutive_errors > 0),
        "calendars": [serialize_calendar_state(calendar) for calendar in calendars],
    }
