"""Calendar routes.

Trigger syncs, read the cached events of a calendar, and check or explore
provider credentials before a calendar is saved.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from roomcast.api.dependencies import get_adapter_options, get_reconciler
from roomcast.calendar.queries import get_calendar_events, trigger_sync
from roomcast.calendar.sync import SyncReconciler
from roomcast.config import get_settings
from roomcast.database.connection import get_db_session
from roomcast.database.models import Calendar
from roomcast.models.event import DateRange, isoformat_utc
from roomcast.providers.base import ProviderError
from roomcast.providers.credentials import parse_credentials
from roomcast.providers.factory import get_provider_adapter

router = APIRouter()


class CalendarInfoResponse(BaseModel):
    """Sub-calendar offered by a provider."""

    id: str
    name: str
    color: str | None = None


class DiscoverResponse(BaseModel):
    calendars: list[CalendarInfoResponse]


def _validated_credentials(payload: dict[str, Any]) -> Any:
    try:
        return parse_credentials(payload)
    except ValidationError as e:
        raise RequestValidationError(e.errors(include_url=False)) from None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@router.post("/test-connection")
async def test_connection(
    payload: dict[str, Any] = Body(...),
    adapter_options: dict[str, Any] = Depends(get_adapter_options),
) -> dict[str, Any]:
    """Check credentials against the provider without saving anything.

    Provider failures are reported in the body, not as HTTP errors.
    """
    credentials = _validated_credentials(payload)
    async with get_provider_adapter(credentials.provider, **adapter_options) as adapter:
        result = await adapter.test_connection(credentials)
    return result.to_dict()


@router.post("/discover", response_model=DiscoverResponse)
async def discover_calendars(
    payload: dict[str, Any] = Body(...),
    adapter_options: dict[str, Any] = Depends(get_adapter_options),
) -> DiscoverResponse:
    """List the sub-calendars the credentials can read."""
    credentials = _validated_credentials(payload)
    async with get_provider_adapter(credentials.provider, **adapter_options) as adapter:
        if not adapter.supports_calendar_listing():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"{credentials.provider} does not support calendar discovery",
            )
        try:
            calendars = await adapter.list_calendars(credentials)
        except ProviderError as e:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail={"error": str(e), "errorKind": e.kind.value},
            ) from None

    return DiscoverResponse(
        calendars=[CalendarInfoResponse(id=c.id, name=c.name, color=c.color) for c in calendars]
    )


@router.post("/{calendar_id}/sync", status_code=status.HTTP_202_ACCEPTED)
async def request_sync(
    calendar_id: uuid.UUID,
    wait: bool = False,
    db: AsyncSession = Depends(get_db_session),
    reconciler: SyncReconciler = Depends(get_reconciler),
) -> dict[str, Any]:
    """Make a calendar due for sync.

    With `?wait=true` the sync runs within the request and its result is
    returned.
    """
    calendar = await trigger_sync(db, calendar_id)
    if calendar is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Calendar not found",
        )

    if wait:
        result = await reconciler.run(calendar_id)
        return result.to_dict()

    return {
        "calendarId": str(calendar.id),
        "calendarName": calendar.name,
        "nextSyncAt": isoformat_utc(calendar.next_sync_at),
    }


@router.get("/{calendar_id}/events")
async def list_cached_events(
    calendar_id: uuid.UUID,
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    db: AsyncSession = Depends(get_db_session),
) -> dict[str, Any]:
    """Cached events of a calendar overlapping `[start, end]`.

    Defaults to the configured cache window around now.
    """
    calendar = await db.get(Calendar, calendar_id)
    if calendar is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Calendar not found",
        )

    settings = get_settings()
    now = datetime.now(timezone.utc)
    window_start = _as_utc(start) if start else now - timedelta(days=settings.default_cache_past_days)
    window_end = _as_utc(end) if end else now + timedelta(days=settings.default_cache_future_days)
    if window_end < window_start:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="end must not be before start",
        )

    events = await get_calendar_events(db, calendar_id, DateRange(window_start, window_end))
    return {
        "calendarId": str(calendar_id),
        "start": isoformat_utc(window_start),
        "end": isoformat_utc(window_end),
        "events": events,
    }
