"""Health and diagnostics routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from roomcast.api.dependencies import get_registry
from roomcast.calendar.queries import get_cache_overview
from roomcast.config import get_settings
from roomcast.database.connection import get_db_session
from roomcast.sse.registry import ConnectionRegistry

router = APIRouter()


@router.get("")
async def health_check(
    db: AsyncSession = Depends(get_db_session),
    registry: ConnectionRegistry = Depends(get_registry),
) -> dict[str, Any]:
    """Cache counts, per-calendar sync state and live connections.

    Status is `degraded` while any calendar is failing.
    """
    overview = await get_cache_overview(db)
    return {
        "status": "degraded" if overview["failingCalendars"] else "healthy",
        "version": get_settings().app_version,
        "cache": overview,
        "connections": registry.get_status(),
    }


@router.get("/connections")
async def connection_status(
    registry: ConnectionRegistry = Depends(get_registry),
) -> dict[str, Any]:
    """Connected display clients."""
    return registry.get_status()
