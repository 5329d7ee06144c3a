"""Display routes.

Displays connect with their access token and receive a Server-Sent Events
stream: one `init` frame with the current events and configuration, then
`calendar_update` and `config_update` frames as they happen, with
heartbeat comments in between.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, AsyncIterator

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from roomcast.api.dependencies import get_registry
from roomcast.calendar.queries import (
    get_display_by_token,
    get_display_events,
    update_display_config,
)
from roomcast.config import get_settings
from roomcast.database.connection import get_db_session
from roomcast.database.models import Display
from roomcast.sse.registry import ConnectionRegistry, QueueSink, SSEClient, format_frame

logger = logging.getLogger(__name__)

router = APIRouter()

# How often an idle stream checks whether the client went away
DISCONNECT_POLL_SECONDS = 1.0

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def _load_display(db: AsyncSession, token: str) -> Display:
    display = await get_display_by_token(db, token)
    if display is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Display not found",
        )
    return display


async def _snapshot(db: AsyncSession, display: Display) -> dict[str, Any]:
    events = await get_display_events(db, display, get_settings().display_event_window_days)
    return {
        "type": "init",
        "displayId": str(display.id),
        "events": events,
        "config": display.config or {},
    }


async def _relay(
    request: Request,
    registry: ConnectionRegistry,
    client: SSEClient,
    sink: QueueSink,
) -> AsyncIterator[str]:
    try:
        while not sink.closed:
            if await request.is_disconnected():
                break
            try:
                frame = await asyncio.wait_for(sink.get(), timeout=DISCONNECT_POLL_SECONDS)
            except asyncio.TimeoutError:
                continue
            yield frame
    finally:
        registry.unregister(client.id)
        sink.close()


@router.get("/display/{token}/events")
async def display_event_stream(
    token: str,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    registry: ConnectionRegistry = Depends(get_registry),
) -> StreamingResponse:
    """Open the live event stream for a display.

    The client is registered, with its sink held, before the snapshot is
    read; frames notified in between follow `init`. The request session
    is closed before streaming starts.
    """
    display = await _load_display(db, token)

    sink = QueueSink(maxsize=get_settings().sse_queue_size)
    sink.hold()
    client = SSEClient(
        id=uuid.uuid4().hex,
        display_id=str(display.id),
        calendar_ids=frozenset(str(c.id) for c in display.calendars if c.enabled),
        sink=sink,
    )
    registry.register(client)

    try:
        init = await _snapshot(db, display)
    except Exception:
        registry.unregister(client.id)
        raise
    finally:
        await db.close()

    sink.release(format_frame(init))

    return StreamingResponse(
        _relay(request, registry, client, sink),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/display/{token}/events/poll")
async def display_events_poll(
    token: str,
    db: AsyncSession = Depends(get_db_session),
) -> dict[str, Any]:
    """Current events and configuration for displays that cannot hold a stream."""
    display = await _load_display(db, token)
    snapshot = await _snapshot(db, display)
    snapshot.pop("type")
    return snapshot


@router.put("/displays/{display_id}/config")
async def put_display_config(
    display_id: uuid.UUID,
    config: dict[str, Any] = Body(...),
    db: AsyncSession = Depends(get_db_session),
    registry: ConnectionRegistry = Depends(get_registry),
) -> dict[str, Any]:
    """Store a display's configuration and push it to its open sessions."""
    display = await update_display_config(db, display_id, config)
    if display is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Display not found",
        )

    delivered = registry.notify_display_config_update(str(display.id), display.config)
    logger.info("Updated config of display %s (pushed to %d client(s))", display.name, delivered)
    return {"id": str(display.id), "config": display.config, "delivered": delivered}
