"""In-process registry of connected display clients.

Every open display stream registers one `SSEClient`. Sync runs and admin
edits call the `notify_*` methods, which fan a push frame out to every
client subscribed to the affected calendar or display.

## Wire Format

Frames are Server-Sent Events, one JSON document per frame:

| Frame | Payload |
|-------|---------|
| init | `{"type": "init", "displayId", "events": [...], "config": {...}}` |
| calendar_update | `{"type": "calendar_update", "calendarId", "events": [...]}` |
| config_update | `{"type": "config_update", "displayId", "config": {...}}` |

Heartbeats are SSE comments (`: heartbeat`), ignored by browsers but
enough to keep proxies from closing idle connections.

## Failure Policy

A sink that raises on write is dead: the client is removed at once and
never retried, and the error goes no further. One broken display never
blocks delivery to the others.

## Concurrency

The client table is guarded by a lock. Fanout works on a snapshot taken
under the lock, so clients can connect and disconnect while a notify is
in progress. The registry is single-process; multi-instance deployments
need an external fanout layer.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from roomcast.models.event import isoformat_utc

logger = logging.getLogger(__name__)

HEARTBEAT_FRAME = ": heartbeat\n\n"


def format_frame(payload: dict[str, Any]) -> str:
    """Serialize a payload as one SSE `data:` frame."""
    return f"data: {json.dumps(payload, separators=(',', ':'), default=str)}\n\n"


class SinkClosedError(Exception):
    """Raised when writing to a sink that can no longer accept frames."""


class ClientSink(Protocol):
    """Anything that accepts serialized frames for one client."""

    def send(self, frame: str) -> None: ...


class QueueSink:
    """Sink backed by a bounded `asyncio.Queue`.

    The streaming response drains the queue. A full queue means the client
    stopped reading, and is treated as a failed write.

    A held sink buffers frames until `release()`, which writes a leading
    frame (the stream's snapshot) ahead of everything buffered.
    """

    def __init__(self, maxsize: int = 100):
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        self.maxsize = maxsize
        self.closed = False
        self._held: list[str] | None = None

    def send(self, frame: str) -> None:
        if self.closed:
            raise SinkClosedError("Sink is closed")
        if self._held is not None:
            # One slot stays free for the leading frame
            if len(self._held) >= self.maxsize - 1:
                raise SinkClosedError("Client is not reading (hold buffer full)")
            self._held.append(frame)
            return
        try:
            self.queue.put_nowait(frame)
        except asyncio.QueueFull:
            raise SinkClosedError("Client is not reading (queue full)") from None

    def hold(self) -> None:
        if self._held is None:
            self._held = []

    def release(self, first: str | None = None) -> None:
        held, self._held = self._held or [], None
        for frame in ([first] if first is not None else []) + held:
            self.send(frame)

    def close(self) -> None:
        self.closed = True

    async def get(self) -> str:
        return await self.queue.get()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SSEClient:
    """One connected display session."""

    id: str
    display_id: str
    calendar_ids: frozenset[str]
    sink: ClientSink
    connected_at: datetime = field(default_factory=_utcnow)
    last_heartbeat: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        self.calendar_ids = frozenset(str(c) for c in self.calendar_ids)

    def to_status(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "displayId": self.display_id,
            "calendarIds": sorted(self.calendar_ids),
            "connectedAt": isoformat_utc(self.connected_at),
            "lastHeartbeat": isoformat_utc(self.last_heartbeat),
        }


class ConnectionRegistry:
    """Thread-safe table of connected display clients.

    Construct one per process (the API lifespan does) and pass it to the
    reconciler and the routes that need it.

    Example:
        ```python
        registry = ConnectionRegistry()
        sink = QueueSink()
        registry.register(SSEClient("c1", "display-1", {"cal-1"}, sink))

        registry.notify_calendar_update("cal-1", events)
        frame = await sink.get()
        ```
    """

    def __init__(self) -> None:
        self._clients: dict[str, SSEClient] = {}
        self._lock = threading.Lock()

    def register(self, client: SSEClient) -> None:
        """Add a client; an existing entry with the same id is replaced."""
        with self._lock:
            replaced = client.id in self._clients
            self._clients[client.id] = client
            count = len(self._clients)
        if replaced:
            logger.warning("Client %s registered twice, replacing previous entry", client.id)
        logger.info("Client %s registered for display %s (%d active)", client.id, client.display_id, count)

    def unregister(self, client_id: str) -> bool:
        """Remove a client. Unknown ids are ignored.

        Returns:
            True if a client was removed
        """
        with self._lock:
            client = self._clients.pop(client_id, None)
            count = len(self._clients)
        if client is not None:
            logger.info("Client %s unregistered (%d active)", client_id, count)
        return client is not None

    def get_active_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def get_clients_by_calendar_id(self, calendar_id: str) -> list[SSEClient]:
        with self._lock:
            return [c for c in self._clients.values() if str(calendar_id) in c.calendar_ids]

    def get_clients_by_display_id(self, display_id: str) -> list[SSEClient]:
        with self._lock:
            return [c for c in self._clients.values() if c.display_id == str(display_id)]

    def notify_calendar_update(self, calendar_id: str, events: list[dict[str, Any]]) -> int:
        """Push the full event list of a calendar to its subscribers.

        Returns:
            Number of clients the frame was delivered to
        """
        frame = format_frame({"type": "calendar_update", "calendarId": str(calendar_id), "events": events})
        return self._broadcast(self.get_clients_by_calendar_id(calendar_id), frame)

    def notify_display_config_update(self, display_id: str, config: dict[str, Any] | None) -> int:
        """Push a display's new configuration to its open sessions."""
        frame = format_frame({"type": "config_update", "displayId": str(display_id), "config": config})
        return self._broadcast(self.get_clients_by_display_id(display_id), frame)

    def send(self, client: SSEClient, frame: str) -> bool:
        """Write one frame; a failing client is dropped.

        Returns:
            True if the frame was written
        """
        try:
            client.sink.send(frame)
        except Exception as e:
            self._drop(client, e)
            return False
        return True

    def send_heartbeats(self) -> int:
        """Write a heartbeat to every client.

        Returns:
            Number of clients still connected
        """
        with self._lock:
            clients = list(self._clients.values())

        now = _utcnow()
        alive = 0
        for client in clients:
            if self.send(client, HEARTBEAT_FRAME):
                client.last_heartbeat = now
                alive += 1
        return alive

    def get_status(self) -> dict[str, Any]:
        """Connection snapshot for diagnostics."""
        with self._lock:
            clients = list(self._clients.values())
        return {
            "activeConnections": len(clients),
            "displays": len({c.display_id for c in clients}),
            "clients": [c.to_status() for c in clients],
        }

    def clear(self) -> None:
        """Drop every client and close their sinks (shutdown)."""
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            close = getattr(client.sink, "close", None)
            if close is not None:
                close()
        if clients:
            logger.info("Closed %d client connection(s)", len(clients))

    def _broadcast(self, clients: list[SSEClient], frame: str) -> int:
        return sum(1 for client in clients if self.send(client, frame))

    def _drop(self, client: SSEClient, error: Exception) -> None:
        with self._lock:
            # Only remove the entry that failed, not a newer one with the same id
            if self._clients.get(client.id) is client:
                del self._clients[client.id]
        logger.warning("Dropped client %s of display %s: %s", client.id, client.display_id, error)
