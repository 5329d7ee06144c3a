"""Live push of calendar changes to connected displays."""

from roomcast.sse.registry import (
    HEARTBEAT_FRAME,
    ClientSink,
    ConnectionRegistry,
    QueueSink,
    SinkClosedError,
    SSEClient,
    format_frame,
)

__all__ = [
    "HEARTBEAT_FRAME",
    "ClientSink",
    "ConnectionRegistry",
    "QueueSink",
    "SSEClient",
    "SinkClosedError",
    "format_frame",
]
