"""Tests for the display connection registry."""

import json
import uuid

import pytest

from roomcast.sse.registry import (
    HEARTBEAT_FRAME,
    ConnectionRegistry,
    QueueSink,
    SinkClosedError,
    SSEClient,
    format_frame,
)


class BrokenSink:
    def send(self, frame: str) -> None:
        raise ConnectionResetError("client went away")


def payload(frame: str) -> dict:
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    return json.loads(frame[len("data: ") :])


@pytest.fixture
def registry() -> ConnectionRegistry:
    return ConnectionRegistry()


class TestQueueSink:
    """Tests for the queue-backed sink."""

    async def test_send_and_get(self):
        sink = QueueSink()
        sink.send("data: {}\n\n")
        assert await sink.get() == "data: {}\n\n"

    def test_full_queue_is_failure(self):
        sink = QueueSink(maxsize=1)
        sink.send("a")
        with pytest.raises(SinkClosedError):
            sink.send("b")

    def test_closed_sink_rejects(self):
        sink = QueueSink()
        sink.close()
        with pytest.raises(SinkClosedError):
            sink.send("a")

    def test_held_frames_follow_leading_frame(self):
        sink = QueueSink()
        sink.hold()
        sink.send("update")
        assert sink.queue.empty()

        sink.release("init")

        assert [sink.queue.get_nowait() for _ in range(2)] == ["init", "update"]
        sink.send("after")
        assert sink.queue.get_nowait() == "after"

    def test_hold_buffer_keeps_room_for_leading_frame(self):
        sink = QueueSink(maxsize=2)
        sink.hold()
        sink.send("a")
        with pytest.raises(SinkClosedError):
            sink.send("b")

        sink.release("init")
        assert sink.queue.qsize() == 2


class TestConnectionRegistry:
    """Tests for registration, fanout and failure isolation."""

    def test_register_and_unregister(self, registry):
        registry.register(SSEClient("c1", "d1", {"cal-1"}, QueueSink()))
        assert registry.get_active_count() == 1

        assert registry.unregister("c1") is True
        assert registry.unregister("c1") is False
        assert registry.get_active_count() == 0

    def test_duplicate_id_replaces(self, registry):
        first, second = QueueSink(), QueueSink()
        registry.register(SSEClient("c1", "d1", {"cal-1"}, first))
        registry.register(SSEClient("c1", "d1", {"cal-1"}, second))

        registry.notify_calendar_update("cal-1", [])

        assert registry.get_active_count() == 1
        assert first.queue.empty()
        assert second.queue.qsize() == 1

    def test_lookup_by_calendar_and_display(self, registry):
        registry.register(SSEClient("c1", "d1", {"cal-1", "cal-2"}, QueueSink()))
        registry.register(SSEClient("c2", "d2", {"cal-2"}, QueueSink()))

        assert [c.id for c in registry.get_clients_by_calendar_id("cal-1")] == ["c1"]
        assert sorted(c.id for c in registry.get_clients_by_calendar_id("cal-2")) == ["c1", "c2"]
        assert [c.id for c in registry.get_clients_by_display_id("d2")] == ["c2"]
        assert registry.get_clients_by_calendar_id("cal-9") == []

    def test_calendar_update_reaches_subscribers_only(self, registry):
        subscribed, other = QueueSink(), QueueSink()
        registry.register(SSEClient("c1", "d1", {"cal-1"}, subscribed))
        registry.register(SSEClient("c2", "d2", {"cal-2"}, other))

        delivered = registry.notify_calendar_update("cal-1", [{"externalId": "a"}])

        assert delivered == 1
        assert payload(subscribed.queue.get_nowait()) == {
            "type": "calendar_update",
            "calendarId": "cal-1",
            "events": [{"externalId": "a"}],
        }
        assert other.queue.empty()

    def test_config_update(self, registry):
        sink = QueueSink()
        registry.register(SSEClient("c1", "d1", set(), sink))

        assert registry.notify_display_config_update("d1", {"theme": "dark"}) == 1
        assert payload(sink.queue.get_nowait()) == {
            "type": "config_update",
            "displayId": "d1",
            "config": {"theme": "dark"},
        }

    def test_failing_client_dropped_others_served(self, registry):
        healthy = QueueSink()
        registry.register(SSEClient("bad", "d1", {"cal-1"}, BrokenSink()))
        registry.register(SSEClient("good", "d2", {"cal-1"}, healthy))

        delivered = registry.notify_calendar_update("cal-1", [])

        assert delivered == 1
        assert healthy.queue.qsize() == 1
        assert [c.id for c in registry.get_clients_by_calendar_id("cal-1")] == ["good"]

    def test_drop_does_not_remove_replacement(self, registry):
        stale = SSEClient("c1", "d1", {"cal-1"}, BrokenSink())
        registry.register(stale)
        registry.register(SSEClient("c1", "d1", {"cal-1"}, QueueSink()))

        assert registry.send(stale, "data: {}\n\n") is False
        assert registry.get_active_count() == 1

    def test_heartbeats(self, registry):
        sink = QueueSink()
        client = SSEClient("c1", "d1", set(), sink)
        before = client.last_heartbeat
        registry.register(client)
        registry.register(SSEClient("c2", "d1", set(), BrokenSink()))

        assert registry.send_heartbeats() == 1
        assert sink.queue.get_nowait() == HEARTBEAT_FRAME
        assert client.last_heartbeat >= before
        assert registry.get_active_count() == 1

    def test_status(self, registry):
        registry.register(SSEClient("c1", "d1", {"cal-2", "cal-1"}, QueueSink()))
        registry.register(SSEClient("c2", "d1", set(), QueueSink()))

        status = registry.get_status()

        assert status["activeConnections"] == 2
        assert status["displays"] == 1
        first = next(c for c in status["clients"] if c["id"] == "c1")
        assert first["calendarIds"] == ["cal-1", "cal-2"]
        assert first["connectedAt"].endswith("Z")

    def test_clear_closes_sinks(self, registry):
        sink = QueueSink()
        registry.register(SSEClient("c1", "d1", set(), sink))

        registry.clear()

        assert registry.get_active_count() == 0
        assert sink.closed is True

    def test_calendar_ids_normalized_to_strings(self):
        calendar_id = uuid.uuid4()
        client = SSEClient("c1", "d1", {calendar_id}, QueueSink())
        assert client.calendar_ids == frozenset({str(calendar_id)})


def test_format_frame_is_compact():
    assert format_frame({"a": 1, "b": [1, 2]}) == 'data: {"a":1,"b":[1,2]}\n\n'
