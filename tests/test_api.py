"""Tests for the HTTP surface.

The app runs in-process through `httpx.ASGITransport`; the lifespan is not
started, so services are attached to `app.state` by the fixture.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from roomcast.api.app import create_app
from roomcast.calendar.dispatcher import SyncDispatcher
from roomcast.calendar.sync import SyncReconciler
from roomcast.config import get_settings
from roomcast.database.connection import get_db_session
from roomcast.models.event import ExternalEvent
from roomcast.sse.registry import ConnectionRegistry, QueueSink, SSEClient

UTC = timezone.utc
NOW = datetime(2025, 1, 10, 12, 0, tzinfo=UTC)

FEED = """BEGIN:VCALENDAR
BEGIN:VEVENT
UID:evt-1
SUMMARY:Planning
DTSTART:20250115T090000Z
END:VEVENT
END:VCALENDAR
"""


class FakeAdapter:
    def __init__(self, events):
        self.events = events

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return None

    async def fetch_events(self, credentials, date_range):
        return list(self.events)


class AsgiStream:
    """Drives the ASGI app directly so a never-ending response can be read."""

    def __init__(self, app, path):
        self.app = app
        self.scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": path,
            "raw_path": path.encode(),
            "query_string": b"",
            "root_path": "",
            "headers": [(b"host", b"test")],
            "client": ("127.0.0.1", 50000),
            "server": ("test", 80),
        }
        self.messages = asyncio.Queue()
        self.disconnected = asyncio.Event()
        self.request_sent = False
        self.task = None

    async def _receive(self):
        if not self.request_sent:
            self.request_sent = True
            return {"type": "http.request", "body": b"", "more_body": False}
        await self.disconnected.wait()
        return {"type": "http.disconnect"}

    async def _send(self, message):
        await self.messages.put(message)

    def start(self):
        self.task = asyncio.create_task(self.app(self.scope, self._receive, self._send))

    async def next_message(self):
        return await asyncio.wait_for(self.messages.get(), timeout=5)

    async def next_frame(self):
        while True:
            message = await self.next_message()
            body = message.get("body", b"").decode()
            if body.startswith("data: "):
                return json.loads(body.removeprefix("data: "))

    async def disconnect(self):
        self.disconnected.set()
        await asyncio.wait_for(self.task, timeout=5)


@pytest.fixture
async def feed_client():
    """HTTP client that serves FEED for every request."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, text=FEED)))
    yield client
    await client.aclose()


@pytest.fixture
def app(session_factory, codec, feed_client):
    app = create_app()

    async def override_db_session():
        async with session_factory() as session:
            yield session

    start = datetime(2025, 1, 15, 9, tzinfo=UTC)
    adapter = FakeAdapter([ExternalEvent(external_id="a", title="Sync me", start=start, end=start + timedelta(hours=1))])
    registry = ConnectionRegistry()
    reconciler = SyncReconciler(
        session_factory,
        registry=registry,
        codec=codec,
        adapter_factory=lambda kind, **options: adapter,
        clock=lambda: NOW,
    )

    app.dependency_overrides[get_db_session] = override_db_session
    app.state.registry = registry
    app.state.reconciler = reconciler
    app.state.dispatcher = SyncDispatcher(session_factory, reconciler, clock=lambda: NOW)
    app.state.adapter_options = {"client": feed_client}
    return app


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


class TestHealthRoutes:
    async def test_health(self, client, make_calendar):
        await make_calendar()

        response = await client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["cache"]["calendarCount"] == 1
        assert data["connections"]["activeConnections"] == 0

    async def test_degraded_when_calendar_failing(self, client, make_calendar):
        await make_calendar(consecutive_errors=2)
        response = await client.get("/api/health")
        assert response.json()["status"] == "degraded"

    async def test_connections(self, client, app):
        app.state.registry.register(SSEClient("c1", "d1", {"cal-1"}, QueueSink()))

        response = await client.get("/api/health/connections")

        assert response.json()["activeConnections"] == 1


class TestCalendarRoutes:
    async def test_trigger_sync(self, client, make_calendar):
        calendar = await make_calendar(next_sync_at=NOW + timedelta(hours=1))

        response = await client.post(f"/api/calendars/{calendar.id}/sync")

        assert response.status_code == 202
        assert response.json()["calendarId"] == str(calendar.id)

    async def test_trigger_sync_unknown(self, client):
        response = await client.post("/api/calendars/00000000-0000-0000-0000-000000000000/sync")
        assert response.status_code == 404

    async def test_sync_and_wait(self, client, make_calendar):
        calendar = await make_calendar()

        response = await client.post(f"/api/calendars/{calendar.id}/sync", params={"wait": "true"})

        assert response.status_code == 202
        assert response.json()["outcome"] == "success"
        assert response.json()["created"] == 1

    async def test_cached_events(self, client, make_calendar):
        calendar = await make_calendar()
        await client.post(f"/api/calendars/{calendar.id}/sync", params={"wait": "true"})

        response = await client.get(
            f"/api/calendars/{calendar.id}/events",
            params={"start": "2025-01-15T00:00:00Z", "end": "2025-01-16T00:00:00Z"},
        )

        assert response.status_code == 200
        assert [e["title"] for e in response.json()["events"]] == ["Sync me"]

    async def test_cached_events_inverted_window(self, client, make_calendar):
        calendar = await make_calendar()
        response = await client.get(
            f"/api/calendars/{calendar.id}/events",
            params={"start": "2025-01-16T00:00:00Z", "end": "2025-01-15T00:00:00Z"},
        )
        assert response.status_code == 400

    async def test_test_connection(self, client):
        response = await client.post(
            "/api/calendars/test-connection",
            json={"provider": "ICS", "feedUrl": "https://example.com/room.ics"},
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "calendarCount": 1, "info": "1 events found"}

    async def test_test_connection_invalid_credentials(self, client):
        response = await client.post("/api/calendars/test-connection", json={"provider": "ICS"})
        assert response.status_code == 422

    async def test_discover(self, client):
        response = await client.post(
            "/api/calendars/discover",
            json={"provider": "ICS", "feedUrl": "https://example.com/room.ics"},
        )

        assert response.status_code == 200
        assert response.json()["calendars"] == [
            {"id": "https://example.com/room.ics", "name": "example.com", "color": None}
        ]


class TestDisplayRoutes:
    async def test_unknown_display_stream(self, client):
        response = await client.get("/api/display/nope/events")
        assert response.status_code == 404

    async def test_stream_lifecycle(self, app, session_factory, make_calendar, make_display):
        calendar = await make_calendar()
        display = await make_display([calendar], token="lobby", config={"theme": "dark"})
        registry = app.state.registry

        sessions = []

        async def tracking_session():
            async with session_factory() as session:
                sessions.append(session)
                yield session

        app.dependency_overrides[get_db_session] = tracking_session

        stream = AsgiStream(app, "/api/display/lobby/events")
        stream.start()
        try:
            start = await stream.next_message()
            assert start["type"] == "http.response.start"
            assert start["status"] == 200

            init = await stream.next_frame()
            assert init == {"type": "init", "displayId": str(display.id), "events": [], "config": {"theme": "dark"}}
            assert registry.get_active_count() == 1
            assert [c.calendar_ids for c in registry.get_clients_by_display_id(str(display.id))] == [
                frozenset({str(calendar.id)})
            ]
            assert not sessions[0].in_transaction()

            assert registry.notify_calendar_update(str(calendar.id), [{"title": "Standup"}]) == 1
            update = await stream.next_frame()
            assert update == {"type": "calendar_update", "calendarId": str(calendar.id), "events": [{"title": "Standup"}]}
        finally:
            await stream.disconnect()

        assert registry.get_active_count() == 0

    async def test_stream_keeps_updates_sent_while_loading(self, app, make_calendar, make_display, monkeypatch):
        calendar = await make_calendar()
        await make_display([calendar], token="lobby")
        registry = app.state.registry

        from roomcast.api.routes import displays

        original = displays.get_display_events

        async def notify_then_load(session, display, days, now=None):
            registry.notify_calendar_update(str(calendar.id), [{"title": "Late"}])
            return await original(session, display, days, now)

        monkeypatch.setattr(displays, "get_display_events", notify_then_load)

        stream = AsgiStream(app, "/api/display/lobby/events")
        stream.start()
        try:
            await stream.next_message()
            assert (await stream.next_frame())["type"] == "init"
            assert (await stream.next_frame())["events"] == [{"title": "Late"}]
        finally:
            await stream.disconnect()

    async def test_poll(self, client, make_calendar, make_display):
        calendar = await make_calendar()
        display = await make_display([calendar], token="lobby", config={"theme": "dark"})

        response = await client.get("/api/display/lobby/events/poll")

        assert response.status_code == 200
        data = response.json()
        assert data["displayId"] == str(display.id)
        assert data["config"] == {"theme": "dark"}
        assert data["events"] == []

    async def test_config_update_pushed(self, client, app, make_calendar, make_display):
        display = await make_display([await make_calendar()])
        sink = QueueSink()
        app.state.registry.register(SSEClient("c1", str(display.id), set(), sink))

        response = await client.put(f"/api/displays/{display.id}/config", json={"theme": "light"})

        assert response.status_code == 200
        assert response.json()["delivered"] == 1
        frame = json.loads(sink.queue.get_nowait().removeprefix("data: "))
        assert frame == {"type": "config_update", "displayId": str(display.id), "config": {"theme": "light"}}

    async def test_config_update_unknown_display(self, client):
        response = await client.put(
            "/api/displays/00000000-0000-0000-0000-000000000000/config",
            json={"theme": "light"},
        )
        assert response.status_code == 404


class TestCronRoute:
    async def test_disabled_without_secret(self, client):
        response = await client.post("/api/sync/cron")
        assert response.status_code == 503

    async def test_rejects_wrong_token(self, monkeypatch, app, client):
        monkeypatch.setenv("CRON_SECRET", "cron-secret")
        get_settings.cache_clear()

        response = await client.post("/api/sync/cron", headers={"Authorization": "Bearer wrong"})

        assert response.status_code == 401

    async def test_runs_dispatch(self, monkeypatch, app, client, make_calendar):
        monkeypatch.setenv("CRON_SECRET", "cron-secret")
        get_settings.cache_clear()
        await make_calendar()

        response = await client.get("/api/sync/cron", headers={"Authorization": "Bearer cron-secret"})

        assert response.status_code == 200
        data = response.json()
        assert data["dispatched"] == 1
        assert data["succeeded"] == 1
