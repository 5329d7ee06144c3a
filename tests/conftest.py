"""Pytest fixtures for the calendar sync tests.

This module provides test fixtures that ensure:
1. No external calls are made (providers are faked with httpx.MockTransport
   or patched clients)
2. The cache store is a throwaway SQLite database per test
3. Isolated test environment with controlled configuration
"""

import os
import uuid

import pytest

# Set test environment BEFORE importing application modules
# This ensures no real services are contacted during test collection
os.environ.setdefault("ENCRYPTION_SECRET", "test-encryption-secret-for-roomcast")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DEBUG", "true")

from sqlalchemy.ext.asyncio import create_async_engine

from roomcast.database.connection import create_session_factory
from roomcast.database.encryption import CredentialCodec, reset_codec
from roomcast.database.models import Base, Calendar, Display, ProviderKind
from roomcast.providers.credentials import ICSCredentials, dump_credentials

TEST_SECRET = os.environ["ENCRYPTION_SECRET"]


# =============================================================================
# Test Isolation Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset settings and codec caches before each test to ensure clean state."""
    from roomcast.config import get_settings

    get_settings.cache_clear()
    reset_codec()
    yield
    get_settings.cache_clear()
    reset_codec()


@pytest.fixture(scope="session")
def codec() -> CredentialCodec:
    """Codec using the test secret (key derivation is slow, so shared)."""
    return CredentialCodec(TEST_SECRET)


@pytest.fixture
async def session_factory(tmp_path):
    """Session factory bound to a fresh SQLite database file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def make_calendar(session_factory, codec):
    """Insert a calendar and return it.

    Defaults to an ICS feed; pass `credentials` (a pydantic credential model
    or raw bytes) and any column overrides.
    """

    async def _make(credentials=None, **columns) -> Calendar:
        credentials = credentials or ICSCredentials(feed_url="https://example.com/room.ics")
        if isinstance(credentials, bytes):
            blob = credentials
        else:
            blob = codec.encrypt(dump_credentials(credentials))
        columns.setdefault("name", "Room 101")
        columns.setdefault("provider", ProviderKind.ICS.value)
        calendar = Calendar(id=uuid.uuid4(), credentials_encrypted=blob, **columns)
        async with session_factory() as session:
            session.add(calendar)
            await session.commit()
        return calendar

    return _make


@pytest.fixture
def make_display(session_factory):
    """Insert a display subscribed to the given calendars."""

    async def _make(calendars, token="display-token", **columns) -> Display:
        columns.setdefault("name", "Lobby screen")
        async with session_factory() as session:
            loaded = [await session.get(Calendar, calendar.id) for calendar in calendars]
            display = Display(id=uuid.uuid4(), token=token, calendars=loaded, **columns)
            session.add(display)
            await session.commit()
        return display

    return _make
