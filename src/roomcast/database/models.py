"""Database models for the calendar cache.

## Security Notes

- Provider credentials are stored only as the encrypted blob produced by
  `roomcast.database.encryption.CredentialCodec`
- Decrypted credentials never touch the database

## Schema Overview

```
calendars
├── calendar_events (1:N) - cached occurrences, unique per external_id
└── display_calendars (N:M) ── displays
```

All timestamps are stored as UTC and returned as timezone-aware datetimes,
including on SQLite where the driver drops the offset.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Table,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime normalized to UTC on the way in and out."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetimes cannot be stored; attach a timezone")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    type_annotation_map = {
        dict[str, Any]: JSON().with_variant(JSONB(), "postgresql"),
        datetime: UTCDateTime(),
        uuid.UUID: Uuid(as_uuid=True),
    }


class ProviderKind(str, Enum):
    """External calendar backend kind."""

    EXCHANGE = "EXCHANGE"
    GOOGLE = "GOOGLE"
    CALDAV = "CALDAV"
    ICS = "ICS"


class SyncStatus(str, Enum):
    """Calendar synchronization state."""

    IDLE = "IDLE"
    SYNCING = "SYNCING"
    ERROR = "ERROR"


display_calendars = Table(
    "display_calendars",
    Base.metadata,
    Column(
        "display_id",
        Uuid(as_uuid=True),
        ForeignKey("displays.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "calendar_id",
        Uuid(as_uuid=True),
        ForeignKey("calendars.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class Calendar(Base):
    """A configured external calendar source.

    Sync state columns are owned by the reconciler; everything else is
    edited by administrators.
    """

    __tablename__ = "calendars"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    provider: Mapped[str] = mapped_column(String(16), nullable=False)
    color: Mapped[str] = mapped_column(String(7), default="#3B82F6")
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    # Encrypted credential blob (nonce || tag || ciphertext)
    credentials_encrypted: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    # Sync configuration
    sync_interval_seconds: Mapped[int] = mapped_column(Integer, default=300)
    cache_past_days: Mapped[int] = mapped_column(Integer, default=7)
    cache_future_days: Mapped[int] = mapped_column(Integer, default=30)

    # Sync state
    sync_status: Mapped[str] = mapped_column(String(16), default=SyncStatus.IDLE.value)
    last_sync_at: Mapped[datetime | None] = mapped_column()
    last_sync_error: Mapped[str | None] = mapped_column(Text)
    last_error_kind: Mapped[str | None] = mapped_column(String(16))
    consecutive_errors: Mapped[int] = mapped_column(Integer, default=0)
    next_sync_at: Mapped[datetime | None] = mapped_column()

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    # Relationships
    events: Mapped[list["CalendarEvent"]] = relationship(
        back_populates="calendar", cascade="all, delete-orphan"
    )
    displays: Mapped[list["Display"]] = relationship(
        secondary=display_calendars, back_populates="calendars"
    )

    __table_args__ = (
        Index("ix_calendars_due", "enabled", "sync_status", "next_sync_at"),
    )

    def __repr__(self) -> str:
        return f"<Calendar {self.name} ({self.provider})>"


class CalendarEvent(Base):
    """One normalized occurrence cached from a provider.

    Rows are created, updated and deleted exclusively by the reconciler.
    """

    __tablename__ = "calendar_events"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    calendar_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("calendars.id", ondelete="CASCADE")
    )

    # Provider identity ({uid}_{occurrenceStartISO} for expanded feed occurrences)
    external_id: Mapped[str] = mapped_column(String(512), nullable=False)

    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    location: Mapped[str | None] = mapped_column(String(512))
    organizer: Mapped[str | None] = mapped_column(String(255))
    attendee_count: Mapped[int | None] = mapped_column(Integer)

    start_time: Mapped[datetime] = mapped_column(nullable=False)
    end_time: Mapped[datetime] = mapped_column(nullable=False)
    is_all_day: Mapped[bool] = mapped_column(Boolean, default=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False)
    recurrence_id: Mapped[str | None] = mapped_column(String(512))

    # Provider payload snapshot for diagnostics
    raw_data: Mapped[dict[str, Any] | None] = mapped_column()

    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    calendar: Mapped["Calendar"] = relationship(back_populates="events")

    __table_args__ = (
        UniqueConstraint("calendar_id", "external_id", name="uq_calendar_event_external"),
        Index("ix_calendar_events_calendar", "calendar_id"),
        Index("ix_calendar_events_time", "start_time", "end_time"),
    )

    def __repr__(self) -> str:
        return f"<CalendarEvent {self.title[:30]}>"


class Display(Base):
    """A display screen that subscribes to one or more calendars.

    Displays are managed by the admin surface; this service only reads
    them and pushes configuration changes to connected screens.
    """

    __tablename__ = "displays"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    config: Mapped[dict[str, Any] | None] = mapped_column()

    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    calendars: Mapped[list["Calendar"]] = relationship(
        secondary=display_calendars, back_populates="displays"
    )

    def __repr__(self) -> str:
        return f"<Display {self.name}>"
