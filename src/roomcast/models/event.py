"""Canonical event model.

Every provider translates its native payload into `ExternalEvent`. The
reconciler compares these against cached rows by `external_id`.

## Identity

- Provider events: the provider's own event id
- Expanded feed occurrences: `{uid}_{occurrence start, ISO 8601 UTC}`
- Recurrence groups: `recurrence_id` is shared by all occurrences of a series

## Time

All datetimes are timezone-aware UTC and `end >= start`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


def isoformat_utc(value: datetime) -> str:
    """Format an aware datetime as ISO 8601 with a `Z` suffix."""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class DateRange:
    """Closed UTC time window."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("DateRange bounds must be timezone-aware")
        if self.end < self.start:
            raise ValueError("DateRange end must not precede start")

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """True if [start, end] intersects this window (boundaries inclusive)."""
        return end >= self.start and start <= self.end


@dataclass
class ExternalEvent:
    """An event occurrence in canonical form."""

    external_id: str
    title: str
    start: datetime
    end: datetime
    is_all_day: bool = False
    is_recurring: bool = False
    description: str | None = None
    location: str | None = None
    organizer: str | None = None
    attendee_count: int | None = None
    recurrence_id: str | None = None
    raw_data: Any = None


@dataclass(frozen=True)
class CalendarInfo:
    """A sub-calendar or resource offered by a provider."""

    id: str
    name: str
    color: str | None = None
