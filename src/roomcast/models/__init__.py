"""Canonical data models shared by providers, the parser and the reconciler."""

from roomcast.models.event import (
    CalendarInfo,
    DateRange,
    ExternalEvent,
    isoformat_utc,
)

__all__ = [
    "CalendarInfo",
    "DateRange",
    "ExternalEvent",
    "isoformat_utc",
]
