"""iCalendar parsing and recurrence expansion."""

from roomcast.ical.parser import ICalParser, count_events, unescape_text
from roomcast.ical.recurrence import DateValue, RecurrenceExpander
from roomcast.ical.timezones import resolve_timezone

__all__ = [
    "DateValue",
    "ICalParser",
    "RecurrenceExpander",
    "count_events",
    "resolve_timezone",
    "unescape_text",
]
