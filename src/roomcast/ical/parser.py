"""iCalendar (RFC 5545) feed parser.

Turns raw feed text into canonical `ExternalEvent` occurrences for a time
window. Used by the ICS feed adapter and, per resource, by the CalDAV
adapter.

## Processing Pipeline

1. Unfold continuation lines (a line starting with a space or tab
   continues the previous one)
2. Split into content lines `NAME;PARAM=VALUE;...:VALUE`; quoted parameter
   values may contain `:` and `;`
3. Collect VEVENT blocks; nested components such as VALARM are ignored
4. Convert each block into an event, expanding RRULE occurrences that meet
   the window

## Occurrence Identity

| Event | external_id | recurrence_id |
|-------|-------------|---------------|
| Single | UID | None |
| Expanded occurrence | `{UID}_{start ISO UTC}` | UID |
| RECURRENCE-ID override | `{UID}_{RECURRENCE-ID ISO UTC}` | UID |

An override replaces the master occurrence it names, so a moved meeting
keeps the identity of the slot it was moved from.

## Failure Handling

A block that cannot be parsed (missing UID or DTSTART, invalid dates) is
dropped on its own; the rest of the feed is still returned. If a rule
cannot be expanded the event falls back to its single original occurrence.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from roomcast.ical.recurrence import DateValue, RecurrenceExpander
from roomcast.ical.timezones import resolve_timezone
from roomcast.models.event import DateRange, ExternalEvent, isoformat_utc

logger = logging.getLogger(__name__)

RAW_DATA_LIMIT = 500

_CONTENT_LINE = re.compile(
    r"""^(?P<name>[A-Za-z0-9-]+)
    (?P<params>(?:;[A-Za-z0-9-]+=(?:"[^"]*"|[^";:,]*)(?:,(?:"[^"]*"|[^";:,]*))*)*)
    :(?P<value>.*)$""",
    re.VERBOSE | re.DOTALL,
)
_PARAM = re.compile(r';(?P<name>[A-Za-z0-9-]+)=(?P<value>(?:"[^"]*"|[^";:,]*)(?:,(?:"[^"]*"|[^";:,]*))*)')
_DATE_VALUE = re.compile(r"^(\d{4})(\d{2})(\d{2})(?:T(\d{2})(\d{2})(\d{2})(Z)?)?$", re.IGNORECASE)
_DURATION = re.compile(
    r"""^(?P<sign>[+-])?P
    (?:(?P<weeks>\d+)W)?
    (?:(?P<days>\d+)D)?
    (?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$""",
    re.VERBOSE | re.IGNORECASE,
)
_ESCAPE = re.compile(r"\\([\\;,nN])")


@dataclass(frozen=True)
class ContentLine:
    """One unfolded property line."""

    name: str
    params: dict[str, str]
    value: str


@dataclass
class Component:
    """Properties of one VEVENT block, in feed order."""

    lines: list[ContentLine] = field(default_factory=list)
    raw: str = ""

    def first(self, name: str) -> ContentLine | None:
        for line in self.lines:
            if line.name == name:
                return line
        return None

    def all(self, name: str) -> list[ContentLine]:
        return [line for line in self.lines if line.name == name]

    def value(self, name: str) -> str | None:
        line = self.first(name)
        if line is None:
            return None
        return line.value.strip() or None


def unfold(text: str) -> list[str]:
    """Split feed text into logical lines, joining folded continuations."""
    lines: list[str] = []
    for physical in re.split(r"\r\n|\n|\r", text):
        if physical[:1] in (" ", "\t") and lines:
            lines[-1] += physical[1:]
        elif physical.strip():
            lines.append(physical)
    return lines


def parse_content_line(line: str) -> ContentLine | None:
    """Parse `NAME;PARAM=VALUE:VALUE`, or return None for garbage lines."""
    match = _CONTENT_LINE.match(line)
    if not match:
        return None
    params = {
        param.group("name").upper(): param.group("value").strip('"')
        for param in _PARAM.finditer(match.group("params"))
    }
    return ContentLine(match.group("name").upper(), params, match.group("value"))


def iter_components(text: str, kind: str = "VEVENT") -> Iterator[Component]:
    """Yield top-level components of `kind`; unterminated blocks are dropped."""
    current: Component | None = None
    raw_lines: list[str] = []
    depth = 0

    for raw in unfold(text):
        line = parse_content_line(raw)
        if line is None:
            continue

        if current is None:
            if line.name == "BEGIN" and line.value.strip().upper() == kind:
                current = Component()
                raw_lines = [raw]
                depth = 0
            continue

        raw_lines.append(raw)
        if line.name == "BEGIN":
            depth += 1
        elif line.name == "END":
            if depth:
                depth -= 1
            elif line.value.strip().upper() == kind:
                current.raw = "\n".join(raw_lines)
                yield current
                current = None
        elif not depth:
            current.lines.append(line)


def count_events(text: str) -> int:
    """Number of VEVENT blocks in a feed."""
    return sum(1 for _ in iter_components(text))


def unescape_text(value: str) -> str:
    r"""Undo TEXT escaping: `\n`, `\,`, `\;` and `\\`."""
    return _ESCAPE.sub(lambda m: "\n" if m.group(1) in "nN" else m.group(1), value)


def parse_date_value(value: str, params: dict[str, str] | None = None) -> DateValue:
    """Parse a DATE or DATE-TIME value.

    `Z` values are UTC, date-only values are midnight UTC, and anything
    else is wall-clock time in the TZID zone (UTC when absent or unknown).

    Raises:
        ValueError: If the value is not a valid date
    """
    match = _DATE_VALUE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid date value: {value!r}")

    year, month, day = (int(part) for part in match.group(1, 2, 3))
    if match.group(4) is None:
        return DateValue(datetime(year, month, day), timezone.utc, is_date=True)

    hour, minute, second = (int(part) for part in match.group(4, 5, 6))
    local = datetime(year, month, day, hour, minute, second)
    if match.group(7):
        return DateValue(local, timezone.utc)
    return DateValue(local, resolve_timezone((params or {}).get("TZID")))


def parse_date_list(line: ContentLine) -> list[DateValue]:
    """Parse a comma-separated EXDATE/RDATE style value list."""
    return [parse_date_value(part, line.params) for part in line.value.split(",") if part.strip()]


def parse_duration(value: str) -> timedelta:
    """Parse an RFC 5545 DURATION such as `PT1H30M` or `P1W`.

    Raises:
        ValueError: If the value is not a duration
    """
    match = _DURATION.match(value.strip())
    if not match or value.strip().upper().rstrip("T") in ("P", "+P", "-P"):
        raise ValueError(f"Invalid duration: {value!r}")

    parts = {name: int(match.group(name) or 0) for name in ("weeks", "days", "hours", "minutes", "seconds")}
    duration = timedelta(**parts)
    return -duration if match.group("sign") == "-" else duration


def parse_organizer(line: ContentLine | None) -> str | None:
    if line is None:
        return None
    if line.params.get("CN"):
        return line.params["CN"]
    address = re.sub(r"^mailto:", "", line.value.strip(), flags=re.IGNORECASE)
    return address or None


@dataclass
class _Event:
    """Intermediate form of one parsed VEVENT."""

    uid: str
    title: str
    start: DateValue
    end: datetime
    description: str | None
    location: str | None
    organizer: str | None
    attendee_count: int | None
    rule: str | None
    exdates: list[DateValue]
    recurrence_id: DateValue | None
    cancelled: bool
    raw: str

    @property
    def duration(self) -> timedelta:
        return self.end - self.start.utc

    def to_external(
        self,
        external_id: str,
        start: datetime,
        *,
        is_recurring: bool = False,
        recurrence_id: str | None = None,
    ) -> ExternalEvent:
        return ExternalEvent(
            external_id=external_id,
            title=self.title,
            start=start,
            end=start + self.duration,
            is_all_day=self.start.is_date,
            is_recurring=is_recurring,
            description=self.description,
            location=self.location,
            organizer=self.organizer,
            attendee_count=self.attendee_count,
            recurrence_id=recurrence_id,
            raw_data={"ical": self.raw[:RAW_DATA_LIMIT]},
        )


class ICalParser:
    """Parse feed text into window-bounded event occurrences.

    Example:
        ```python
        parser = ICalParser()
        events = parser.parse(feed_text, DateRange(start, end))
        ```
    """

    def __init__(self, expander: RecurrenceExpander | None = None):
        self.expander = expander or RecurrenceExpander()

    def parse(self, text: str, date_range: DateRange) -> list[ExternalEvent]:
        """Return every occurrence in `text` that meets `date_range`.

        Args:
            text: Raw iCalendar text (one VCALENDAR or bare VEVENT blocks)
            date_range: Requested window, boundaries inclusive

        Returns:
            Occurrences ordered by start time
        """
        masters: list[_Event] = []
        overrides: list[tuple[_Event, datetime]] = []
        skipped = 0

        for component in iter_components(text):
            try:
                event = self._read_event(component)
            except (ValueError, OverflowError) as e:
                skipped += 1
                logger.debug("Skipping malformed VEVENT: %s", e)
                continue
            if event is None:
                skipped += 1
                continue
            if event.recurrence_id is not None:
                overrides.append((event, event.recurrence_id.utc))
            else:
                masters.append(event)

        if skipped:
            logger.debug("Skipped %d unusable VEVENT block(s)", skipped)

        overridden: dict[str, set[datetime]] = {}
        for override, recurrence_start in overrides:
            overridden.setdefault(override.uid, set()).add(recurrence_start)

        events: list[ExternalEvent] = []
        for master in masters:
            if master.cancelled:
                continue
            if master.rule:
                events.extend(self._expand(master, master.rule, date_range, overridden.get(master.uid, set())))
            elif date_range.overlaps(master.start.utc, master.end):
                events.append(master.to_external(master.uid, master.start.utc))

        for override, recurrence_start in overrides:
            if override.cancelled or not date_range.overlaps(override.start.utc, override.end):
                continue
            external_id = f"{override.uid}_{isoformat_utc(recurrence_start)}"
            events.append(
                override.to_external(
                    external_id,
                    override.start.utc,
                    is_recurring=True,
                    recurrence_id=override.uid,
                )
            )

        events.sort(key=lambda e: (e.start, e.external_id))
        return events

    def _expand(
        self,
        event: _Event,
        rule: str,
        date_range: DateRange,
        overridden: set[datetime],
    ) -> list[ExternalEvent]:
        try:
            starts = self.expander.expand(
                rule,
                event.start,
                event.duration,
                date_range,
                exdates=event.exdates,
                overridden=overridden,
            )
        except (ValueError, TypeError, OverflowError) as e:
            logger.warning("Could not expand RRULE for %s (%s), using single occurrence", event.uid, e)
            if date_range.overlaps(event.start.utc, event.end):
                return [event.to_external(event.uid, event.start.utc, is_recurring=True, recurrence_id=event.uid)]
            return []

        return [
            event.to_external(
                f"{event.uid}_{isoformat_utc(start)}",
                start,
                is_recurring=True,
                recurrence_id=event.uid,
            )
            for start in starts
        ]

    def _read_event(self, component: Component) -> _Event | None:
        uid = component.value("UID")
        if not uid:
            logger.debug("Skipping VEVENT without UID")
            return None

        dtstart = component.first("DTSTART")
        if dtstart is None:
            raise ValueError(f"VEVENT {uid} has no DTSTART")
        start = parse_date_value(dtstart.value, dtstart.params)

        dtend = component.first("DTEND")
        duration = component.value("DURATION")
        if dtend is not None:
            end = parse_date_value(dtend.value, dtend.params).utc
        elif duration:
            end = start.utc + parse_duration(duration)
        elif start.is_date:
            end = start.utc + timedelta(days=1)
        else:
            end = start.utc + timedelta(hours=1)
        end = max(end, start.utc)

        recurrence_id = None
        recurrence_line = component.first("RECURRENCE-ID")
        if recurrence_line is not None:
            recurrence_id = parse_date_value(recurrence_line.value, recurrence_line.params)

        exdates: list[DateValue] = []
        for line in component.all("EXDATE"):
            exdates.extend(parse_date_list(line))

        description = component.value("DESCRIPTION")
        location = component.value("LOCATION")
        attendees = len(component.all("ATTENDEE"))

        return _Event(
            uid=uid,
            title=unescape_text(component.value("SUMMARY") or "Untitled"),
            start=start,
            end=end,
            description=unescape_text(description) if description else None,
            location=unescape_text(location) if location else None,
            organizer=parse_organizer(component.first("ORGANIZER")),
            attendee_count=attendees or None,
            rule=component.value("RRULE"),
            exdates=exdates,
            recurrence_id=recurrence_id,
            cancelled=(component.value("STATUS") or "").upper() == "CANCELLED",
            raw=component.raw,
        )
