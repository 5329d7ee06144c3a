"""Recurrence rule expansion.

Expands an RRULE anchored at the event's original start into the concrete
occurrence starts that intersect a time window.

Expansion runs in the event's own zone so that "every Monday at 10:00"
stays at 10:00 local time across daylight-saving changes; results are
converted to UTC afterwards.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo

from dateutil.rrule import rrulestr

from roomcast.models.event import DateRange

logger = logging.getLogger(__name__)

DEFAULT_MAX_OCCURRENCES = 1000

_UNTIL = re.compile(r"UNTIL=(?P<date>\d{8})(?:T(?P<time>\d{6}))?(?P<utc>Z)?", re.IGNORECASE)


@dataclass(frozen=True)
class DateValue:
    """A DTSTART/DTEND/EXDATE value before conversion to UTC.

    `local` is the naive wall-clock value, `zone` the zone it is expressed
    in (UTC for `Z` values and date-only values).
    """

    local: datetime
    zone: tzinfo
    is_date: bool = False

    @property
    def aware(self) -> datetime:
        return self.local.replace(tzinfo=self.zone)

    @property
    def utc(self) -> datetime:
        return self.aware.astimezone(timezone.utc)


def normalize_until(rule: str, zone: tzinfo) -> str:
    """Rewrite a floating or date-only UNTIL as a UTC timestamp.

    dateutil rejects a non-UTC UNTIL once the anchor is zone-aware. A
    date-only UNTIL covers the whole of that day in the event's zone.
    """

    def _to_utc(match: re.Match[str]) -> str:
        if match.group("utc"):
            return match.group(0)
        day = datetime.strptime(match.group("date"), "%Y%m%d")
        if match.group("time"):
            local = datetime.combine(day.date(), datetime.strptime(match.group("time"), "%H%M%S").time())
        else:
            local = datetime.combine(day.date(), time(23, 59, 59))
        until = local.replace(tzinfo=zone).astimezone(timezone.utc)
        return f"UNTIL={until.strftime('%Y%m%dT%H%M%SZ')}"

    return _UNTIL.sub(_to_utc, rule)


class RecurrenceExpander:
    """Enumerate occurrences of a recurring event within a window.

    Example:
        ```python
        expander = RecurrenceExpander()
        starts = expander.expand(
            "FREQ=WEEKLY;BYDAY=MO",
            start=DateValue(datetime(2025, 1, 6, 10), timezone.utc),
            duration=timedelta(hours=1),
            date_range=DateRange(jan_1, jan_31),
        )
        ```
    """

    def __init__(self, max_occurrences: int = DEFAULT_MAX_OCCURRENCES):
        self.max_occurrences = max_occurrences

    def expand(
        self,
        rule: str,
        start: DateValue,
        duration: timedelta,
        date_range: DateRange,
        exdates: Iterable[DateValue] = (),
        overridden: Iterable[datetime] = (),
    ) -> list[datetime]:
        """Return UTC occurrence starts whose [start, start + duration] meets the window.

        Args:
            rule: RRULE value (with or without the "RRULE:" prefix)
            start: Original DTSTART; the rule is anchored here
            duration: Original end minus original start
            date_range: Requested window, boundaries inclusive
            exdates: Excluded dates; an occurrence on the same local day is dropped
            overridden: UTC starts replaced by RECURRENCE-ID instances

        Raises:
            ValueError: If the rule cannot be parsed
        """
        zone = start.zone
        text = rule.strip()
        if text.upper().startswith("RRULE:"):
            text = text[len("RRULE:") :]
        text = normalize_until(text, zone)

        recurrence = rrulestr(text, dtstart=start.aware)

        # An occurrence starting up to `duration` before the window still overlaps it
        window_start = (date_range.start - duration).astimezone(zone)
        window_end = date_range.end.astimezone(zone)
        occurrences = recurrence.between(window_start, window_end, inc=True)

        if len(occurrences) > self.max_occurrences:
            logger.warning(
                "Recurrence %r produced %d occurrences, keeping first %d",
                rule,
                len(occurrences),
                self.max_occurrences,
            )
            occurrences = occurrences[: self.max_occurrences]

        excluded_days = {self._local_day(ex, zone) for ex in exdates}
        skipped = {dt.astimezone(timezone.utc) for dt in overridden}

        result = []
        for occurrence in occurrences:
            if occurrence.date() in excluded_days:
                continue
            occurrence_utc = occurrence.astimezone(timezone.utc)
            if occurrence_utc in skipped:
                continue
            result.append(occurrence_utc)
        return result

    @staticmethod
    def _local_day(value: DateValue, zone: tzinfo) -> date:
        if value.is_date:
            return value.local.date()
        return value.aware.astimezone(zone).date()
