"""Tests for the iCalendar feed parser."""

from datetime import datetime, timedelta, timezone

import pytest

from roomcast.ical.parser import (
    ICalParser,
    count_events,
    parse_content_line,
    parse_date_value,
    parse_duration,
    unescape_text,
    unfold,
)
from roomcast.models.event import DateRange

UTC = timezone.utc
JANUARY = (datetime(2025, 1, 1, tzinfo=UTC), datetime(2025, 1, 31, tzinfo=UTC))


def feed(*events: str) -> str:
    body = "\r\n".join(events)
    return f"BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//Test//EN\r\n{body}\r\nEND:VCALENDAR\r\n"


def vevent(*lines: str) -> str:
    return "\r\n".join(["BEGIN:VEVENT", *lines, "END:VEVENT"])


@pytest.fixture
def parser() -> ICalParser:
    return ICalParser()


@pytest.fixture
def january() -> DateRange:
    return DateRange(*JANUARY)


class TestContentLines:
    """Tests for line unfolding and content line parsing."""

    def test_unfold_joins_continuations(self):
        text = "DESCRIPTION:first\r\n  part\r\n\tsecond\r\nSUMMARY:x\r\n"
        assert unfold(text) == ["DESCRIPTION:first partsecond", "SUMMARY:x"]

    def test_unfold_accepts_bare_newlines(self):
        assert unfold("A:1\nB:2\n") == ["A:1", "B:2"]

    def test_params_parsed(self):
        line = parse_content_line("DTSTART;TZID=Europe/Berlin:20250106T100000")
        assert line.name == "DTSTART"
        assert line.params == {"TZID": "Europe/Berlin"}
        assert line.value == "20250106T100000"

    def test_quoted_param_may_contain_colon(self):
        line = parse_content_line('ORGANIZER;CN="Room: 101";SENT-BY="mailto:a@b.c":mailto:room@example.com')
        assert line.params["CN"] == "Room: 101"
        assert line.params["SENT-BY"] == "mailto:a@b.c"
        assert line.value == "mailto:room@example.com"

    def test_value_may_contain_colon(self):
        line = parse_content_line("LOCATION:Building A: Floor 2")
        assert line.value == "Building A: Floor 2"

    def test_names_uppercased(self):
        assert parse_content_line("summary:x").name == "SUMMARY"

    def test_garbage_line(self):
        assert parse_content_line("this is not a content line") is None

    def test_unescape_text(self):
        assert unescape_text(r"a\, b\; c\nd\\e") == "a, b; c\nd\\e"


class TestValues:
    """Tests for date and duration values."""

    def test_utc_datetime(self):
        value = parse_date_value("20250106T100000Z")
        assert value.utc == datetime(2025, 1, 6, 10, tzinfo=UTC)
        assert value.is_date is False

    def test_date_only_is_midnight_utc(self):
        value = parse_date_value("20250106")
        assert value.is_date is True
        assert value.utc == datetime(2025, 1, 6, tzinfo=UTC)

    def test_tzid_datetime(self):
        value = parse_date_value("20250106T100000", {"TZID": "Europe/Berlin"})
        assert value.utc == datetime(2025, 1, 6, 9, tzinfo=UTC)

    def test_floating_datetime_is_utc(self):
        assert parse_date_value("20250106T100000").utc == datetime(2025, 1, 6, 10, tzinfo=UTC)

    def test_invalid_date(self):
        with pytest.raises(ValueError):
            parse_date_value("2025-01-06")

    def test_impossible_date(self):
        with pytest.raises(ValueError):
            parse_date_value("20250230")

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("PT1H", timedelta(hours=1)),
            ("PT1H30M", timedelta(hours=1, minutes=30)),
            ("P1D", timedelta(days=1)),
            ("P1W", timedelta(weeks=1)),
            ("P1DT2H", timedelta(days=1, hours=2)),
            ("PT45S", timedelta(seconds=45)),
            ("-PT15M", timedelta(minutes=-15)),
        ],
    )
    def test_durations(self, text, expected):
        assert parse_duration(text) == expected

    @pytest.mark.parametrize("text", ["P", "PT", "1H", "PXD"])
    def test_invalid_durations(self, text):
        with pytest.raises(ValueError):
            parse_duration(text)


class TestSingleEvents:
    """Tests for non-recurring events."""

    def test_basic_event(self, parser, january):
        text = feed(
            vevent(
                "UID:evt-1",
                "SUMMARY:Team sync",
                "DTSTART:20250115T090000Z",
                "DTEND:20250115T100000Z",
                "LOCATION:Room 101",
                "DESCRIPTION:Weekly\\, short",
                "ORGANIZER;CN=Alice:mailto:alice@example.com",
                "ATTENDEE:mailto:bob@example.com",
                "ATTENDEE:mailto:carol@example.com",
            )
        )

        [event] = parser.parse(text, january)

        assert event.external_id == "evt-1"
        assert event.title == "Team sync"
        assert event.start == datetime(2025, 1, 15, 9, tzinfo=UTC)
        assert event.end == datetime(2025, 1, 15, 10, tzinfo=UTC)
        assert event.location == "Room 101"
        assert event.description == "Weekly, short"
        assert event.organizer == "Alice"
        assert event.attendee_count == 2
        assert event.is_recurring is False
        assert event.recurrence_id is None
        assert event.raw_data["ical"].startswith("BEGIN:VEVENT")

    def test_organizer_without_cn(self, parser, january):
        text = feed(vevent("UID:a", "DTSTART:20250115T090000Z", "ORGANIZER:mailto:bob@example.com"))
        [event] = parser.parse(text, january)
        assert event.organizer == "bob@example.com"

    def test_missing_summary_is_untitled(self, parser, january):
        text = feed(vevent("UID:a", "DTSTART:20250115T090000Z"))
        [event] = parser.parse(text, january)
        assert event.title == "Untitled"

    def test_missing_end_timed_event_lasts_one_hour(self, parser, january):
        text = feed(vevent("UID:a", "DTSTART:20250115T090000Z"))
        [event] = parser.parse(text, january)
        assert event.end - event.start == timedelta(hours=1)

    def test_all_day_event(self, parser, january):
        text = feed(vevent("UID:a", "SUMMARY:Holiday", "DTSTART;VALUE=DATE:20250120"))
        [event] = parser.parse(text, january)
        assert event.is_all_day is True
        assert event.start == datetime(2025, 1, 20, tzinfo=UTC)
        assert event.end == datetime(2025, 1, 21, tzinfo=UTC)

    def test_duration_instead_of_end(self, parser, january):
        text = feed(vevent("UID:a", "DTSTART:20250115T090000Z", "DURATION:PT1H30M"))
        [event] = parser.parse(text, january)
        assert event.end == datetime(2025, 1, 15, 10, 30, tzinfo=UTC)

    def test_end_before_start_clamped(self, parser, january):
        text = feed(vevent("UID:a", "DTSTART:20250115T090000Z", "DTEND:20250115T080000Z"))
        [event] = parser.parse(text, january)
        assert event.end == event.start

    def test_tzid_converted_to_utc(self, parser, january):
        text = feed(
            vevent(
                "UID:a",
                "DTSTART;TZID=America/New_York:20250115T090000",
                "DTEND;TZID=America/New_York:20250115T100000",
            )
        )
        [event] = parser.parse(text, january)
        assert event.start == datetime(2025, 1, 15, 14, tzinfo=UTC)

    def test_windows_timezone_name(self, parser, january):
        text = feed(
            vevent(
                "UID:a",
                'DTSTART;TZID="W. Europe Standard Time":20250115T090000',
                'DTEND;TZID="W. Europe Standard Time":20250115T100000',
            )
        )
        [event] = parser.parse(text, january)
        assert event.start == datetime(2025, 1, 15, 8, tzinfo=UTC)

    def test_unknown_timezone_falls_back_to_utc(self, parser, january):
        text = feed(vevent("UID:a", "DTSTART;TZID=Mars/Olympus_Mons:20250115T090000"))
        [event] = parser.parse(text, january)
        assert event.start == datetime(2025, 1, 15, 9, tzinfo=UTC)

    def test_outside_window_dropped(self, parser, january):
        text = feed(vevent("UID:a", "DTSTART:20250215T090000Z"))
        assert parser.parse(text, january) == []

    def test_overlapping_window_start_kept(self, parser, january):
        text = feed(vevent("UID:a", "DTSTART:20241231T230000Z", "DTEND:20250101T010000Z"))
        assert [e.external_id for e in parser.parse(text, january)] == ["a"]

    def test_cancelled_event_dropped(self, parser, january):
        text = feed(vevent("UID:a", "DTSTART:20250115T090000Z", "STATUS:CANCELLED"))
        assert parser.parse(text, january) == []

    def test_valarm_ignored(self, parser, january):
        text = feed(
            vevent(
                "UID:a",
                "SUMMARY:Outer",
                "DTSTART:20250115T090000Z",
                "BEGIN:VALARM",
                "ACTION:DISPLAY",
                "SUMMARY:Inner alarm",
                "TRIGGER:-PT15M",
                "END:VALARM",
            )
        )
        [event] = parser.parse(text, january)
        assert event.title == "Outer"

    def test_folded_summary(self, parser, january):
        text = feed(vevent("UID:a", "SUMMARY:Quarterly planning", " with finance", "DTSTART:20250115T090000Z"))
        [event] = parser.parse(text, january)
        assert event.title == "Quarterly planningwith finance"

    def test_results_sorted_by_start(self, parser, january):
        text = feed(
            vevent("UID:late", "DTSTART:20250120T090000Z"),
            vevent("UID:early", "DTSTART:20250110T090000Z"),
        )
        assert [e.external_id for e in parser.parse(text, january)] == ["early", "late"]


class TestMalformedInput:
    """Bad blocks are skipped without losing the rest of the feed."""

    def test_malformed_block_skipped(self, parser, january):
        text = feed(
            vevent("UID:good-1", "DTSTART:20250110T090000Z"),
            vevent("UID:bad", "DTSTART:not-a-date"),
            vevent("UID:good-2", "DTSTART:20250111T090000Z"),
        )
        assert [e.external_id for e in parser.parse(text, january)] == ["good-1", "good-2"]

    def test_missing_uid_skipped(self, parser, january):
        text = feed(vevent("DTSTART:20250110T090000Z"), vevent("UID:ok", "DTSTART:20250110T090000Z"))
        assert [e.external_id for e in parser.parse(text, january)] == ["ok"]

    def test_missing_dtstart_skipped(self, parser, january):
        text = feed(vevent("UID:nostart", "SUMMARY:x"))
        assert parser.parse(text, january) == []

    def test_unterminated_block_dropped(self, parser, january):
        text = "BEGIN:VCALENDAR\r\nBEGIN:VEVENT\r\nUID:a\r\nDTSTART:20250110T090000Z\r\n"
        assert parser.parse(text, january) == []

    def test_invalid_rrule_falls_back_to_single(self, parser, january):
        text = feed(vevent("UID:a", "DTSTART:20250110T090000Z", "RRULE:FREQ=SOMETIMES"))
        [event] = parser.parse(text, january)
        assert event.external_id == "a"
        assert event.is_recurring is True

    def test_empty_feed(self, parser, january):
        assert parser.parse("", january) == []

    def test_count_events(self):
        text = feed(vevent("UID:a", "DTSTART:20250110T090000Z"), vevent("UID:b", "DTSTART:x"))
        assert count_events(text) == 2


class TestRecurringEvents:
    """Tests for RRULE expansion within the parser."""

    def test_weekly_expansion(self, parser, january):
        text = feed(
            vevent(
                "UID:weekly",
                "SUMMARY:Standup",
                "DTSTART:20250106T100000Z",
                "DTEND:20250106T110000Z",
                "RRULE:FREQ=WEEKLY;BYDAY=MO",
            )
        )

        events = parser.parse(text, january)

        assert [e.start.day for e in events] == [6, 13, 20, 27]
        assert [e.external_id for e in events] == [
            "weekly_2025-01-06T10:00:00Z",
            "weekly_2025-01-13T10:00:00Z",
            "weekly_2025-01-20T10:00:00Z",
            "weekly_2025-01-27T10:00:00Z",
        ]
        assert all(e.is_recurring and e.recurrence_id == "weekly" for e in events)
        assert all(e.end - e.start == timedelta(hours=1) for e in events)

    def test_exdate_removes_occurrence(self, parser, january):
        text = feed(
            vevent(
                "UID:weekly",
                "DTSTART:20250106T100000Z",
                "RRULE:FREQ=WEEKLY;BYDAY=MO",
                "EXDATE:20250113T100000Z",
            )
        )
        assert [e.start.day for e in parser.parse(text, january)] == [6, 20, 27]

    def test_exdate_list_with_tzid(self, parser, january):
        text = feed(
            vevent(
                "UID:weekly",
                "DTSTART;TZID=Europe/Berlin:20250106T100000",
                "RRULE:FREQ=WEEKLY;BYDAY=MO",
                "EXDATE;TZID=Europe/Berlin:20250113T100000,20250127T100000",
            )
        )
        assert [e.start.day for e in parser.parse(text, january)] == [6, 20]

    def test_count_limits_series(self, parser, january):
        text = feed(vevent("UID:d", "DTSTART:20250106T100000Z", "RRULE:FREQ=DAILY;COUNT=3"))
        assert [e.start.day for e in parser.parse(text, january)] == [6, 7, 8]

    def test_until_limits_series(self, parser, january):
        text = feed(
            vevent(
                "UID:d",
                "DTSTART;TZID=Europe/Berlin:20250106T100000",
                "RRULE:FREQ=DAILY;UNTIL=20250108",
            )
        )
        assert [e.start.day for e in parser.parse(text, january)] == [6, 7, 8]

    def test_override_replaces_occurrence(self, parser, january):
        text = feed(
            vevent(
                "UID:weekly",
                "SUMMARY:Standup",
                "DTSTART:20250106T100000Z",
                "RRULE:FREQ=WEEKLY;BYDAY=MO",
            ),
            vevent(
                "UID:weekly",
                "RECURRENCE-ID:20250113T100000Z",
                "SUMMARY:Standup (moved)",
                "DTSTART:20250114T150000Z",
                "DTEND:20250114T160000Z",
            ),
        )

        events = parser.parse(text, january)

        assert len(events) == 4
        moved = next(e for e in events if e.title == "Standup (moved)")
        assert moved.external_id == "weekly_2025-01-13T10:00:00Z"
        assert moved.start == datetime(2025, 1, 14, 15, tzinfo=UTC)
        assert moved.recurrence_id == "weekly"
        assert datetime(2025, 1, 13, 10, tzinfo=UTC) not in [e.start for e in events]

    def test_cancelled_override_removes_occurrence(self, parser, january):
        text = feed(
            vevent("UID:weekly", "DTSTART:20250106T100000Z", "RRULE:FREQ=WEEKLY;BYDAY=MO"),
            vevent(
                "UID:weekly",
                "RECURRENCE-ID:20250120T100000Z",
                "DTSTART:20250120T100000Z",
                "STATUS:CANCELLED",
            ),
        )
        assert [e.start.day for e in parser.parse(text, january)] == [6, 13, 27]

    def test_external_ids_unique(self, parser, january):
        text = feed(vevent("UID:d", "DTSTART:20250101T080000Z", "RRULE:FREQ=DAILY"))
        events = parser.parse(text, january)
        assert len(events) == 30
        assert len({e.external_id for e in events}) == 30

    def test_daily_expansion_respects_dst(self, parser):
        window = DateRange(datetime(2025, 3, 28, tzinfo=UTC), datetime(2025, 4, 1, tzinfo=UTC))
        text = feed(
            vevent(
                "UID:d",
                "DTSTART;TZID=Europe/Berlin:20250301T090000",
                "RRULE:FREQ=DAILY",
            )
        )

        starts = [e.start for e in parser.parse(text, window)]

        # 09:00 Berlin is 08:00 UTC before the switch on 30 March, 07:00 after
        assert starts[0] == datetime(2025, 3, 28, 8, tzinfo=UTC)
        assert starts[-1] == datetime(2025, 3, 31, 7, tzinfo=UTC)
