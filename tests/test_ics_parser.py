import datetime as dt

import pytest

from errors import DateFormatError
from ics_parser import parse_event, parse_ical_date

EVENT = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Yahoo//Calendar//EN
BEGIN:VTIMEZONE
TZID:America/New_York
BEGIN:STANDARD
DTSTART:19701101T020000
TZOFFSETFROM:-0400
TZOFFSETTO:-0500
END:STANDARD
END:VTIMEZONE
BEGIN:VEVENT
UID:event-1@yahoo.com
DTSTAMP:20240101T000000Z
DTSTART;TZID=America/New_York:20240115T093000
DTEND;TZID=America/New_York:20240115T103000
SUMMARY:Team sync\\, weekly
DESCRIPTION:Agenda:\\n1. Status
 \\n2. Plans
LOCATION:Room 4
ORGANIZER;CN="Ada Lovelace":mailto:ada@example.com
BEGIN:VALARM
ACTION:DISPLAY
DESCRIPTION:Reminder
TRIGGER:-PT15M
END:VALARM
END:VEVENT
END:VCALENDAR
"""


@pytest.mark.parametrize(
    "value,expected",
    [
        ("20240115", dt.datetime(2024, 1, 15)),
        ("20240115T093000", dt.datetime(2024, 1, 15, 9, 30)),
        ("20240115T093000Z", dt.datetime(2024, 1, 15, 9, 30)),
    ],
)
def test_parse_ical_date(value, expected):
    assert parse_ical_date(value) == expected


@pytest.mark.parametrize("value", ["2024-01-15", "2024011", "", "2024AB15", "20241345"])
def test_parse_ical_date_rejects_other_shapes(value):
    with pytest.raises(DateFormatError):
        parse_ical_date(value)


def test_parse_event_reads_vevent_properties():
    event = parse_event(EVENT, "home")
    assert event is not None
    assert event.id == "event-1@yahoo.com"
    assert event.summary == "Team sync, weekly"
    assert event.description == "Agenda:\n1. Status\n2. Plans"
    assert event.location == "Room 4"
    assert event.start == dt.datetime(2024, 1, 15, 9, 30)
    assert event.end == dt.datetime(2024, 1, 15, 10, 30)
    assert event.status == "CONFIRMED"
    assert event.calendar_id == "home"
    assert event.organizer.address == "ada@example.com"
    assert event.organizer.display_name == "Ada Lovelace"


def test_parse_event_keeps_explicit_status():
    ics = EVENT.replace("LOCATION:Room 4", "LOCATION:Room 4\nSTATUS:TENTATIVE")
    assert parse_event(ics, "home").status == "TENTATIVE"


def test_parse_event_all_day_dates():
    ics = (
        "BEGIN:VEVENT\r\nUID:a\r\nSUMMARY:Holiday\r\n"
        "DTSTART;VALUE=DATE:20240704\r\nDTEND;VALUE=DATE:20240705\r\nEND:VEVENT\r\n"
    )
    event = parse_event(ics, "cal")
    assert event.start == dt.datetime(2024, 7, 4)
    assert event.end == dt.datetime(2024, 7, 5)
    assert event.description is None
    assert event.organizer is None


def test_parse_event_without_vcalendar_wrapper():
    ics = "BEGIN:VEVENT\nUID:bare\nSUMMARY:Bare\nDTSTART:20240101T080000\nDTEND:20240101T090000\nEND:VEVENT\n"
    assert parse_event(ics, "cal").summary == "Bare"


def test_parse_event_unreadable_text_is_dropped():
    assert parse_event("UID:loose\nSUMMARY:No component\n", "cal") is None
    assert parse_event("BEGIN:VCALENDAR\nEND:VCALENDAR\n", "cal") is None


def test_parse_event_missing_summary_is_dropped():
    ics = EVENT.replace("SUMMARY:Team sync\\, weekly\n", "")
    assert parse_event(ics, "home") is None


def test_parse_event_malformed_date_is_dropped():
    ics = EVENT.replace("DTEND;TZID=America/New_York:20240115T103000", "DTEND:2024-01-15")
    assert parse_event(ics, "home") is None


def test_alarm_description_does_not_leak():
    ics = EVENT.replace("DESCRIPTION:Agenda:\\n1. Status\n \\n2. Plans\n", "")
    event = parse_event(ics, "home")
    assert event is not None
    assert event.description is None
