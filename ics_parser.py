"""
iCalendar (RFC 5545) reader for the calendar client.

``icalendar`` handles line unfolding, text unescaping and component
nesting; only the first VEVENT's own properties are read.  Start and end
values go through :func:`parse_ical_date`, which accepts exactly two
fixed-width shapes.  An object that lacks a UID, SUMMARY, DTSTART or DTEND,
or that cannot be read at all, yields ``None`` instead of raising.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Optional

from icalendar import Calendar

from errors import DateFormatError
from models import CalendarEventRecord, EmailAddress

log = logging.getLogger("yahoo-mcp.ics")


def parse_ical_date(value: str) -> dt.datetime:
    """
    Parse a DATE (``YYYYMMDD``) or DATE-TIME (``YYYYMMDDTHHMMSS``) value.

    Dates become naive local midnight.  Anything after the seconds field
    (``Z`` or other zone markers) is ignored.
    """
    value = value.strip()
    try:
        if len(value) == 8:
            return dt.datetime(int(value[0:4]), int(value[4:6]), int(value[6:8]))
        if len(value) >= 15:
            return dt.datetime(
                int(value[0:4]),
                int(value[4:6]),
                int(value[6:8]),
                int(value[9:11]),
                int(value[11:13]),
                int(value[13:15]),
            )
    except ValueError:
        raise DateFormatError(value) from None
    raise DateFormatError(value)


def _first(component: Any, name: str) -> Any:
    value = component.get(name)
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _text(component: Any, name: str) -> Optional[str]:
    value = _first(component, name)
    if value is None:
        return None
    return str(value).strip() or None


def _raw_date(component: Any, name: str) -> Optional[dt.datetime]:
    value = _first(component, name)
    if value is None:
        return None
    raw = value.to_ical()
    return parse_ical_date(raw.decode() if isinstance(raw, bytes) else str(raw))


def _organizer(component: Any) -> Optional[EmailAddress]:
    value = _first(component, "ORGANIZER")
    if value is None:
        return None
    address = str(value).strip()
    if address.lower().startswith("mailto:"):
        address = address[7:]
    if not address:
        return None
    params = getattr(value, "params", {}) or {}
    display_name = params.get("CN")
    return EmailAddress(address=address, display_name=str(display_name) if display_name else None)


def parse_event(ics_data: str, calendar_id: str) -> Optional[CalendarEventRecord]:
    """Turn one calendar object into a record, or ``None`` if it is unusable."""
    try:
        events = Calendar.from_ical(ics_data).walk("VEVENT")
    except Exception as exc:
        log.error("Dropping unreadable calendar object in %s: %s", calendar_id, exc)
        return None
    if not events:
        return None
    event = events[0]

    try:
        start = _raw_date(event, "DTSTART")
        end = _raw_date(event, "DTEND")
    except DateFormatError as exc:
        log.error("Dropping calendar object in %s: %s", calendar_id, exc)
        return None

    uid = _text(event, "UID")
    summary = _text(event, "SUMMARY")
    if not uid or not summary or start is None or end is None:
        return None

    return CalendarEventRecord(
        id=uid,
        summary=summary,
        start=start,
        end=end,
        calendar_id=calendar_id,
        description=_text(event, "DESCRIPTION"),
        location=_text(event, "LOCATION"),
        organizer=_organizer(event),
        status=_text(event, "STATUS") or "CONFIRMED",
    )
