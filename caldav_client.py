"""
CalDAV client for Yahoo Calendar, authenticated with OAuth2 bearer tokens.

The ``caldav`` package handles discovery (PROPFIND) and time-range queries
(REPORT).  Every HTTP request asks the credential manager for a valid token,
so an access token that expires mid-session is renewed transparently.
Calendar objects are read with :func:`ics_parser.parse_event`.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from typing import Any, Callable, List, Optional, Tuple

from caldav.davclient import DAVClient
from caldav.elements import cdav, dav
from caldav.elements.ical import CalendarColor

from errors import CalendarError, CalendarNotFoundError, CredentialError
from ics_parser import parse_event
from models import BatchReport, CalendarCollection, CalendarEventRecord
from oauth import OAuth2CredentialManager

log = logging.getLogger("yahoo-mcp.caldav")


class BearerAuth:
    """``requests``-style auth hook that stamps a fresh bearer token on each request."""

    def __init__(self, credentials: OAuth2CredentialManager) -> None:
        self._credentials = credentials

    def __call__(self, request: Any) -> Any:
        request.headers["Authorization"] = f"Bearer {self._credentials.get_valid_access_token()}"
        return request


def calendar_id_from_url(url: str) -> str:
    """Trailing path segment of a collection URL (the URL itself if there is none)."""
    segment = url.rstrip("/").rsplit("/", 1)[-1]
    return segment or url


def _as_datetime(value: dt.date) -> dt.datetime:
    """Naive local datetime; aware values are converted to local time first."""
    if isinstance(value, dt.datetime):
        if value.tzinfo is not None:
            return value.astimezone().replace(tzinfo=None)
        return value
    return dt.datetime(value.year, value.month, value.day)


class CalDAVCalendarClient:
    """Read-only access to the calendars of one account."""

    def __init__(
        self,
        credentials: OAuth2CredentialManager,
        base_url: str,
        *,
        client_factory: Callable[..., Any] = DAVClient,
    ) -> None:
        self._credentials = credentials
        self._base_url = base_url
        self._client_factory = client_factory
        self._client: Any = None
        self._principal: Any = None
        self._lock = threading.Lock()

    @property
    def initialized(self) -> bool:
        return self._principal is not None

    def initialize(self) -> None:
        """Open the CalDAV session.  Calling it again is a no-op."""
        with self._lock:
            if self._principal is not None:
                return
            # Fail early with NoCredentialsError/TokenRefreshError.
            self._credentials.get_valid_access_token()
            try:
                client = self._client_factory(url=self._base_url, auth=BearerAuth(self._credentials))
                principal = client.principal()
            except CredentialError:
                raise
            except Exception as exc:
                log.error("CalDAV initialization error: %s", exc)
                raise CalendarError(f"Failed to initialize CalDAV client: {exc}") from exc
            self._client = client
            self._principal = principal
            log.info("CalDAV session ready at %s", self._base_url)

    def _describe(self, calendar: Any) -> CalendarCollection:
        url = str(calendar.url)
        calendar_id = getattr(calendar, "id", None) or calendar_id_from_url(url)
        props: dict = {}
        try:
            props = calendar.get_properties([dav.DisplayName(), cdav.CalendarDescription(), CalendarColor()]) or {}
        except CredentialError:
            raise
        except Exception as exc:
            log.warning("Could not read properties of calendar %s: %s", url, exc)
        name = props.get(dav.DisplayName.tag) or getattr(calendar, "name", None) or calendar_id
        return CalendarCollection(
            id=str(calendar_id),
            display_name=str(name),
            location_url=url,
            description=props.get(cdav.CalendarDescription.tag) or None,
            color=props.get(CalendarColor.tag) or None,
        )

    def _discover(self) -> List[Tuple[CalendarCollection, Any]]:
        self.initialize()
        try:
            calendars = self._principal.calendars()
        except CredentialError:
            raise
        except Exception as exc:
            log.error("CalDAV list calendars error: %s", exc)
            raise CalendarError(f"Failed to list calendars: {exc}") from exc
        return [(self._describe(cal), cal) for cal in calendars]

    def list_calendars(self) -> List[CalendarCollection]:
        return [collection for collection, _ in self._discover()]

    def fetch_events_report(
        self,
        start_date: dt.date,
        end_date: dt.date,
        calendar_id: Optional[str] = None,
    ) -> BatchReport[CalendarEventRecord]:
        start, end = _as_datetime(start_date), _as_datetime(end_date)
        if start > end:
            raise ValueError("start_date must not be after end_date")

        targets = self._discover()
        if calendar_id is not None:
            targets = [(c, cal) for c, cal in targets if c.id == calendar_id]
            if not targets:
                raise CalendarNotFoundError(calendar_id)

        report: BatchReport[CalendarEventRecord] = BatchReport()
        for collection, calendar in targets:
            report.extend(self._query(collection, calendar, start, end))
        return report

    @staticmethod
    def _query(
        collection: CalendarCollection,
        calendar: Any,
        start: dt.datetime,
        end: dt.datetime,
    ) -> BatchReport[CalendarEventRecord]:
        report: BatchReport[CalendarEventRecord] = BatchReport()
        try:
            objects = calendar.search(event=True, start=start, end=end, expand=False)
        except CredentialError:
            raise
        except Exception as exc:
            log.error("Error fetching events from calendar %s: %s", collection.id, exc)
            report.skip(collection.id, f"query failed: {exc}")
            return report
        for obj in objects:
            ref = str(getattr(obj, "url", None) or collection.id)
            data = getattr(obj, "data", None)
            if not data:
                report.skip(ref, "empty calendar object")
                continue
            event = parse_event(str(data), collection.id)
            if event is None:
                report.skip(ref, "missing or malformed UID, SUMMARY, DTSTART or DTEND")
                continue
            report.records.append(event)
        return report

    def fetch_events(
        self,
        start_date: dt.date,
        end_date: dt.date,
        calendar_id: Optional[str] = None,
    ) -> List[CalendarEventRecord]:
        """
        Events between ``start_date`` and ``end_date``.

        With ``calendar_id`` only that calendar is queried (an unknown id
        raises :class:`CalendarNotFoundError`); otherwise every calendar is.
        Calendars that fail to answer and objects that fail to parse are
        skipped.
        """
        return self.fetch_events_report(start_date, end_date, calendar_id).records
