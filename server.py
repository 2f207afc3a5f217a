"""
MCP Server for Yahoo Mail and Calendar
======================================

This module exposes a Yahoo mailbox (IMAP) and calendar (CalDAV) as
read-only tools over the Model Context Protocol.  The server uses the
`fastmcp` framework to handle the protocol machinery; the tools are thin
wrappers around three components:

* :class:`oauth.OAuth2CredentialManager` - obtains, stores and renews the
  OAuth2 tokens used by both protocols.
* :class:`imap_client.IMAPMailboxClient` - one IMAP session (XOAUTH2).
* :class:`caldav_client.CalDAVCalendarClient` - calendar discovery and
  time-ranged event queries.

**Prerequisites**

* `fastmcp` - simplifies building MCP servers and clients.
* `caldav` - a CalDAV client used for calendar operations.
* `icalendar` - reads the events returned by the calendar server.
* `httpx` - talks to Yahoo's OAuth2 token endpoint.
* `python-dotenv` - loads environment variables from a `.env` file.

Register an application with Yahoo, then set ``YAHOO_CLIENT_ID``,
``YAHOO_CLIENT_SECRET`` and ``YAHOO_EMAIL`` in a `.env` file alongside this
script.  Authorize once, either through ``devtools/oauth_flow.py`` or by
opening the URL returned by the ``authorization_url`` tool; Yahoo redirects
to ``/oauth/callback`` on this server, which stores the tokens.

**Functionality**

* **Mail:** list folders, list messages (paginated, newest first, optional
  unread/since filters), fetch a complete message with attachment metadata,
  and search by text, sender, subject and date range.
* **Calendar:** list calendars and fetch events within a date range across
  one or all calendars.

All tools return their results as structured content (JSON objects) under
the ``structuredContent`` field of the MCP tool result.  The JSON is also
serialized into a text block in the ``content`` field.

**Security considerations**

The stored refresh token grants read access to the mailbox and calendar
until it is revoked.  Keep the token directory private and do not expose
this server without authentication in front of it.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP
from fastmcp.tools.tool import ToolResult
from mcp.types import TextContent
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import PlainTextResponse

from caldav_client import CalDAVCalendarClient
from config import Settings, load_settings
from errors import TokenExchangeError
from imap_client import IMAPMailboxClient
from models import DateRange
from oauth import OAuth2CredentialManager, TokenStore

log = logging.getLogger("yahoo-mcp")


@dataclass
class Services:
    credentials: OAuth2CredentialManager
    calendar: CalDAVCalendarClient
    mailbox: Optional[IMAPMailboxClient] = None

    def require_mailbox(self) -> IMAPMailboxClient:
        if self.mailbox is None:
            raise RuntimeError("Mail tools need YAHOO_EMAIL to be set")
        return self.mailbox

    def close(self) -> None:
        if self.mailbox is not None:
            self.mailbox.disconnect()
        self.credentials.close()


def build_services(settings: Settings) -> Services:
    """Construct the components for one account, wiring in their dependencies."""
    credentials = OAuth2CredentialManager(
        client_id=settings.client_id,
        client_secret=settings.client_secret,
        redirect_uri=settings.redirect_uri,
        auth_base_url=settings.auth_base_url,
        store=TokenStore(settings.token_dir),
    )
    mailbox = IMAPMailboxClient(credentials, settings.mailbox_config()) if settings.mail_address else None
    calendar = CalDAVCalendarClient(credentials, settings.caldav_url)
    return Services(credentials=credentials, calendar=calendar, mailbox=mailbox)


# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def _tool_result(payload: Dict[str, Any], *, text: Optional[str] = None) -> ToolResult:
    """Create a ToolResult that keeps both summary text and JSON detail."""
    blocks: List[TextContent] = []
    if text:
        blocks.append(TextContent(type="text", text=text))
    blocks.append(TextContent(type="text", text=json.dumps(payload, indent=2, sort_keys=True, default=str)))
    return ToolResult(content=blocks, structured_content=payload)


def _parse_iso(value: str, field: str) -> dt.datetime:
    """
    Parse an ISO date/time string.  Accepts 'YYYY-MM-DD', 'YYYY-MM-DDTHH:MM:SS',
    or the same suffixed with 'Z' (UTC) or an offset like '-05:00'.

    The result is always naive local time, so bounds given with and without
    an offset compare cleanly.
    """
    try:
        if value.endswith("Z"):
            parsed = dt.datetime.fromisoformat(value[:-1]).replace(tzinfo=dt.timezone.utc)
        else:
            parsed = dt.datetime.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field} is not an ISO 8601 date: {value!r}") from None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _optional_iso(value: Optional[str], field: str) -> Optional[dt.datetime]:
    return _parse_iso(value, field) if value else None


# ---------------------------------------------------------------------------
#  MCP Server
# ---------------------------------------------------------------------------

def create_server(services: Services) -> FastMCP:
    """Build the FastMCP instance with every tool bound to ``services``."""
    mcp = FastMCP("yahoo-mail-calendar", instructions=(
        "This server exposes a Yahoo mailbox and calendar via the Model "
        "Context Protocol.  All tools are read-only.  Dates should be "
        "supplied in ISO 8601 format (YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS, "
        "optionally with timezone offsets).  Message ids are only valid "
        "within the folder they were listed from."
    ))

    @mcp.custom_route("/oauth/callback", methods=["GET"])
    async def oauth_callback(request: Request) -> PlainTextResponse:
        """Redirect target of Yahoo's consent screen; stores the new tokens."""
        error = request.query_params.get("error")
        if error:
            description = request.query_params.get("error_description") or error
            return PlainTextResponse(f"Authorization failed: {description}", status_code=400)
        code = request.query_params.get("code")
        if not code:
            return PlainTextResponse("Missing authorization code", status_code=400)
        try:
            await run_in_threadpool(services.credentials.exchange_code_for_credentials, code)
        except TokenExchangeError as exc:
            log.error("OAuth callback exchange failed: %s", exc)
            return PlainTextResponse(str(exc), status_code=400)
        return PlainTextResponse("Authorization complete. You can close this window.")

    @mcp.tool()
    def authorization_url(state: Optional[str] = None) -> ToolResult:
        """
        Return the Yahoo consent URL.  Open it in a browser to grant read
        access to mail and calendar; Yahoo then redirects to this server's
        ``/oauth/callback``.
        """
        url = services.credentials.get_authorization_url(state)
        return _tool_result({"url": url}, text=url)

    @mcp.tool()
    def list_folders() -> ToolResult:
        """
        List every mail folder.  Nested folders are returned as full paths
        using the server's hierarchy delimiter (e.g. ``"Archive/2024"``).
        """
        folders = services.require_mailbox().list_folders()
        return _tool_result({"folders": folders}, text=f"{len(folders)} folder(s)")

    @mcp.tool()
    def fetch_emails(
        folder: str = "INBOX",
        limit: int = 50,
        offset: int = 0,
        since: Optional[str] = None,
        unread_only: bool = False,
    ) -> ToolResult:
        """
        List messages in a folder, newest first.

        Args:
            folder: Mailbox folder name (e.g. ``"INBOX"``, ``"Sent"``).
            limit: Maximum number of messages to return.
            offset: Number of most recent messages to skip.
            since: Optional ISO date; only messages on or after it.
            unread_only: Only return messages without the ``\\Seen`` flag.

        Each item has ``id``, ``uid``, ``subject``, ``from``, ``to``,
        ``date``, ``unread`` and a short ``snippet`` of the body.
        """
        since_dt = _optional_iso(since, "since")
        messages = services.require_mailbox().list_messages(
            folder=folder, limit=limit, offset=offset, since=since_dt, unread_only=unread_only,
        )
        rows = [m.to_summary() for m in messages]
        return _tool_result({"count": len(rows), "emails": rows}, text=f"{len(rows)} message(s)")

    @mcp.tool()
    def get_email(email_id: str, folder: str = "INBOX") -> ToolResult:
        """
        Fetch one complete message by the ``id`` returned from
        ``fetch_emails`` or ``search_emails`` in the same folder.

        Returns headers, the text and HTML bodies, attachment metadata
        (filename, content type, size) and IMAP flags.
        """
        message = services.require_mailbox().get_message(email_id, folder)
        return _tool_result({"email": message.to_dict()})

    @mcp.tool()
    def search_emails(
        query: Optional[str] = None,
        folder: str = "INBOX",
        from_address: Optional[str] = None,
        subject: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        limit: int = 50,
    ) -> ToolResult:
        """
        Search a folder.  All supplied filters must match.

        Args:
            query: Text matched against the subject or the body.
            folder: Folder to search in.
            from_address: Sender filter.
            subject: Subject filter.
            start_date: ISO date; messages on or after this day.
            end_date: ISO date; messages before this day.
            limit: Maximum number of results (most recent first).
        """
        date_range = None
        if start_date or end_date:
            date_range = DateRange(
                start=_optional_iso(start_date, "start_date"),
                end=_optional_iso(end_date, "end_date"),
            )
        messages = services.require_mailbox().search_messages(
            query=query,
            folder=folder,
            from_=from_address,
            subject=subject,
            date_range=date_range,
            limit=limit,
        )
        rows = [m.to_summary() for m in messages]
        return _tool_result({"count": len(rows), "emails": rows}, text=f"{len(rows)} match(es)")

    @mcp.tool()
    def list_calendars() -> ToolResult:
        """
        List all calendars of the account.  Each item has ``id`` (use it
        with ``fetch_events``), ``name``, ``description``, ``url`` and
        ``color``.
        """
        calendars = services.calendar.list_calendars()
        rows = [c.to_dict() for c in calendars]
        return _tool_result({"count": len(rows), "calendars": rows}, text=f"{len(rows)} calendar(s)")

    @mcp.tool()
    def fetch_events(start_date: str, end_date: str, calendar_id: Optional[str] = None) -> ToolResult:
        """
        Fetch events between two ISO dates from one calendar or, when
        ``calendar_id`` is omitted, from every calendar.  Calendars that
        cannot be queried are skipped.
        """
        events = services.calendar.fetch_events(
            _parse_iso(start_date, "start_date"),
            _parse_iso(end_date, "end_date"),
            calendar_id=calendar_id,
        )
        rows = [e.to_dict() for e in events]
        return _tool_result({"count": len(rows), "events": rows}, text=f"{len(rows)} event(s)")

    return mcp


# ---------------------------------------------------------------------------
#  Server entry point
# ---------------------------------------------------------------------------

def main() -> None:
    settings = load_settings()
    logging.basicConfig(level=settings.log_level, format="%(levelname)s %(message)s")
    services = build_services(settings)
    mcp = create_server(services)
    log.info(
        "Starting MCP HTTP server on %s:%d (IMAP=%s:%d CalDAV=%s)",
        settings.server_host, settings.server_port, settings.imap_host, settings.imap_port, settings.caldav_url,
    )
    try:
        mcp.run(transport="http", host=settings.server_host, port=settings.server_port, path="/mcp")
    finally:
        services.close()


if __name__ == "__main__":
    main()
