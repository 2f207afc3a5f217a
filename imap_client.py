"""
IMAP client for Yahoo Mail, authenticated with OAuth2 (XOAUTH2).

One :class:`IMAPMailboxClient` owns one IMAP session.  The session is opened
on first use and reused afterwards; folder selection is session state, so all
operations on an instance are serialised by an internal lock.  A session
that drops (server close, network error) is torn down and re-opened by the
next operation.
"""

from __future__ import annotations

import datetime as dt
import email
import enum
import imaplib
import logging
import re
import threading
import time
from email.header import decode_header, make_header
from email.message import Message
from email.utils import getaddresses, parsedate_to_datetime
from html.parser import HTMLParser
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar, Union

from errors import AuthenticationError, MailboxConnectionError, MailboxError, NotFoundError
from models import AttachmentMeta, BatchReport, DateRange, EmailAddress, MailboxConfig, MessageRecord
from oauth import OAuth2CredentialManager

log = logging.getLogger("yahoo-mcp.imap")

FETCH_ITEMS = "(UID FLAGS INTERNALDATE BODY.PEEK[])"
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

T = TypeVar("T")


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    SELECTED = "selected"


# ---------------------------------------------------------------------------
#  Protocol helpers
# ---------------------------------------------------------------------------

def xoauth2_string(user: str, access_token: str) -> bytes:
    """Raw (pre-base64) SASL XOAUTH2 initial response."""
    return f"user={user}\x01auth=Bearer {access_token}\x01\x01".encode()


def _xoauth2_authenticator(user: str, access_token: str) -> Callable[[bytes], bytes]:
    answered: List[bool] = []

    def respond(challenge: bytes) -> bytes:
        # A second challenge carries the server's error; an empty reply ends it.
        if answered:
            return b""
        answered.append(True)
        return xoauth2_string(user, access_token)

    return respond


def _quote(value: str) -> str:
    """Quote a string argument for an IMAP command."""
    if not value.isascii():
        raise ValueError(f"IMAP arguments must be ASCII: {value!r}")
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _imap_date(value: Union[dt.date, dt.datetime]) -> str:
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year:04d}"


def page_window(ids: Sequence[int], limit: int, offset: int) -> List[int]:
    """
    Newest-first page of ``ids`` (which are oldest-first).

    Skips the newest ``offset`` ids, then takes up to ``limit`` of the rest.
    """
    if limit < 0 or offset < 0:
        raise ValueError("limit and offset must not be negative")
    end = max(0, len(ids) - offset)
    start = max(0, end - limit)
    return list(reversed(ids[start:end]))


def list_criteria(since: Optional[dt.date] = None, unread_only: bool = False) -> List[str]:
    criteria: List[str] = []
    if unread_only:
        criteria.append("UNSEEN")
    if since is not None:
        criteria += ["SINCE", _imap_date(since)]
    return criteria or ["ALL"]


def search_criteria(
    query: Optional[str] = None,
    from_: Optional[str] = None,
    subject: Optional[str] = None,
    date_range: Optional[DateRange] = None,
) -> List[str]:
    """
    Inline search criteria: ASCII text filters and the date predicates.

    Non-ASCII text filters are left out; see :func:`utf8_terms`.
    """
    criteria: List[str] = []
    if query and query.isascii():
        criteria += ["OR", "BODY", _quote(query), "SUBJECT", _quote(query)]
    if from_ and from_.isascii():
        criteria += ["FROM", _quote(from_)]
    if subject and subject.isascii():
        criteria += ["SUBJECT", _quote(subject)]
    if date_range is not None:
        if date_range.start is not None:
            criteria += ["SINCE", _imap_date(date_range.start)]
        if date_range.end is not None:
            criteria += ["BEFORE", _imap_date(date_range.end)]
    return criteria or ["ALL"]


def utf8_terms(
    query: Optional[str] = None,
    from_: Optional[str] = None,
    subject: Optional[str] = None,
) -> List[Tuple[Tuple[str, ...], str]]:
    """
    Non-ASCII text filters as ``(keys, value)``.

    Each value is sent as a UTF-8 literal, one per SEARCH command.  A filter
    with several keys matches when any of them does.
    """
    terms: List[Tuple[Tuple[str, ...], str]] = []
    if query and not query.isascii():
        terms.append((("BODY", "SUBJECT"), query))
    if from_ and not from_.isascii():
        terms.append((("FROM",), from_))
    if subject and not subject.isascii():
        terms.append((("SUBJECT",), subject))
    return terms


_LIST_RE = re.compile(r'\((?P<flags>[^\)]*)\) (?:"(?P<delim>(?:\\.|[^"])*)"|NIL) (?P<name>.*)', re.IGNORECASE)


def _parse_imap_list_line(line: bytes) -> Optional[Dict[str, Any]]:
    """
    Parse a single result line from the IMAP LIST command into a
    dictionary with flags, delimiter and mailbox name.
    """
    text = line.decode(errors="replace")
    # Format: (<flags>) "<delimiter>" <name>
    m = _LIST_RE.match(text)
    if not m:
        return None
    flags_raw = m.group("flags").strip()
    delimiter = m.group("delim")
    name = m.group("name").strip()
    if name.startswith('"') and name.endswith('"') and len(name) >= 2:
        name = re.sub(r"\\(.)", r"\1", name[1:-1])
    return {
        "name": name,
        "delimiter": delimiter.replace("\\\\", "\\") if delimiter else None,
        "flags": flags_raw.split() if flags_raw else [],
    }


def _list_lines(data: Sequence[Any]) -> List[bytes]:
    lines: List[bytes] = []
    for item in data or []:
        if isinstance(item, tuple) and len(item) >= 2:
            # Literal mailbox name: (b'(\\HasNoChildren) "/" {7}', b'Foo Bar')
            prefix = re.sub(rb"\{\d+\}$", b"", item[0]).rstrip()
            name = item[1].replace(b"\\", b"\\\\").replace(b'"', b'\\"')
            lines.append(prefix + b' "' + name + b'"')
        elif isinstance(item, bytes):
            lines.append(item)
    return lines


# ---------------------------------------------------------------------------
#  Message parsing
# ---------------------------------------------------------------------------

def _decode_header(value: Optional[str]) -> str:
    """Decode an RFC 2047 encoded header into Unicode."""
    if not value:
        return ""
    try:
        return str(make_header(decode_header(value)))
    except Exception:
        return value


class _HTMLTextExtractor(HTMLParser):
    """Simple HTML to plain text converter for HTML-only messages."""

    _BREAK_TAGS = {"br", "p", "div", "section", "article", "li", "tr", "hr", "h1", "h2", "h3", "h4", "h5", "h6"}
    _SKIP_TAGS = {"script", "style", "head"}

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._chunks: List[str] = []
        self._skipping = 0

    def handle_starttag(self, tag: str, attrs: List[Tuple[str, Optional[str]]]) -> None:  # type: ignore[override]
        if tag in self._SKIP_TAGS:
            self._skipping += 1
        elif tag in {"br", "hr"}:
            self._chunks.append("\n")

    def handle_endtag(self, tag: str) -> None:  # type: ignore[override]
        if tag in self._SKIP_TAGS:
            self._skipping = max(0, self._skipping - 1)
        elif tag in self._BREAK_TAGS:
            self._chunks.append("\n")

    def handle_data(self, data: str) -> None:  # type: ignore[override]
        if data and not self._skipping:
            self._chunks.append(data)

    def get_text(self) -> str:
        raw = "".join(self._chunks)
        normalized = re.sub(r"\r\n?", "\n", raw)
        normalized = re.sub(r"\n{3,}", "\n\n", normalized)
        return normalized.strip()


def _html_to_text(value: str) -> str:
    parser = _HTMLTextExtractor()
    parser.feed(value)
    parser.close()
    return parser.get_text()


def _addresses(msg: Message, header: str) -> List[EmailAddress]:
    values = [str(v) for v in msg.get_all(header, [])]
    out: List[EmailAddress] = []
    for name, address in getaddresses(values):
        if not address:
            continue
        out.append(EmailAddress(address=address, display_name=_decode_header(name) or None))
    return out


def _parse_flags(meta: bytes) -> List[str]:
    m = re.search(rb"FLAGS \((.*?)\)", meta)
    if not m:
        return []
    return [flag.decode(errors="replace") for flag in m.group(1).split()]


def _parse_uid(meta: bytes) -> Optional[int]:
    m = re.search(rb"UID (\d+)", meta)
    return int(m.group(1)) if m else None


def _message_timestamp(msg: Message, meta: bytes) -> dt.datetime:
    if msg.get("Date"):
        try:
            dt_obj = parsedate_to_datetime(msg["Date"])
            return dt_obj if dt_obj.tzinfo else dt_obj.replace(tzinfo=dt.timezone.utc)
        except (TypeError, ValueError):
            pass
    internal = imaplib.Internaldate2tuple(meta)
    if internal is not None:
        return dt.datetime.fromtimestamp(time.mktime(internal), tz=dt.timezone.utc)
    return dt.datetime.now(dt.timezone.utc)


def _part_text(part: Message) -> str:
    charset = part.get_content_charset() or "utf-8"
    payload = part.get_payload(decode=True)
    if isinstance(payload, (bytes, bytearray)):
        try:
            return bytes(payload).decode(charset, errors="replace")
        except LookupError:
            return bytes(payload).decode("utf-8", errors="replace")
    raw_payload = part.get_payload(decode=False)
    return raw_payload if isinstance(raw_payload, str) else ""


def parse_message(uid: int, folder: str, meta: bytes, payload: bytes) -> MessageRecord:
    """Build a :class:`MessageRecord` from one FETCH response item."""
    if not payload:
        raise ValueError("empty message payload")
    msg = email.message_from_bytes(payload)

    text_body = ""
    html_body = ""
    attachments: List[AttachmentMeta] = []
    # Walk over each MIME part and collect body/attachments
    for part in msg.walk():
        if part.get_content_maintype() == "multipart":
            continue
        content_type = part.get_content_type()
        disposition = (part.get_content_disposition() or "").lower()
        filename = part.get_filename()
        is_body = content_type in ("text/plain", "text/html") and disposition != "attachment" and not filename
        if not is_body:
            data = part.get_payload(decode=True)
            content_id = part.get("Content-ID")
            attachments.append(AttachmentMeta(
                filename=_decode_header(filename) if filename else "attachment",
                content_type=content_type,
                size_bytes=len(data) if isinstance(data, (bytes, bytearray)) else 0,
                content_id=content_id.strip().strip("<>") if content_id else None,
            ))
        elif content_type == "text/plain":
            text_body += _part_text(part)
        else:
            html_body += _part_text(part)

    if not text_body and html_body:
        text_body = _html_to_text(html_body)

    return MessageRecord(
        id=str(uid),
        sequence_id=uid,
        canonical_message_id=(msg.get("Message-ID") or "").strip(),
        subject=_decode_header(msg.get("Subject")) or "(No Subject)",
        from_=_addresses(msg, "From"),
        to=_addresses(msg, "To"),
        cc=_addresses(msg, "Cc"),
        bcc=_addresses(msg, "Bcc"),
        timestamp=_message_timestamp(msg, meta),
        folder=folder,
        plain_body=text_body or None,
        html_body=html_body or None,
        attachments=attachments,
        flags=frozenset(_parse_flags(meta)),
    )


def _split_fetch_response(data: Sequence[Any]) -> Dict[int, Tuple[bytes, bytes]]:
    """
    Group an imaplib FETCH response by UID.

    Each message arrives as a ``(prefix, literal)`` tuple, optionally followed
    by a bytes item holding attributes sent after the literal.
    """
    items: List[List[bytes]] = []
    for part in data or []:
        if isinstance(part, tuple):
            meta = part[0] if isinstance(part[0], bytes) else b""
            payload = bytes(part[1]) if isinstance(part[1], (bytes, bytearray)) else b""
            items.append([meta, payload])
        elif isinstance(part, bytes) and items:
            items[-1][0] += b" " + part
    out: Dict[int, Tuple[bytes, bytes]] = {}
    for meta, payload in items:
        uid = _parse_uid(meta)
        if uid is not None:
            out[uid] = (meta, payload)
    return out


# ---------------------------------------------------------------------------
#  Client
# ---------------------------------------------------------------------------

class IMAPMailboxClient:
    """Read-only access to one Yahoo mailbox over a single IMAP session."""

    def __init__(
        self,
        credentials: OAuth2CredentialManager,
        config: MailboxConfig,
        *,
        imap_factory: Callable[[str, int], imaplib.IMAP4] = imaplib.IMAP4_SSL,
    ) -> None:
        self._credentials = credentials
        self._config = config
        self._imap_factory = imap_factory
        self._imap: Optional[imaplib.IMAP4] = None
        self._state = SessionState.DISCONNECTED
        self._folder: Optional[str] = None
        self._lock = threading.RLock()

    def __enter__(self) -> "IMAPMailboxClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.disconnect()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def selected_folder(self) -> Optional[str]:
        return self._folder if self._state is SessionState.SELECTED else None

    @property
    def is_connected(self) -> bool:
        return self._state is not SessionState.DISCONNECTED

    # --------------------------------------------------------------- Session

    def connect(self) -> None:
        with self._lock:
            if self._imap is None:
                self._open()

    def disconnect(self) -> None:
        with self._lock:
            self._teardown(graceful=True)

    def _open(self) -> imaplib.IMAP4:
        token = self._credentials.get_valid_access_token()
        host, port = self._config.host, self._config.port
        try:
            imap = self._imap_factory(host, port)
        except (OSError, imaplib.IMAP4.error) as exc:
            log.error("IMAP connection error: %s", exc)
            raise MailboxConnectionError(f"Could not connect to {host}:{port}: {exc}") from exc
        try:
            imap.authenticate("XOAUTH2", _xoauth2_authenticator(self._config.mail_address, token))
        except (imaplib.IMAP4.abort, OSError) as exc:
            self._shutdown_quietly(imap)
            raise MailboxConnectionError(f"Connection lost during authentication: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            self._shutdown_quietly(imap)
            log.error("IMAP authentication rejected for %s: %s", self._config.mail_address, exc)
            raise AuthenticationError(f"XOAUTH2 authentication failed: {exc}") from exc
        log.info("IMAP session opened to %s:%d as %s", host, port, self._config.mail_address)
        self._imap = imap
        self._state = SessionState.CONNECTED
        self._folder = None
        return imap

    def _teardown(self, graceful: bool) -> None:
        imap, self._imap = self._imap, None
        self._state = SessionState.DISCONNECTED
        self._folder = None
        if imap is None:
            return
        if graceful:
            try:
                imap.logout()
                return
            except (imaplib.IMAP4.error, OSError):
                pass
        self._shutdown_quietly(imap)

    @staticmethod
    def _shutdown_quietly(imap: imaplib.IMAP4) -> None:
        try:
            imap.shutdown()
        except (imaplib.IMAP4.error, OSError, AttributeError):
            pass

    def _run(self, operation: Callable[[imaplib.IMAP4], T]) -> T:
        """Run ``operation`` on the live session, reconnecting a stale one once."""
        with self._lock:
            may_retry = self._imap is not None
            while True:
                imap = self._imap or self._open()
                try:
                    return operation(imap)
                except MailboxError:
                    raise
                except (imaplib.IMAP4.abort, OSError) as exc:
                    self._teardown(graceful=False)
                    if may_retry:
                        log.warning("IMAP session dropped (%s); reconnecting", exc)
                        may_retry = False
                        continue
                    raise MailboxConnectionError(f"IMAP connection lost: {exc}") from exc
                except imaplib.IMAP4.error as exc:
                    raise MailboxError(str(exc)) from exc
                except ValueError:
                    raise
                except BaseException:
                    # Interrupted mid-command: the session state is unknown.
                    self._teardown(graceful=False)
                    raise

    def _select(self, imap: imaplib.IMAP4, folder: str) -> None:
        status, data = imap.select(_quote(folder), readonly=False)
        if status != "OK":
            self._state = SessionState.CONNECTED
            self._folder = None
            raise NotFoundError(f"Folder not found: {folder}")
        self._state = SessionState.SELECTED
        self._folder = folder

    @staticmethod
    def _search(imap: imaplib.IMAP4, criteria: List[str], literal: Optional[str] = None) -> List[int]:
        if literal is None:
            status, data = imap.uid("SEARCH", None, *criteria)  # type: ignore[arg-type]
        else:
            # imaplib appends the literal after the last argument.
            imap.literal = literal.encode("utf-8")
            status, data = imap.uid("SEARCH", "CHARSET", "UTF-8", *criteria)
        if status != "OK":
            raise MailboxError(f"SEARCH failed: {data!r}")
        if not data or not data[0]:
            return []
        return sorted(int(uid) for uid in data[0].split())

    def _search_text(
        self,
        imap: imaplib.IMAP4,
        criteria: List[str],
        terms: List[Tuple[Tuple[str, ...], str]],
    ) -> List[int]:
        if not terms:
            return self._search(imap, criteria)
        base = [] if criteria == ["ALL"] else criteria
        matched: Optional[set] = None
        for keys, value in terms:
            hits: set = set()
            for key in keys:
                hits.update(self._search(imap, base + [key], literal=value))
            matched = hits if matched is None else matched & hits
        return sorted(matched or ())

    @staticmethod
    def _fetch_raw(imap: imaplib.IMAP4, uids: List[int]) -> Dict[int, Tuple[bytes, bytes]]:
        status, data = imap.uid("FETCH", ",".join(str(uid) for uid in uids), FETCH_ITEMS)
        if status != "OK":
            raise MailboxError(f"FETCH failed: {data!r}")
        return _split_fetch_response(data)

    def _fetch(self, imap: imaplib.IMAP4, uids: List[int], folder: str) -> BatchReport[MessageRecord]:
        report: BatchReport[MessageRecord] = BatchReport()
        if not uids:
            return report
        parts = self._fetch_raw(imap, uids)
        for uid in uids:
            entry = parts.get(uid)
            if entry is None:
                report.skip(str(uid), "not returned by server")
                continue
            try:
                report.records.append(parse_message(uid, folder, *entry))
            except Exception as exc:
                log.error("Error parsing message %s in %s: %s", uid, folder, exc)
                report.skip(str(uid), f"parse error: {exc}")
        return report

    # ------------------------------------------------------------ Operations

    def list_messages_report(
        self,
        folder: str = "INBOX",
        limit: int = 50,
        offset: int = 0,
        since: Optional[dt.date] = None,
        unread_only: bool = False,
    ) -> BatchReport[MessageRecord]:
        criteria = list_criteria(since, unread_only)
        if limit < 0 or offset < 0:
            raise ValueError("limit and offset must not be negative")

        def operation(imap: imaplib.IMAP4) -> BatchReport[MessageRecord]:
            self._select(imap, folder)
            uids = page_window(self._search(imap, criteria), limit, offset)
            return self._fetch(imap, uids, folder)

        return self._run(operation)

    def list_messages(
        self,
        folder: str = "INBOX",
        limit: int = 50,
        offset: int = 0,
        since: Optional[dt.date] = None,
        unread_only: bool = False,
    ) -> List[MessageRecord]:
        """
        Messages in ``folder``, newest first.

        ``offset`` skips the newest matches, ``limit`` caps the page.  Messages
        that fail to parse are left out, so a page may come back short.
        """
        return self.list_messages_report(folder, limit, offset, since, unread_only).records

    def get_message(self, message_id: str, folder: str = "INBOX") -> MessageRecord:
        try:
            uid = int(str(message_id).strip())
        except ValueError:
            raise ValueError(f"message id must be a numeric UID: {message_id!r}") from None

        def operation(imap: imaplib.IMAP4) -> MessageRecord:
            self._select(imap, folder)
            entry = self._fetch_raw(imap, [uid]).get(uid)
            if entry is None:
                raise NotFoundError(f"Message {uid} not found in {folder}")
            try:
                return parse_message(uid, folder, *entry)
            except Exception as exc:
                raise MailboxError(f"Message {uid} in {folder} could not be parsed: {exc}") from exc

        return self._run(operation)

    def search_messages_report(
        self,
        query: Optional[str] = None,
        folder: str = "INBOX",
        from_: Optional[str] = None,
        subject: Optional[str] = None,
        date_range: Optional[DateRange] = None,
        limit: int = 50,
    ) -> BatchReport[MessageRecord]:
        criteria = search_criteria(query, from_, subject, date_range)
        terms = utf8_terms(query, from_, subject)
        if limit < 0:
            raise ValueError("limit must not be negative")

        def operation(imap: imaplib.IMAP4) -> BatchReport[MessageRecord]:
            self._select(imap, folder)
            uids = page_window(self._search_text(imap, criteria, terms), limit, 0)
            return self._fetch(imap, uids, folder)

        return self._run(operation)

    def search_messages(
        self,
        query: Optional[str] = None,
        folder: str = "INBOX",
        from_: Optional[str] = None,
        subject: Optional[str] = None,
        date_range: Optional[DateRange] = None,
        limit: int = 50,
    ) -> List[MessageRecord]:
        """
        Search ``folder``; all given filters must match.

        ``query`` matches the subject or the body.  The ``limit`` most recent
        hits are returned, newest first.  Non-ASCII terms are sent as
        UTF-8 literals (``SEARCH CHARSET UTF-8``).
        """
        return self.search_messages_report(query, folder, from_, subject, date_range, limit).records

    def list_folders(self) -> List[str]:
        """All folder paths, nested ones as ``parent<delimiter>child``."""

        def walk(imap: imaplib.IMAP4, prefix: str, delimiter: Optional[str], out: List[str]) -> None:
            pattern = f"{prefix}{delimiter}%" if prefix else "%"
            status, data = imap.list('""', _quote(pattern))
            if status != "OK":
                raise MailboxError(f"LIST failed for {pattern!r}: {data!r}")
            for line in _list_lines(data):
                entry = _parse_imap_list_line(line)
                if not entry or entry["name"] in out or entry["name"] == prefix:
                    continue
                out.append(entry["name"])
                flags = {flag.lower() for flag in entry["flags"]}
                if entry["delimiter"] and not flags & {"\\noinferiors", "\\hasnochildren"}:
                    walk(imap, entry["name"], entry["delimiter"], out)

        def operation(imap: imaplib.IMAP4) -> List[str]:
            folders: List[str] = []
            walk(imap, "", None, folders)
            return folders

        return self._run(operation)
