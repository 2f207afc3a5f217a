"""
Record types returned by the credential manager and the protocol clients.

Records are plain dataclasses.  ``to_dict`` renders the JSON shape handed to
MCP callers (camelCase keys, ISO-8601 datetimes).
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Generic, List, Optional, TypeVar


def _iso(value: Optional[dt.datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------- Credentials

@dataclass(frozen=True)
class CredentialSet:
    """One OAuth2 grant.  Replaced wholesale, never mutated in place."""

    access_token: str
    refresh_token: str
    expires_at: int  # epoch millis
    token_type: str = "Bearer"

    def is_expiring(self, now_ms: int, margin_ms: int) -> bool:
        return now_ms >= self.expires_at - margin_ms

    def to_json(self) -> Dict[str, Any]:
        # Key order is fixed so repeated saves are byte-identical.
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresAt": self.expires_at,
            "tokenType": self.token_type,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "CredentialSet":
        access_token = data.get("accessToken")
        refresh_token = data.get("refreshToken")
        expires_at = data.get("expiresAt")
        if not access_token or not refresh_token or not isinstance(expires_at, int) or isinstance(expires_at, bool):
            raise ValueError("credential file is missing accessToken, refreshToken or expiresAt")
        return cls(
            access_token=str(access_token),
            refresh_token=str(refresh_token),
            expires_at=expires_at,
            token_type=str(data.get("tokenType") or "Bearer"),
        )


# -------------------------------------------------------------------- Mailbox

@dataclass(frozen=True)
class MailboxConfig:
    host: str
    port: int
    mail_address: str


@dataclass(frozen=True)
class DateRange:
    """Inclusive ``start`` (SINCE) and exclusive ``end`` (BEFORE) for mail search."""

    start: Optional[dt.date] = None
    end: Optional[dt.date] = None

    def __post_init__(self) -> None:
        if self.start is not None and self.end is not None and _as_date(self.start) > _as_date(self.end):
            raise ValueError("date range start must not be after its end")


def _as_date(value: dt.date) -> dt.date:
    return value.date() if isinstance(value, dt.datetime) else value


@dataclass(frozen=True)
class EmailAddress:
    address: str
    display_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.display_name, "address": self.address}


@dataclass(frozen=True)
class AttachmentMeta:
    """Attachment metadata only; payload bytes are never kept."""

    filename: str
    content_type: str
    size_bytes: int
    content_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "contentType": self.content_type,
            "size": self.size_bytes,
            "cid": self.content_id,
        }


@dataclass
class MessageRecord:
    """
    A parsed message.

    ``sequence_id`` is the IMAP UID and only identifies the message inside
    ``folder``.  ``id`` is its string form.
    """

    id: str
    sequence_id: int
    canonical_message_id: str
    subject: str
    from_: List[EmailAddress]
    to: List[EmailAddress]
    cc: List[EmailAddress]
    bcc: List[EmailAddress]
    timestamp: dt.datetime
    folder: str
    plain_body: Optional[str] = None
    html_body: Optional[str] = None
    attachments: List[AttachmentMeta] = field(default_factory=list)
    flags: FrozenSet[str] = frozenset()

    @property
    def unread(self) -> bool:
        return "\\Seen" not in self.flags

    def snippet(self, length: int = 200) -> str:
        return (self.plain_body or self.html_body or "")[:length]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "uid": self.sequence_id,
            "messageId": self.canonical_message_id,
            "subject": self.subject,
            "from": [a.to_dict() for a in self.from_],
            "to": [a.to_dict() for a in self.to],
            "cc": [a.to_dict() for a in self.cc],
            "bcc": [a.to_dict() for a in self.bcc],
            "date": _iso(self.timestamp),
            "text": self.plain_body,
            "html": self.html_body,
            "attachments": [a.to_dict() for a in self.attachments],
            "flags": sorted(self.flags),
            "unread": self.unread,
            "folder": self.folder,
        }

    def to_summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "uid": self.sequence_id,
            "subject": self.subject,
            "from": [a.to_dict() for a in self.from_],
            "to": [a.to_dict() for a in self.to],
            "date": _iso(self.timestamp),
            "unread": self.unread,
            "snippet": self.snippet(),
        }


# ------------------------------------------------------------------- Calendar

@dataclass(frozen=True)
class CalendarCollection:
    id: str
    display_name: str
    location_url: str
    description: Optional[str] = None
    color: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.display_name,
            "description": self.description,
            "url": self.location_url,
            "color": self.color,
        }


@dataclass(frozen=True)
class CalendarEventRecord:
    id: str
    summary: str
    start: dt.datetime
    end: dt.datetime
    calendar_id: str
    description: Optional[str] = None
    location: Optional[str] = None
    organizer: Optional[EmailAddress] = None
    status: str = "CONFIRMED"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "summary": self.summary,
            "description": self.description,
            "start": _iso(self.start),
            "end": _iso(self.end),
            "location": self.location,
            "organizer": self.organizer.to_dict() if self.organizer else None,
            "status": self.status,
            "calendarId": self.calendar_id,
        }


# ---------------------------------------------------------------- Batch reads

T = TypeVar("T")


@dataclass(frozen=True)
class Skipped:
    """An item a batch read left out, with the reason."""

    ref: str
    reason: str


@dataclass
class BatchReport(Generic[T]):
    """Outcome of a batch read: the parsed records plus what was skipped."""

    records: List[T] = field(default_factory=list)
    skipped: List[Skipped] = field(default_factory=list)

    def skip(self, ref: str, reason: str) -> None:
        self.skipped.append(Skipped(ref=ref, reason=reason))

    def extend(self, other: "BatchReport[T]") -> None:
        self.records.extend(other.records)
        self.skipped.extend(other.skipped)
