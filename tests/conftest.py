import email
import email.policy
import imaplib
from email.message import EmailMessage
from typing import Any, Callable, Dict, Iterable, List, Optional

import pytest

from errors import NoCredentialsError


class FakeCredentials:
    """Stands in for OAuth2CredentialManager in protocol client tests."""

    def __init__(self, token: Optional[str] = "access-token-123") -> None:
        self.token = token
        self.calls = 0

    def get_valid_access_token(self) -> str:
        self.calls += 1
        if self.token is None:
            raise NoCredentialsError()
        return self.token


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _matches(raw: bytes, key: str, text: str) -> bool:
    msg = email.message_from_bytes(raw, policy=email.policy.default)
    if key == "BODY":
        body = msg.get_body(("plain",))
        return body is not None and text in body.get_content()
    return text in str(msg[key.title()] or "")


class FakeIMAP:
    """
    In-memory IMAP server speaking the subset of the imaplib API the client uses.

    ``folders`` maps a folder name to ``{uid: raw message bytes}``.
    """

    def __init__(
        self,
        folders: Dict[str, Dict[int, bytes]],
        *,
        seen: Iterable[int] = (),
        delimiter: str = "/",
        reject_auth: bool = False,
    ) -> None:
        self.folders = folders
        self.seen = set(seen)
        self.delimiter = delimiter
        self.reject_auth = reject_auth
        self.selected: Optional[str] = None
        self.commands: List[tuple] = []
        self.auth_calls: List[tuple] = []
        self.search_override: Optional[List[int]] = None
        self.literal: Optional[bytes] = None
        self.literals: List[bytes] = []
        self.fail_next_command: Optional[BaseException] = None
        self.logged_out = False
        self.shut_down = False

    def _maybe_fail(self) -> None:
        if self.fail_next_command is not None:
            exc, self.fail_next_command = self.fail_next_command, None
            raise exc

    def authenticate(self, mechanism: str, authobject: Callable[[bytes], bytes]) -> tuple:
        self.auth_calls.append((mechanism, authobject(b"")))
        if self.reject_auth:
            raise imaplib.IMAP4.error("AUTHENTICATE failed.")
        return "OK", [b"AUTHENTICATE completed"]

    def select(self, mailbox: str, readonly: bool = False) -> tuple:
        self._maybe_fail()
        name = mailbox.strip('"')
        self.commands.append(("SELECT", name, readonly))
        if name not in self.folders:
            return "NO", [b"[NONEXISTENT] Unknown Mailbox"]
        self.selected = name
        return "OK", [str(len(self.folders[name])).encode()]

    def uid(self, command: str, *args: Any) -> tuple:
        self._maybe_fail()
        self.commands.append((command,) + args)
        messages = self.folders[self.selected or "INBOX"]
        if command == "SEARCH":
            criteria = [a for a in args if a is not None]
            literal, self.literal = self.literal, None
            if literal is not None:
                self.literals.append(literal)
            if self.search_override is not None:
                uids = self.search_override
            else:
                uids = sorted(messages)
                if "UNSEEN" in criteria:
                    uids = [u for u in uids if u not in self.seen]
                if literal is not None:
                    text = literal.decode("utf-8")
                    uids = [u for u in uids if _matches(messages[u], criteria[-1], text)]
            return "OK", [" ".join(str(u) for u in uids).encode()]
        if command == "FETCH":
            uid_set = args[0]
            out: List[Any] = []
            for seq, uid in enumerate(sorted(int(u) for u in uid_set.split(",")), start=1):
                raw = messages.get(uid)
                if raw is None:
                    continue
                flags = "\\Seen" if uid in self.seen else ""
                prefix = (
                    f'{seq} (UID {uid} FLAGS ({flags}) INTERNALDATE "15-Jan-2024 09:30:00 +0000" '
                    f"BODY[] {{{len(raw)}}}"
                ).encode()
                out.append((prefix, raw))
                out.append(b")")
            return "OK", out or [None]
        return "OK", []

    def list(self, directory: str = '""', pattern: str = '"*"') -> tuple:
        self._maybe_fail()
        prefix = pattern.strip('"')[:-1]
        names = sorted(self.folders)
        lines = []
        for name in names:
            rest = name[len(prefix):]
            if not name.startswith(prefix) or not rest or self.delimiter in rest:
                continue
            has_children = any(other.startswith(name + self.delimiter) for other in names)
            flag = "\\HasChildren" if has_children else "\\HasNoChildren"
            lines.append(f'({flag}) "{self.delimiter}" "{name}"'.encode())
        return "OK", lines

    def logout(self) -> tuple:
        self.logged_out = True
        return "BYE", [b"LOGOUT received"]

    def shutdown(self) -> None:
        self.shut_down = True


def make_email(
    subject: str = "Stub Subject",
    sender: str = "Sender Name <sender@example.com>",
    to: str = "receiver@example.com, Other <other@example.com>",
    body: str = "Plain body text",
    html: Optional[str] = None,
    attachment: Optional[bytes] = None,
    date: str = "Mon, 15 Jan 2024 09:30:00 +0000",
) -> bytes:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to
    msg["Date"] = date
    msg["Message-ID"] = f"<{abs(hash(subject))}@example.com>"
    if body is not None:
        msg.set_content(body)
    if html is not None:
        if body is None:
            msg.set_content(html, subtype="html")
        else:
            msg.add_alternative(html, subtype="html")
    if attachment is not None:
        msg.add_attachment(
            attachment,
            maintype="application",
            subtype="octet-stream",
            filename="stub.bin",
        )
    return msg.as_bytes()


@pytest.fixture()
def fake_credentials() -> FakeCredentials:
    return FakeCredentials()


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()
