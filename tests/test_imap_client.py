import datetime as dt
import imaplib
from typing import List

import pytest

from conftest import FakeCredentials, FakeIMAP, make_email
from errors import AuthenticationError, MailboxConnectionError, NoCredentialsError, NotFoundError
from imap_client import (
    IMAPMailboxClient,
    SessionState,
    list_criteria,
    page_window,
    parse_message,
    search_criteria,
    utf8_terms,
    xoauth2_string,
)
from models import DateRange, MailboxConfig

CONFIG = MailboxConfig(host="imap.example.com", port=993, mail_address="user@yahoo.com")


class Factory:
    """Hands out prepared FakeIMAP sessions in order and records the calls."""

    def __init__(self, *sessions: FakeIMAP) -> None:
        self.sessions: List[FakeIMAP] = list(sessions)
        self.calls: List[tuple] = []

    def __call__(self, host: str, port: int) -> FakeIMAP:
        self.calls.append((host, port))
        return self.sessions.pop(0)


def _inbox(count: int) -> dict:
    return {uid: make_email(subject=f"Message {uid}") for uid in range(1, count + 1)}


def _client(*sessions: FakeIMAP, credentials=None):
    factory = Factory(*sessions)
    client = IMAPMailboxClient(credentials or FakeCredentials(), CONFIG, imap_factory=factory)
    return client, factory


# ---------------------------------------------------------------- helpers


def test_xoauth2_string_format():
    assert xoauth2_string("user@yahoo.com", "tok") == b"user=user@yahoo.com\x01auth=Bearer tok\x01\x01"


@pytest.mark.parametrize(
    "count,limit,offset,expected",
    [
        (10, 3, 0, [10, 9, 8]),
        (10, 3, 2, [8, 7, 6]),
        (5, 3, 4, [1]),
        (5, 3, 5, []),
        (5, 3, 50, []),
        (5, 0, 0, []),
        (0, 10, 0, []),
        (3, 10, 0, [3, 2, 1]),
    ],
)
def test_page_window(count, limit, offset, expected):
    assert page_window(list(range(1, count + 1)), limit, offset) == expected


def test_page_window_rejects_negative_values():
    with pytest.raises(ValueError):
        page_window([1, 2, 3], -1, 0)


def test_list_criteria():
    assert list_criteria() == ["ALL"]
    assert list_criteria(dt.date(2024, 1, 5), unread_only=True) == ["UNSEEN", "SINCE", "05-Jan-2024"]


def test_search_criteria_combines_filters():
    criteria = search_criteria(
        query="invoice",
        from_="billing@example.com",
        subject="March",
        date_range=DateRange(start=dt.date(2024, 1, 1), end=dt.date(2024, 2, 1)),
    )
    assert criteria == [
        "OR", "BODY", '"invoice"', "SUBJECT", '"invoice"',
        "FROM", '"billing@example.com"',
        "SUBJECT", '"March"',
        "SINCE", "01-Jan-2024",
        "BEFORE", "01-Feb-2024",
    ]
    assert search_criteria() == ["ALL"]


def test_search_criteria_escapes_quotes():
    assert search_criteria(subject='say "hi"') == ["SUBJECT", '"say \\"hi\\""']


def test_search_criteria_leaves_out_non_ascii_text():
    criteria = search_criteria(query="Café", from_="ada@example.com", date_range=DateRange(start=dt.date(2024, 3, 1)))
    assert criteria == ["FROM", '"ada@example.com"', "SINCE", "01-Mar-2024"]
    assert search_criteria(subject="Zoë") == ["ALL"]


def test_utf8_terms():
    assert utf8_terms(query="Café", from_="Zoë", subject="Plan") == [
        (("BODY", "SUBJECT"), "Café"),
        (("FROM",), "Zoë"),
    ]
    assert utf8_terms(query="report") == []


def test_date_range_rejects_inverted_bounds():
    with pytest.raises(ValueError):
        DateRange(start=dt.date(2024, 2, 1), end=dt.date(2024, 1, 1))


def test_parse_message_collects_attachment_metadata():
    raw = make_email(attachment=b"\x00" * 42)
    record = parse_message(7, "INBOX", b"7 (UID 7 FLAGS (\\Seen))", raw)
    assert record.id == "7"
    assert record.plain_body.strip() == "Plain body text"
    assert [(a.filename, a.content_type, a.size_bytes) for a in record.attachments] == [
        ("stub.bin", "application/octet-stream", 42)
    ]
    assert record.unread is False
    assert record.to_dict()["attachments"][0]["size"] == 42


def test_parse_message_html_only_gets_plain_text():
    raw = make_email(body=None, html="<p>Hello <b>there</b></p><script>x()</script>")
    record = parse_message(1, "INBOX", b"1 (UID 1 FLAGS ())", raw)
    assert record.html_body is not None
    assert record.plain_body == "Hello there"


def test_parse_message_defaults_missing_subject():
    raw = b"From: a@example.com\r\nDate: Mon, 15 Jan 2024 09:30:00 +0000\r\n\r\nbody\r\n"
    record = parse_message(3, "INBOX", b"3 (UID 3 FLAGS ())", raw)
    assert record.subject == "(No Subject)"
    assert record.timestamp == dt.datetime(2024, 1, 15, 9, 30, tzinfo=dt.timezone.utc)


# ---------------------------------------------------------------- session


def test_connect_authenticates_with_xoauth2():
    session = FakeIMAP({"INBOX": {}})
    client, factory = _client(session)
    client.connect()
    assert factory.calls == [("imap.example.com", 993)]
    assert session.auth_calls == [("XOAUTH2", xoauth2_string("user@yahoo.com", "access-token-123"))]
    assert client.state is SessionState.CONNECTED


def test_rejected_credential_raises_authentication_error():
    session = FakeIMAP({"INBOX": {}}, reject_auth=True)
    client, _ = _client(session)
    with pytest.raises(AuthenticationError):
        client.connect()
    assert client.state is SessionState.DISCONNECTED
    assert session.shut_down


def test_unreachable_server_raises_connection_error():
    def factory(host, port):
        raise OSError("connection refused")

    client = IMAPMailboxClient(FakeCredentials(), CONFIG, imap_factory=factory)
    with pytest.raises(MailboxConnectionError):
        client.list_messages()
    assert client.state is SessionState.DISCONNECTED


def test_missing_credentials_propagate():
    client, factory = _client(FakeIMAP({"INBOX": {}}), credentials=FakeCredentials(token=None))
    with pytest.raises(NoCredentialsError):
        client.list_messages()
    assert factory.calls == []


def test_session_is_reused_between_operations():
    session = FakeIMAP({"INBOX": _inbox(3)})
    client, factory = _client(session)
    client.list_messages()
    client.list_messages(limit=1)
    assert len(factory.calls) == 1
    assert client.selected_folder == "INBOX"


def test_dropped_session_is_reopened_once():
    first = FakeIMAP({"INBOX": _inbox(2)})
    second = FakeIMAP({"INBOX": _inbox(2)})
    client, factory = _client(first, second)
    client.list_messages()
    first.fail_next_command = imaplib.IMAP4.abort("socket error: EOF")

    messages = client.list_messages()

    assert [m.sequence_id for m in messages] == [2, 1]
    assert len(factory.calls) == 2
    assert first.shut_down


def test_fresh_session_drop_raises_connection_error():
    session = FakeIMAP({"INBOX": _inbox(2)})
    session.fail_next_command = imaplib.IMAP4.abort("socket error: EOF")
    client, factory = _client(session)
    with pytest.raises(MailboxConnectionError):
        client.list_messages()
    assert len(factory.calls) == 1
    assert client.state is SessionState.DISCONNECTED


def test_interrupted_command_closes_session():
    first = FakeIMAP({"INBOX": _inbox(1)})
    second = FakeIMAP({"INBOX": _inbox(1)})
    client, factory = _client(first, second)
    first.fail_next_command = KeyboardInterrupt()
    with pytest.raises(KeyboardInterrupt):
        client.list_messages()
    assert first.shut_down
    assert client.state is SessionState.DISCONNECTED

    assert [m.sequence_id for m in client.list_messages()] == [1]
    assert len(factory.calls) == 2


def test_disconnect_is_idempotent():
    session = FakeIMAP({"INBOX": {}})
    client, _ = _client(session)
    client.connect()
    client.disconnect()
    client.disconnect()
    assert session.logged_out
    assert not client.is_connected


# ------------------------------------------------------------- operations


def test_list_messages_newest_first_with_offset():
    session = FakeIMAP({"INBOX": _inbox(10)})
    client, _ = _client(session)
    messages = client.list_messages(limit=3, offset=2)
    assert [m.sequence_id for m in messages] == [8, 7, 6]
    assert [m.subject for m in messages] == ["Message 8", "Message 7", "Message 6"]
    assert messages[0].folder == "INBOX"
    assert [a.address for a in messages[0].from_] == ["sender@example.com"]
    assert [a.address for a in messages[0].to] == ["receiver@example.com", "other@example.com"]


def test_list_messages_offset_past_end_is_empty():
    session = FakeIMAP({"INBOX": _inbox(4)})
    client, _ = _client(session)
    assert client.list_messages(limit=10, offset=4) == []
    assert not [c for c in session.commands if c[0] == "FETCH"]


def test_list_messages_unread_only_sends_unseen():
    session = FakeIMAP({"INBOX": _inbox(3)}, seen=[2])
    client, _ = _client(session)
    messages = client.list_messages(unread_only=True, since=dt.date(2024, 1, 15))
    assert [m.sequence_id for m in messages] == [3, 1]
    search = [c for c in session.commands if c[0] == "SEARCH"][0]
    assert search[2:] == ("UNSEEN", "SINCE", "15-Jan-2024")


def test_list_messages_skips_unparseable_message():
    inbox = _inbox(3)
    inbox[2] = b""
    session = FakeIMAP({"INBOX": inbox})
    client, _ = _client(session)
    report = client.list_messages_report()
    assert [m.sequence_id for m in report.records] == [3, 1]
    assert [s.ref for s in report.skipped] == ["2"]


def test_list_messages_unknown_folder():
    client, _ = _client(FakeIMAP({"INBOX": {}}))
    with pytest.raises(NotFoundError):
        client.list_messages(folder="Nope")
    assert client.state is SessionState.CONNECTED


def test_get_message_returns_full_record():
    inbox = {5: make_email(subject="Full", html="<p>rich</p>", attachment=b"abc")}
    client, _ = _client(FakeIMAP({"Archive": inbox}))
    record = client.get_message("5", folder="Archive")
    assert record.subject == "Full"
    assert record.folder == "Archive"
    assert record.html_body is not None
    assert record.attachments[0].size_bytes == 3


def test_get_message_missing_uid():
    client, _ = _client(FakeIMAP({"INBOX": _inbox(2)}))
    with pytest.raises(NotFoundError):
        client.get_message("99")


def test_get_message_rejects_non_numeric_id():
    client, factory = _client(FakeIMAP({"INBOX": {}}))
    with pytest.raises(ValueError):
        client.get_message("abc")
    assert factory.calls == []


def test_search_messages_returns_most_recent_hits():
    session = FakeIMAP({"INBOX": _inbox(6)})
    session.search_override = [1, 3, 5]
    client, _ = _client(session)
    messages = client.search_messages(query="report", limit=2)
    assert [m.sequence_id for m in messages] == [5, 3]
    search = [c for c in session.commands if c[0] == "SEARCH"][0]
    assert search[2:] == ("OR", "BODY", '"report"', "SUBJECT", '"report"')


def test_search_messages_sends_non_ascii_query_as_utf8_literal():
    inbox = {
        1: make_email(subject="Café meeting"),
        2: make_email(subject="Lunch", body="Meet at the Café"),
        3: make_email(subject="Other"),
    }
    session = FakeIMAP({"INBOX": inbox})
    client, _ = _client(session)
    messages = client.search_messages(query="Café")
    assert [m.sequence_id for m in messages] == [2, 1]
    searches = [c[1:] for c in session.commands if c[0] == "SEARCH"]
    assert searches == [("CHARSET", "UTF-8", "BODY"), ("CHARSET", "UTF-8", "SUBJECT")]
    assert session.literals == ["Café".encode("utf-8")] * 2
    assert session.literal is None


def test_search_messages_intersects_utf8_and_ascii_filters():
    inbox = {
        1: make_email(subject="Plan", sender="Zoë <zoe@example.com>"),
        2: make_email(subject="Plan", sender="Bob <bob@example.com>"),
    }
    session = FakeIMAP({"INBOX": inbox})
    client, _ = _client(session)
    messages = client.search_messages(from_="Zoë", subject="Plan")
    assert [m.sequence_id for m in messages] == [1]
    searches = [c[1:] for c in session.commands if c[0] == "SEARCH"]
    assert searches == [("CHARSET", "UTF-8", "SUBJECT", '"Plan"', "FROM")]
    assert session.literals == ["Zoë".encode("utf-8")]


def test_list_folders_walks_hierarchy():
    folders = {name: {} for name in ["INBOX", "Sent", "Archive", "Archive/2023", "Archive/2024", "Archive/2024/Q1"]}
    client, _ = _client(FakeIMAP(folders))
    assert sorted(client.list_folders()) == sorted(folders)


def test_list_folders_with_dot_delimiter():
    folders = {name: {} for name in ["INBOX", "Projects", "Projects.Alpha"]}
    client, _ = _client(FakeIMAP(folders, delimiter="."))
    assert client.list_folders() == ["INBOX", "Projects", "Projects.Alpha"]
