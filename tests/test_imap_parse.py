"""Tests for IMAP response parsing, error classification and session setup."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta, timezone
from types import SimpleNamespace

import aioimaplib
import pytest

from imap_mailsync.gateway.base import (
    AuthFailureError,
    MalformedContentError,
    NotFoundError,
    PermissionDeniedError,
    QuotaExceededError,
    TransientError,
)
from imap_mailsync.gateway.imap import (
    ImapError,
    ImapGateway,
    _classify,
    _extract_literal,
    _parse_fetch_metadata,
    _parse_list_response,
    _parse_search_response,
    _parse_select_response,
    _quote,
    parse_internal_date,
)


def test_parse_list_response_handles_common_formats() -> None:
    """LIST parsing should support quoted and unquoted mailbox names."""
    lines = [
        b'* LIST (\\HasNoChildren) "/" "INBOX"\r\n',
        b'* LIST (\\HasNoChildren) "/" "Sent Messages"\r\n',
        b'* LIST (\\Noselect \\HasChildren) NIL "Archive"\r\n',
        b'* LIST (\\HasNoChildren) "/" INBOX\r\n',
    ]

    entries = _parse_list_response(lines)
    assert [entry.name for entry in entries] == ["INBOX", "Sent Messages", "Archive"]
    assert entries[0].delimiter == "/"
    assert entries[2].delimiter is None
    assert entries[2].flags == frozenset({"\\Noselect", "\\HasChildren"})


def test_parse_list_response_handles_literal_mailbox_name() -> None:
    """LIST parsing should handle literal mailbox names."""
    lines = [
        b'* LIST (\\HasNoChildren) "." {13}\r\n',
        b"Sent Messages\r\n",
    ]
    entries = _parse_list_response(lines)
    assert [entry.name for entry in entries] == ["Sent Messages"]
    assert entries[0].delimiter == "."


def test_parse_list_response_decodes_modified_utf7() -> None:
    """Mailbox names should be decoded from modified UTF-7."""
    lines = [b'* LIST (\\HasNoChildren) "/" "&AMk-t&AOk-"']
    assert [entry.name for entry in _parse_list_response(lines)] == ["Été"]


def test_parse_list_response_delimiter_query() -> None:
    """The empty-name delimiter query should only be kept on request."""
    lines = [b'* LIST (\\Noselect) "." ""']
    assert _parse_list_response(lines) == []
    entries = _parse_list_response(lines, keep_empty=True)
    assert [(entry.name, entry.delimiter) for entry in entries] == [("", ".")]


def test_parse_select_and_search_responses() -> None:
    """SELECT and UID SEARCH responses should yield UIDVALIDITY, EXISTS and UIDs."""
    select_lines = [
        b"3 EXISTS",
        b"0 RECENT",
        b"OK [UIDVALIDITY 1234567] UIDs valid",
        b"[READ-WRITE] SELECT completed",
    ]
    assert _parse_select_response(select_lines) == (1234567, 3)
    assert _parse_search_response([b"7 3 5", b"SEARCH completed (Success)"]) == [3, 5, 7]
    assert _parse_search_response([b"* SEARCH", b"SEARCH completed"]) == []


def test_parse_fetch_metadata_with_header_literal() -> None:
    """FETCH metadata parsing should read UID, size, date, flags and Message-ID."""
    header = b"Message-ID: <ABC@example.com>\r\n\r\n"
    lines = [
        b'1 FETCH (UID 10 RFC822.SIZE 120 INTERNALDATE "17-Jul-1996 02:44:25 -0700" '
        b"FLAGS (\\Seen \\Flagged) BODY[HEADER.FIELDS (MESSAGE-ID)] {%d}" % len(header),
        bytearray(header),
        b")",
        b'2 FETCH (UID 11 RFC822.SIZE 80 INTERNALDATE " 1-Jan-2020 00:00:00 +0000" FLAGS ())',
        b"Success",
    ]

    items = _parse_fetch_metadata(lines)
    assert [item.uid for item in items] == [10, 11]
    first, second = items
    assert first.size == 120
    assert first.flags == ("\\Seen", "\\Flagged")
    assert first.message_id == "<abc@example.com>"
    assert first.internal_date == datetime(
        1996, 7, 17, 2, 44, 25, tzinfo=timezone(timedelta(hours=-7))
    )
    assert second.flags == ()
    assert second.message_id is None
    assert second.internal_date == datetime(2020, 1, 1, tzinfo=UTC)


def test_parse_internal_date_rejects_garbage() -> None:
    """Malformed INTERNALDATE values should parse to None."""
    assert parse_internal_date("yesterday") is None
    assert parse_internal_date("31-Foo-2020 00:00:00 +0000") is None
    assert parse_internal_date("31-Feb-2020 00:00:00 +0000") is None
    assert parse_internal_date("1-Jan-2020 10:00:00 +0100") == datetime(2020, 1, 1, 9, tzinfo=UTC)


def test_extract_literal_returns_message_bytes() -> None:
    """BODY[] fetches should return exactly the literal payload."""
    body = b"Subject: hi\r\n\r\n" + b"x" * 100
    lines = [b"1 FETCH (UID 4 BODY[] {%d}" % len(body), bytearray(body), b")", b"Success"]
    assert _extract_literal(lines) == body
    with pytest.raises(MalformedContentError):
        _extract_literal([])


@pytest.mark.parametrize(
    ("operation", "result", "text", "expected"),
    [
        ("LOGIN", "NO", b"[AUTHENTICATIONFAILED] Invalid credentials", AuthFailureError),
        ("APPEND", "NO", b"[OVERQUOTA] Mailbox is full", QuotaExceededError),
        ("APPEND", "NO", b"[TRYCREATE] No such mailbox", NotFoundError),
        ("CREATE", "NO", b"[NOPERM] Not allowed", PermissionDeniedError),
        ("SELECT", "NO", b"[UNAVAILABLE] Backend down", TransientError),
        ("FETCH", "NO", b"Server Busy, please try again later", TransientError),
        ("APPEND", "BAD", b"Invalid message literal", MalformedContentError),
        ("FETCH", "NO", b"Something odd", ImapError),
    ],
)
def test_classify_maps_response_codes(
    operation: str,
    result: str,
    text: bytes,
    expected: type[Exception],
) -> None:
    """Tagged NO/BAD responses should map onto the gateway error taxonomy."""
    error = _classify(operation, SimpleNamespace(result=result, lines=[text]))
    assert type(error) is expected


def test_classify_uses_default_for_unknown_failures() -> None:
    """Operations may supply a more specific fallback error."""
    resp = SimpleNamespace(result="NO", lines=[b"Mailbox doesn't exist"])
    error = _classify("SELECT", resp, default=NotFoundError)
    assert isinstance(error, NotFoundError)


def test_quote_escapes_specials() -> None:
    """Mailbox names should be quoted with backslashes and quotes escaped."""
    assert _quote("") == '""'
    assert _quote('a"b\\c') == '"a\\"b\\\\c"'


class _RejectingImap:
    """Stands in for `aioimaplib.IMAP4` with a server that refuses the login."""

    instances: list[_RejectingImap] = []

    def __init__(self, host: str, port: int, timeout: float) -> None:
        self.logged_out = False
        _RejectingImap.instances.append(self)

    async def wait_hello_from_server(self) -> None:
        return None

    async def login(self, username: str, password: str) -> SimpleNamespace:
        return SimpleNamespace(result="NO", lines=[b"[AUTHENTICATIONFAILED] Invalid credentials"])

    async def logout(self) -> SimpleNamespace:
        self.logged_out = True
        return SimpleNamespace(result="OK", lines=[])


def test_rejected_login_closes_the_session(monkeypatch: pytest.MonkeyPatch) -> None:
    """A refused LOGIN should log the half-open session out before failing."""
    _RejectingImap.instances.clear()
    monkeypatch.setattr(aioimaplib, "IMAP4", _RejectingImap)
    gateway = ImapGateway(host="imap.example.com", port=143, ssl=False, username="u", password="p")

    with pytest.raises(AuthFailureError):
        asyncio.run(gateway.connect())
    assert [imap.logged_out for imap in _RejectingImap.instances] == [True]
