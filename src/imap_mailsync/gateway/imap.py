"""IMAP gateway built on aioimaplib."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import aioimaplib
from imapclient import imap_utf7

from imap_mailsync.gateway.base import (
    AuthFailureError,
    Folder,
    FolderHandle,
    GatewayError,
    MalformedContentError,
    MessageRef,
    NotFoundError,
    PermissionDeniedError,
    QuotaExceededError,
    TransientError,
    display_path,
)
from imap_mailsync.utils.email import parse_message_id

if TYPE_CHECKING:
    from imap_mailsync.config.settings import EndpointSettings

_LIST_MAILBOX_RE = re.compile(
    rb'^\* (?:LIST|LSUB) \((?P<flags>[^\)]*)\)\s+(?P<delim>NIL|"[^"]*"|[^\s]+)\s+(?P<name>.+)$',
    re.IGNORECASE,
)
_LITERAL_RE = re.compile(rb"^\{(?P<n>\d+)\}$")
_FETCH_LITERAL_RE = re.compile(rb"\{(?P<n>\d+)\}$")
_FETCH_START_RE = re.compile(rb"^(?:\* )?\d+ FETCH \(", re.IGNORECASE)
_UID_RE = re.compile(rb"\bUID (?P<uid>\d+)", re.IGNORECASE)
_SIZE_RE = re.compile(rb"RFC822\.SIZE (?P<size>\d+)", re.IGNORECASE)
_INTERNALDATE_RE = re.compile(rb'INTERNALDATE "(?P<date>[^"]+)"', re.IGNORECASE)
_FLAGS_RE = re.compile(rb"FLAGS \((?P<flags>[^\)]*)\)", re.IGNORECASE)
_UIDVALIDITY_RE = re.compile(rb"\[UIDVALIDITY (?P<uidvalidity>\d+)\]")
_EXISTS_RE = re.compile(rb"(?i)(?:\* )?(?P<exists>\d+) EXISTS")
_APPENDUID_RE = re.compile(rb"\[APPENDUID (?P<uidvalidity>\d+) (?P<uid>\d+)\]", re.IGNORECASE)
_RESPONSE_CODE_RE = re.compile(rb"\[(?P<code>[A-Z][A-Z-]*)")
_DATE_RE = re.compile(
    r"^(?P<day>\d{1,2})-(?P<mon>[A-Za-z]{3})-(?P<year>\d{4}) "
    r"(?P<h>\d{2}):(?P<m>\d{2}):(?P<s>\d{2}) (?P<sign>[+-])(?P<tzh>\d{2})(?P<tzm>\d{2})$",
)
_MONTHS = {
    name: idx
    for idx, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"],
        start=1,
    )
}

_METADATA_ITEMS = "(UID RFC822.SIZE INTERNALDATE FLAGS BODY.PEEK[HEADER.FIELDS (MESSAGE-ID)])"

# Busy-server wording seen from Exchange/Microsoft 365 and others.
_TRANSIENT_PATTERNS = (b"UNAVAILABLE", b"Server Busy", b"try again", b"THROTTLED")

_AUTH_CODES = {b"AUTHENTICATIONFAILED", b"AUTHORIZATIONFAILED", b"EXPIRED"}
_TRANSIENT_CODES = {b"UNAVAILABLE", b"INUSE"}
_QUOTA_CODES = {b"OVERQUOTA", b"LIMIT"}
_NOT_FOUND_CODES = {b"NONEXISTENT", b"TRYCREATE"}
_PERMISSION_CODES = {b"NOPERM"}

_CONNECTION_ERRORS = (
    TimeoutError,
    OSError,
    EOFError,
    aioimaplib.Abort,
    aioimaplib.CommandTimeout,
)

logger = logging.getLogger(__name__)


class ImapError(GatewayError):
    """Raised for IMAP responses that fit no more specific category."""


@dataclass(frozen=True)
class ListEntry:
    """One mailbox line of a LIST/LSUB response."""

    name: str
    delimiter: str | None
    flags: frozenset[str]


@dataclass(frozen=True)
class FetchedMetadata:
    """Metadata parsed from one FETCH response item."""

    uid: int
    size: int | None
    internal_date: datetime | None
    flags: tuple[str, ...]
    message_id: str | None


class ImapGateway:
    """`ConnectionGateway` implementation for one IMAP account.

    The session is created lazily. Socket errors and timeouts drop it and
    surface as `TransientError`; the next call reconnects, logs in again and
    re-selects the previously selected mailbox.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        ssl: bool,
        username: str,
        password: str,
        timeout_seconds: float = 120.0,
        fetch_batch_size: int = 200,
    ) -> None:
        """Initialize the gateway.

        Args:
            host: IMAP host.
            port: IMAP port.
            ssl: Whether to use implicit TLS.
            username: IMAP username.
            password: IMAP password or app password.
            timeout_seconds: Network timeout for each IMAP command.
            fetch_batch_size: UIDs per metadata FETCH command.
        """
        self._host = host
        self._port = port
        self._ssl = ssl
        self._username = username
        self._password = password
        self._timeout = timeout_seconds
        self._batch_size = fetch_batch_size
        self._imap: aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL | None = None
        self._delimiter: str | None = None
        self._selected: tuple[str, ...] | None = None

    @classmethod
    def from_settings(cls, settings: EndpointSettings) -> ImapGateway:
        """Create a gateway from endpoint settings."""
        return cls(
            host=settings.host,
            port=settings.port,
            ssl=settings.ssl,
            username=settings.username,
            password=settings.password,
            timeout_seconds=settings.timeout_seconds,
            fetch_batch_size=settings.fetch_batch_size,
        )

    async def connect(self) -> None:
        """Connect and authenticate.

        Raises:
            AuthFailureError: If the server rejects the credentials.
            TransientError: If the server cannot be reached.
        """
        if self._imap is not None:
            return
        if self._ssl:
            imap = aioimaplib.IMAP4_SSL(self._host, self._port, timeout=self._timeout)
        else:
            imap = aioimaplib.IMAP4(self._host, self._port, timeout=self._timeout)
        try:
            await asyncio.wait_for(imap.wait_hello_from_server(), timeout=self._timeout)
            resp = await asyncio.wait_for(
                imap.login(self._username, self._password),
                timeout=self._timeout,
            )
        except _CONNECTION_ERRORS as exc:
            raise TransientError(f"IMAP connect to {self._host}:{self._port} failed: {exc!r}") from exc
        if resp.result != "OK":
            await _close_quietly(imap, timeout=self._timeout)
            raise AuthFailureError(f"IMAP login failed for {self._username}: {resp.result} {resp.lines!r}")
        self._imap = imap
        logger.debug("IMAP session established", extra={"host": self._host})

        if self._selected is not None:
            path, self._selected = self._selected, None
            await self._ensure_selected(path)

    async def logout(self) -> None:
        """Logout and close the IMAP connection."""
        if self._imap is None:
            return
        try:
            await _close_quietly(self._imap, timeout=self._timeout)
        finally:
            self._imap = None
            self._selected = None

    async def list_folders(
        self,
        parent: tuple[str, ...],
        *,
        subscribed_only: bool,
    ) -> list[Folder]:
        """List the direct children of `parent` with LIST, or LSUB when `subscribed_only`.

        Args:
            parent: Parent folder segments; `()` lists the top level.
            subscribed_only: Whether to list subscribed folders only.

        Returns:
            Child folders with their selectability and children hints.

        Raises:
            NotFoundError: If `parent` does not exist.
        """
        delimiter = await self._hierarchy_delimiter()
        pattern = f"{self._mailbox_name(parent)}{delimiter}%" if parent else "%"
        command = "LSUB" if subscribed_only else "LIST"

        def _call(imap: Any) -> Awaitable[Any]:
            method = imap.lsub if subscribed_only else imap.list
            return method('""', _quote(self._encode(pattern)))

        resp = await self._run(command, _call)
        if resp.result != "OK":
            raise _classify(command, resp, default=NotFoundError if parent else ImapError)

        folders: list[Folder] = []
        for entry in _parse_list_response(resp.lines):
            path = _split_mailbox(entry.name, entry.delimiter or delimiter)
            flags = {flag.lower() for flag in entry.flags}
            has_children: bool | None = None
            if "\\haschildren" in flags:
                has_children = True
            elif "\\hasnochildren" in flags or "\\noinferiors" in flags:
                has_children = False
            folders.append(
                Folder(
                    path=path,
                    delimiter=entry.delimiter,
                    subscribed=subscribed_only or "\\subscribed" in flags,
                    selectable="\\noselect" not in flags and "\\nonexistent" not in flags,
                    has_children=has_children,
                ),
            )
        return folders

    async def select_folder(self, path: tuple[str, ...]) -> FolderHandle:
        """SELECT a folder, reading its UIDVALIDITY and message count."""
        return await self._ensure_selected(path, force=True)

    async def enumerate_messages(self, handle: FolderHandle) -> list[MessageRef]:
        """Return metadata for every UID in the folder, fetched in batches."""
        await self._ensure_selected(handle.path)

        def _search(imap: Any) -> Awaitable[Any]:
            return imap.protocol.search("ALL", by_uid=True)

        resp = await self._run("UID SEARCH", _search)
        if resp.result != "OK":
            raise _classify("UID SEARCH", resp)
        uids = _parse_search_response(resp.lines)

        refs: list[MessageRef] = []
        for idx in range(0, len(uids), self._batch_size):
            batch = uids[idx : idx + self._batch_size]
            uid_set = ",".join(str(uid) for uid in batch)

            def _fetch(imap: Any, uid_set: str = uid_set) -> Awaitable[Any]:
                return imap.uid("fetch", uid_set, _METADATA_ITEMS)

            resp = await self._run("UID FETCH", _fetch)
            if resp.result != "OK":
                raise _classify("UID FETCH", resp)
            for meta in _parse_fetch_metadata(resp.lines):
                refs.append(
                    MessageRef(
                        folder=handle.path,
                        uid=meta.uid,
                        size=meta.size,
                        internal_date=meta.internal_date,
                        flags=meta.flags,
                        message_id=meta.message_id,
                    ),
                )
        refs.sort(key=lambda ref: ref.uid)
        return refs

    async def fetch_content(self, ref: MessageRef) -> bytes:
        """Fetch the raw message with BODY.PEEK[] so the \\Seen flag is untouched.

        Raises:
            NotFoundError: If the UID no longer exists.
        """
        await self._ensure_selected(ref.folder)

        def _call(imap: Any) -> Awaitable[Any]:
            return imap.uid("fetch", str(ref.uid), "(BODY.PEEK[])")

        resp = await self._run("UID FETCH", _call)
        if resp.result != "OK":
            raise _classify("UID FETCH", resp)
        if not any(_FETCH_START_RE.match(bytes(line)) for line in resp.lines):
            raise NotFoundError(f"UID {ref.uid} no longer exists in {display_path(ref.folder)}")
        return _extract_literal(resp.lines)

    async def append(
        self,
        handle: FolderHandle,
        content: bytes,
        *,
        flags: Sequence[str],
        internal_date: datetime | None,
    ) -> MessageRef | None:
        """APPEND a message with its flags and internal date.

        Returns:
            The new message reference when the server reports APPENDUID, else None.
        """
        await self._hierarchy_delimiter()
        mailbox = _quote(self._encode(self._mailbox_name(handle.path)))

        def _call(imap: Any) -> Awaitable[Any]:
            return imap.append(
                content,
                mailbox=mailbox,
                flags=" ".join(flags) if flags else None,
                date=internal_date,
            )

        resp = await self._run("APPEND", _call)
        if resp.result != "OK":
            raise _classify("APPEND", resp)

        for line in resp.lines:
            match = _APPENDUID_RE.search(bytes(line))
            if match:
                return MessageRef(
                    folder=handle.path,
                    uid=int(match.group("uid")),
                    size=len(content),
                    internal_date=internal_date,
                    flags=tuple(flags),
                    message_id=parse_message_id(content),
                )
        return None

    async def create_folder(self, path: tuple[str, ...]) -> None:
        """CREATE a folder; an already existing folder is not an error."""
        await self._hierarchy_delimiter()
        mailbox = _quote(self._encode(self._mailbox_name(path)))

        def _call(imap: Any) -> Awaitable[Any]:
            return imap.create(mailbox)

        resp = await self._run("CREATE", _call)
        if resp.result == "OK":
            return
        if any(b"ALREADYEXISTS" in bytes(line) for line in resp.lines):
            return
        raise _classify("CREATE", resp)

    async def _ensure_selected(self, path: tuple[str, ...], *, force: bool = False) -> FolderHandle:
        if self._selected == path and not force:
            return FolderHandle(path=path)
        await self._hierarchy_delimiter()
        mailbox = _quote(self._encode(self._mailbox_name(path)))

        def _call(imap: Any) -> Awaitable[Any]:
            return imap.select(mailbox)

        resp = await self._run("SELECT", _call)
        if resp.result != "OK":
            self._selected = None
            raise _classify("SELECT", resp, default=NotFoundError)
        self._selected = path
        uidvalidity, exists = _parse_select_response(resp.lines)
        return FolderHandle(path=path, uidvalidity=uidvalidity, exists=exists)

    async def _hierarchy_delimiter(self) -> str:
        if self._delimiter is not None:
            return self._delimiter

        def _call(imap: Any) -> Awaitable[Any]:
            return imap.list('""', '""')

        resp = await self._run("LIST", _call)
        delimiter = "/"
        if resp.result == "OK":
            for entry in _parse_list_response(resp.lines, keep_empty=True):
                if entry.delimiter:
                    delimiter = entry.delimiter
                    break
        self._delimiter = delimiter
        return delimiter

    async def _run(self, operation: str, call: Callable[[Any], Awaitable[Any]]) -> Any:
        await self.connect()
        assert self._imap is not None
        try:
            return await asyncio.wait_for(call(self._imap), timeout=self._timeout)
        except _CONNECTION_ERRORS as exc:
            await self._drop()
            raise TransientError(f"IMAP {operation} failed: {exc!r}") from exc

    async def _drop(self) -> None:
        imap, self._imap = self._imap, None
        if imap is None:
            return
        try:
            await asyncio.wait_for(imap.logout(), timeout=5)
        except (*_CONNECTION_ERRORS, aioimaplib.Error) as exc:
            logger.debug("Ignoring close failure on broken session: %r", exc)

    def _mailbox_name(self, path: tuple[str, ...]) -> str:
        return (self._delimiter or "/").join(path)

    @staticmethod
    def _encode(name: str) -> str:
        return imap_utf7.encode(name).decode("ascii")


async def _close_quietly(imap: Any, *, timeout: float) -> None:
    """Send LOGOUT, ignoring a connection that is already gone."""
    try:
        await asyncio.wait_for(imap.logout(), timeout=timeout)
    except _CONNECTION_ERRORS as exc:
        logger.debug("IMAP logout failed: %r", exc)


def _classify(
    operation: str,
    resp: Any,
    *,
    default: type[GatewayError] = ImapError,
) -> GatewayError:
    """Map a tagged NO/BAD response onto the gateway error taxonomy.

    Args:
        operation: IMAP command name.
        resp: aioimaplib response.
        default: Error type used when nothing more specific applies.

    Returns:
        Error instance to raise.
    """
    text = b" ".join(bytes(line) for line in resp.lines)
    message = f"IMAP {operation} failed: {resp.result} {text.decode('utf-8', errors='replace')}"

    match = _RESPONSE_CODE_RE.search(text)
    code = match.group("code").upper() if match else b""
    if code in _AUTH_CODES:
        return AuthFailureError(message)
    if code in _TRANSIENT_CODES:
        return TransientError(message)
    if code in _QUOTA_CODES:
        return QuotaExceededError(message)
    if code in _NOT_FOUND_CODES:
        return NotFoundError(message)
    if code in _PERMISSION_CODES:
        return PermissionDeniedError(message)
    if any(pattern.lower() in text.lower() for pattern in _TRANSIENT_PATTERNS):
        return TransientError(message)
    if resp.result == "BAD" and operation == "APPEND":
        return MalformedContentError(message)
    return default(message)


def _split_mailbox(name: str, delimiter: str | None) -> tuple[str, ...]:
    if not delimiter:
        return (name,)
    return tuple(part for part in name.split(delimiter) if part)


def _quote(value: str) -> str:
    """Quote a string for use in IMAP commands.

    Args:
        value: Raw mailbox name.

    Returns:
        Quoted string safe for IMAP commands.
    """
    if not value:
        return '""'
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _unquote(raw: bytes) -> bytes:
    value = raw.strip()
    if value.startswith(b'"') and value.endswith(b'"') and len(value) >= 2:
        value = value[1:-1]
        value = value.replace(b'\\"', b'"').replace(b"\\\\", b"\\")
    return value


def _decode_mailbox_name(raw: bytes) -> str:
    """Decode an IMAP mailbox name from modified UTF-7.

    Args:
        raw: Raw mailbox token.

    Returns:
        Decoded mailbox name, or empty string if invalid.
    """
    value = raw.strip()
    if not value or value.upper() == b"NIL":
        return ""
    return str(imap_utf7.decode(_unquote(value)))


def _parse_list_response(lines: Sequence[bytes], *, keep_empty: bool = False) -> list[ListEntry]:
    """Parse mailbox entries from an IMAP LIST or LSUB response.

    Args:
        lines: Response lines.
        keep_empty: Keep entries with an empty name (the ``LIST "" ""``
            delimiter query).

    Returns:
        Entries in response order, de-duplicated by name.
    """
    out: list[ListEntry] = []
    seen: set[str] = set()
    idx = 0
    while idx < len(lines):
        line = bytes(lines[idx]).strip()
        if line.startswith(b"+"):
            idx += 1
            continue
        if line.startswith(b"("):
            line = b"* LIST " + line
        match = _LIST_MAILBOX_RE.match(line)
        if not match:
            idx += 1
            continue

        delim_token = match.group("delim")
        delimiter: str | None = None
        if delim_token.upper() != b"NIL":
            delimiter = _unquote(delim_token).decode("ascii", errors="replace") or None

        name_token = match.group("name").strip()
        literal_match = _LITERAL_RE.match(name_token)
        if literal_match:
            if idx + 1 >= len(lines):
                break
            raw_name = bytes(lines[idx + 1]).strip()
            idx += 2
        else:
            raw_name = name_token
            idx += 1

        name = _decode_mailbox_name(raw_name)
        if (not name and not keep_empty) or name in seen:
            continue
        seen.add(name)
        flags = frozenset(
            flag.decode("ascii", errors="replace") for flag in match.group("flags").split()
        )
        out.append(ListEntry(name=name, delimiter=delimiter, flags=flags))
    return out


def _parse_select_response(lines: Sequence[bytes]) -> tuple[int | None, int | None]:
    uidvalidity: int | None = None
    exists: int | None = None
    for raw in lines:
        line = bytes(raw)
        match = _UIDVALIDITY_RE.search(line)
        if match:
            uidvalidity = int(match.group("uidvalidity"))
        match = _EXISTS_RE.search(line)
        if match:
            exists = int(match.group("exists"))
    return uidvalidity, exists


def _parse_search_response(lines: Sequence[bytes]) -> list[int]:
    uids: list[int] = []
    for raw in lines:
        parts = bytes(raw).split()
        if len(parts) >= 2 and parts[0] == b"*" and parts[1].upper() == b"SEARCH":
            parts = parts[2:]
        elif parts and parts[0].upper() == b"SEARCH":
            parts = parts[1:]
        if parts and all(p.isdigit() for p in parts):
            uids.extend(int(p) for p in parts)
    return sorted(set(uids))


def parse_internal_date(value: str) -> datetime | None:
    """Parse an IMAP INTERNALDATE value such as ``17-Jul-1996 02:44:25 -0700``.

    Args:
        value: Date string without surrounding quotes.

    Returns:
        Timezone-aware datetime, or None if the value is malformed.
    """
    match = _DATE_RE.match(value.strip())
    if not match:
        return None
    month = _MONTHS.get(match.group("mon").lower())
    if month is None:
        return None
    offset = timedelta(hours=int(match.group("tzh")), minutes=int(match.group("tzm")))
    if match.group("sign") == "-":
        offset = -offset
    try:
        return datetime(
            int(match.group("year")),
            month,
            int(match.group("day")),
            int(match.group("h")),
            int(match.group("m")),
            int(match.group("s")),
            tzinfo=timezone(offset),
        )
    except ValueError:
        return None


def _parse_fetch_metadata(lines: Sequence[bytes]) -> list[FetchedMetadata]:
    """Parse UID/size/date/flags/Message-ID items from a FETCH response.

    Each item starts with ``n FETCH (`` and may carry one literal (the
    Message-ID header block) followed by a line with the remaining items.

    Args:
        lines: Response lines.

    Returns:
        Parsed metadata for every item that carries a UID.
    """
    out: list[FetchedMetadata] = []
    idx = 0
    while idx < len(lines):
        line = bytes(lines[idx])
        if not _FETCH_START_RE.match(line):
            idx += 1
            continue
        meta = line
        header = b""
        idx += 1
        literal = _FETCH_LITERAL_RE.search(line)
        if literal and idx < len(lines):
            header = bytes(lines[idx])
            idx += 1
            if idx < len(lines) and not _FETCH_START_RE.match(bytes(lines[idx])):
                meta = meta + b" " + bytes(lines[idx])
                idx += 1

        uid_match = _UID_RE.search(meta)
        if not uid_match:
            continue
        size_match = _SIZE_RE.search(meta)
        date_match = _INTERNALDATE_RE.search(meta)
        flags_match = _FLAGS_RE.search(meta)
        out.append(
            FetchedMetadata(
                uid=int(uid_match.group("uid")),
                size=int(size_match.group("size")) if size_match else None,
                internal_date=(
                    parse_internal_date(date_match.group("date").decode("ascii", errors="replace"))
                    if date_match
                    else None
                ),
                flags=tuple(
                    flag.decode("ascii", errors="replace")
                    for flag in (flags_match.group("flags").split() if flags_match else [])
                ),
                message_id=parse_message_id(header),
            ),
        )
    return out


def _extract_literal(lines: Sequence[bytes]) -> bytes:
    """Extract the literal payload from an IMAP FETCH response.

    Args:
        lines: IMAP response lines.

    Returns:
        Literal payload bytes.

    Raises:
        MalformedContentError: If no literal payload can be extracted.
    """
    if not lines:
        raise MalformedContentError("IMAP response had no lines")

    for idx, raw in enumerate(lines):
        match = _FETCH_LITERAL_RE.search(bytes(raw))
        if not match:
            continue
        size = int(match.group("n"))
        if idx + 1 >= len(lines):
            break
        literal = lines[idx + 1]
        if len(literal) == size:
            return bytes(literal)

    candidates = [
        bytes(line)
        for line in lines
        if b"FETCH" not in bytes(line) and bytes(line).strip() not in {b")", b""}
    ]
    literal = max(candidates or [bytes(line) for line in lines], key=len)
    if not literal or len(literal) < 64:
        raise MalformedContentError(f"IMAP response contained no literal payload: {lines!r}")
    return literal
