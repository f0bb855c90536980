"""Tests for reconciliation index building."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

from imap_mailsync.engine.events import RunEvents
from imap_mailsync.engine.fingerprint import AccurateFingerprint, FastFingerprint
from imap_mailsync.engine.index import ReconciliationIndex, build_index
from imap_mailsync.gateway.base import MessageRef, NotFoundError
from imap_mailsync.gateway.memory import MemoryGateway
from imap_mailsync.models.types import ErrorKind, Side

WHEN = datetime(2022, 1, 1, 12, 0, 0, tzinfo=UTC)


def _message(n: int) -> bytes:
    return f"Message-ID: <{n}@example.com>\r\nSubject: {n}\r\n\r\nBody {n}\r\n".encode()


class _BrokenFetch(MemoryGateway):
    def __init__(self, bad_uid: int) -> None:
        super().__init__()
        self._bad_uid = bad_uid

    async def fetch_content(self, ref: MessageRef) -> bytes:
        if ref.uid == self._bad_uid:
            raise NotFoundError(f"UID {ref.uid} vanished")
        return await super().fetch_content(ref)


def _index(gateway: MemoryGateway, strategy: object) -> ReconciliationIndex:
    async def _run() -> ReconciliationIndex:
        handle = await gateway.select_folder(("INBOX",))
        return await build_index(
            gateway,
            handle,
            strategy,  # type: ignore[arg-type]
            side=Side.source,
            events=RunEvents(),
        )

    return asyncio.run(_run())


def test_duplicates_keep_last_seen() -> None:
    """Identical messages should collapse to the last UID seen."""
    gateway = MemoryGateway()
    gateway.add_message("INBOX", _message(1), internal_date=WHEN)
    gateway.add_message("INBOX", _message(1), internal_date=WHEN)
    gateway.add_message("INBOX", _message(2), internal_date=WHEN)

    index = _index(gateway, AccurateFingerprint())
    assert index.total == 3
    assert len(index) == 2
    assert [ref.uid for ref in index.duplicates] == [1]
    assert sorted(ref.uid for ref in index.entries.values()) == [2, 3]


def test_fetch_failures_are_recorded_not_raised() -> None:
    """A message whose content cannot be fetched should become a failure entry."""
    gateway = _BrokenFetch(bad_uid=2)
    for n in (1, 2, 3):
        gateway.add_message("INBOX", _message(n), internal_date=WHEN)

    index = _index(gateway, AccurateFingerprint())
    assert len(index) == 2
    assert len(index.failures) == 1
    failure = index.failures[0]
    assert failure.uid == 2
    assert failure.side == Side.source
    assert failure.error_kind == ErrorKind.fingerprint


def test_fast_mode_never_fetches_content() -> None:
    """Fast indexing should only enumerate metadata."""
    gateway = MemoryGateway()
    for n in (1, 2):
        gateway.add_message("INBOX", _message(n), internal_date=WHEN)

    index = _index(gateway, FastFingerprint())
    assert len(index) == 2
    assert not [call for call in gateway.calls if call[0] == "fetch"]
