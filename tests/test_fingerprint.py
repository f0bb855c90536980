"""Tests for email normalization and fingerprint strategies."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from imap_mailsync.engine.fingerprint import (
    AccurateFingerprint,
    FastFingerprint,
    FingerprintError,
    strategy_for,
)
from imap_mailsync.gateway.base import MessageRef
from imap_mailsync.models.types import ScanMode
from imap_mailsync.utils.email import normalize_message_id, parse_message_id
from imap_mailsync.utils.fingerprint import canonical_date, sha256_hex

RAW = b"Subject: Test\r\nMessage-ID: <ABC@EXAMPLE.COM>\r\n\r\nHello"
WHEN = datetime(2021, 3, 4, 5, 6, 7, tzinfo=UTC)


def _ref(**kwargs: object) -> MessageRef:
    values: dict[str, object] = {"folder": ("INBOX",), "uid": 1}
    values.update(kwargs)
    return MessageRef(**values)  # type: ignore[arg-type]


def test_normalize_message_id() -> None:
    """normalize_message_id should handle empty and canonical forms."""
    assert normalize_message_id(None) is None
    assert normalize_message_id("") is None
    assert normalize_message_id(" <ABC@EXAMPLE.COM> ") == "<abc@example.com>"
    assert normalize_message_id("<a@b> extra") == "<a@b>"


def test_parse_message_id_from_headers() -> None:
    """parse_message_id should read the header from full messages and header blocks."""
    assert parse_message_id(RAW) == "<abc@example.com>"
    assert parse_message_id(b"Message-ID: <x@y>\r\n\r\n") == "<x@y>"
    assert parse_message_id(b"Subject: none\r\n\r\nbody") is None
    assert parse_message_id(b"") is None


def test_canonical_date_ignores_zone_and_subseconds() -> None:
    """The same instant should render identically across zones and precisions."""
    shifted = WHEN.astimezone(timezone(timedelta(hours=-7))).replace(microsecond=999)
    assert canonical_date(shifted) == canonical_date(WHEN)
    assert canonical_date(datetime(2021, 3, 4, 5, 6, 7)) == canonical_date(WHEN)
    assert canonical_date(None) == ""


def test_accurate_fingerprint_depends_on_content_and_date() -> None:
    """Accurate fingerprints should change with content or internal date."""
    strategy = AccurateFingerprint()
    base = strategy.compute(_ref(internal_date=WHEN), RAW)
    assert strategy.compute(_ref(uid=99, internal_date=WHEN), RAW) == base
    assert strategy.compute(_ref(internal_date=WHEN), RAW + b"!") != base
    assert strategy.compute(_ref(internal_date=WHEN + timedelta(seconds=1)), RAW) != base


def test_accurate_fingerprint_uses_store_digest() -> None:
    """A store-supplied digest should stand in for the content."""
    strategy = AccurateFingerprint()
    with_digest = _ref(internal_date=WHEN, content_digest=sha256_hex(RAW))
    assert strategy.needs_content(with_digest) is False
    assert strategy.needs_content(_ref()) is True
    assert strategy.compute(with_digest, None) == strategy.compute(_ref(internal_date=WHEN), RAW)


def test_accurate_fingerprint_requires_content() -> None:
    """Accurate mode should refuse to fingerprint without content."""
    with pytest.raises(FingerprintError):
        AccurateFingerprint().compute(_ref(), None)


def test_fast_fingerprint_uses_metadata_only() -> None:
    """Fast fingerprints should never need the body."""
    strategy = FastFingerprint()
    ref = _ref(size=len(RAW), internal_date=WHEN, message_id="<abc@example.com>")
    assert strategy.needs_content(ref) is False
    assert strategy.compute(ref, None) == strategy.compute(ref, b"ignored")
    assert strategy.compute(ref, None) != strategy.compute(_ref(size=1, internal_date=WHEN), None)


def test_fast_fingerprint_without_metadata_fails() -> None:
    """Fast mode should fail when no metadata field is available."""
    with pytest.raises(FingerprintError):
        FastFingerprint().compute(_ref(), None)


def test_strategy_for_mode() -> None:
    """strategy_for should map scan modes to strategies."""
    assert strategy_for(ScanMode.fast).mode == ScanMode.fast
    assert strategy_for(ScanMode.accurate).mode == ScanMode.accurate
