"""Pluggable fingerprint strategies for cross-store message identity.

Store-local UIDs are meaningless on the other endpoint, so messages are
reconciled by a fingerprint. The accurate strategy hashes full content and is
the default; the fast strategy uses metadata only and never fetches bodies,
at the cost of possibly aliasing distinct messages that share size, internal
date and Message-ID.
"""

from __future__ import annotations

from typing import Protocol

from imap_mailsync.gateway.base import MessageRef
from imap_mailsync.models.types import ScanMode
from imap_mailsync.utils.fingerprint import canonical_date, digest_fields, sha256_hex


class FingerprintError(ValueError):
    """A fingerprint could not be computed for a message."""


class FingerprintStrategy(Protocol):
    """Computes a reconciliation key for a message."""

    mode: ScanMode

    def needs_content(self, ref: MessageRef) -> bool:
        """Return True if `compute` requires the raw message bytes."""
        ...

    def compute(self, ref: MessageRef, content: bytes | None) -> str:
        """Return the fingerprint of a message."""
        ...


class AccurateFingerprint:
    """Content digest plus internal date."""

    mode = ScanMode.accurate

    def needs_content(self, ref: MessageRef) -> bool:
        """Content is needed unless the store already supplied its digest."""
        return ref.content_digest is None

    def compute(self, ref: MessageRef, content: bytes | None) -> str:
        """Hash the content (or the store digest) together with the internal date.

        Args:
            ref: Message reference.
            content: Raw message bytes, required unless the store supplied a digest.

        Returns:
            Hex fingerprint.

        Raises:
            FingerprintError: If neither content nor a store digest is available.
        """
        if ref.content_digest is not None:
            digest = ref.content_digest
        elif content is not None:
            digest = sha256_hex(content)
        else:
            raise FingerprintError(f"UID {ref.uid}: content required for accurate fingerprint")
        return digest_fields(["accurate", digest, canonical_date(ref.internal_date)])


class FastFingerprint:
    """Size, internal date and Message-ID; never touches the body."""

    mode = ScanMode.fast

    def needs_content(self, ref: MessageRef) -> bool:
        """Never; fast fingerprints use metadata only."""
        return False

    def compute(self, ref: MessageRef, content: bytes | None) -> str:
        """Digest size, internal date and Message-ID."""
        if ref.size is None and ref.internal_date is None and ref.message_id is None:
            raise FingerprintError(f"UID {ref.uid}: no metadata available for fast fingerprint")
        return digest_fields(
            [
                "fast",
                "" if ref.size is None else str(ref.size),
                canonical_date(ref.internal_date),
                ref.message_id or "",
            ],
        )


def strategy_for(mode: ScanMode) -> FingerprintStrategy:
    """Return the built-in strategy for a scan mode."""
    if mode == ScanMode.fast:
        return FastFingerprint()
    return AccurateFingerprint()
