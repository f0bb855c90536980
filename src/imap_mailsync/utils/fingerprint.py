"""Hashing helpers shared by the fingerprint strategies."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from datetime import UTC, datetime


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest for raw bytes.

    Args:
        data: Input bytes.

    Returns:
        Hex-encoded SHA-256 digest.
    """
    return hashlib.sha256(data).hexdigest()


def canonical_date(value: datetime | None) -> str:
    """Render an internal date as UTC ISO-8601 truncated to whole seconds.

    Naive datetimes are treated as UTC. Stores differ in sub-second precision
    and time zone, so only the instant to the second is kept.

    Args:
        value: Internal date, if known.

    Returns:
        Canonical date string, or an empty string when unknown.
    """
    if value is None:
        return ""
    aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return aware.astimezone(UTC).replace(microsecond=0).isoformat()


def digest_fields(fields: Iterable[str]) -> str:
    """Hash newline-joined fields into a hex digest."""
    canonical = "\n".join(fields).encode("utf-8", errors="replace")
    return sha256_hex(canonical)
