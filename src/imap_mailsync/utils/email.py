"""Email header normalization helpers."""

from __future__ import annotations

from email import policy
from email.parser import BytesHeaderParser


def normalize_message_id(value: str | None) -> str | None:
    """Normalize a Message-ID for stable comparisons.

    Args:
        value: Raw Message-ID header value.

    Returns:
        Normalized Message-ID in angle brackets, or None if missing/invalid.
    """
    if value is None:
        return None
    v = str(value).strip()
    if not v:
        return None

    if " " in v:
        v = v.split(" ", 1)[0].strip()
    if v.startswith("<") and v.endswith(">"):
        v = v[1:-1].strip()
    if not v:
        return None
    return f"<{v.lower()}>"


def parse_message_id(raw: bytes) -> str | None:
    """Extract the normalized Message-ID from raw headers or a full message.

    Only the header block is parsed, so this is cheap for both a full RFC822
    message and a ``BODY[HEADER.FIELDS (MESSAGE-ID)]`` literal.

    Args:
        raw: Raw RFC822 bytes or a header block.

    Returns:
        Normalized Message-ID, or None if absent.
    """
    if not raw:
        return None
    headers = BytesHeaderParser(policy=policy.compat32).parsebytes(raw)
    return normalize_message_id(headers.get("Message-ID"))
