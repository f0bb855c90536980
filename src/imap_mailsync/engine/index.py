"""Per-folder reconciliation indexes keyed by fingerprint."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field

from imap_mailsync.engine.cancel import CancellationToken
from imap_mailsync.engine.events import RunEvents
from imap_mailsync.engine.fingerprint import FingerprintError, FingerprintStrategy
from imap_mailsync.engine.retry import guarded, retry_async
from imap_mailsync.gateway.base import (
    AuthFailureError,
    ConnectionGateway,
    FolderHandle,
    GatewayError,
    MessageRef,
)
from imap_mailsync.models.report import MessageFailure
from imap_mailsync.models.sync import BackoffPolicy
from imap_mailsync.models.types import ErrorKind, Side


@dataclass
class ReconciliationIndex:
    """Fingerprint → message mapping for one folder on one endpoint.

    When a folder holds the same fingerprint more than once the last one seen
    wins and the displaced message is kept in `duplicates`.
    """

    side: Side
    entries: dict[str, MessageRef] = field(default_factory=dict)
    duplicates: list[MessageRef] = field(default_factory=list)
    failures: list[MessageFailure] = field(default_factory=list)
    total: int = 0

    def __contains__(self, fingerprint: object) -> bool:
        return fingerprint in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self.entries)

    def add(self, fingerprint: str, ref: MessageRef) -> None:
        """Insert a message, recording any message it displaces."""
        previous = self.entries.get(fingerprint)
        if previous is not None:
            self.duplicates.append(previous)
        self.entries[fingerprint] = ref


async def build_index(
    gateway: ConnectionGateway,
    handle: FolderHandle,
    strategy: FingerprintStrategy,
    *,
    side: Side,
    events: RunEvents,
    retry_budget: int = 0,
    backoff: BackoffPolicy | None = None,
    timeout_s: float | None = None,
    token: CancellationToken | None = None,
) -> ReconciliationIndex:
    """Enumerate a selected folder and fingerprint every message.

    Messages whose content cannot be fetched or whose fingerprint cannot be
    computed are left out of the index and recorded in `failures`.

    Args:
        gateway: Gateway the folder was selected on.
        handle: Selected folder.
        strategy: Fingerprint strategy shared by both endpoints.
        side: Which endpoint this index describes.
        events: Run observability context.
        retry_budget: Retries for transient content fetch failures.
        backoff: Backoff policy for those retries.
        timeout_s: Per-operation timeout.
        token: Cancellation token.

    Returns:
        The populated index.

    Raises:
        GatewayError: If the folder cannot be enumerated.
        AuthFailureError: If authentication is lost.
        SyncCancelled: If cancellation is requested while fetching.
    """
    policy = backoff or BackoffPolicy()
    refs = await guarded(
        gateway.enumerate_messages(handle),
        timeout_s=timeout_s,
        operation="enumerate",
    )

    index = ReconciliationIndex(side=side, total=len(refs))
    for ref in refs:
        content: bytes | None = None
        try:
            if strategy.needs_content(ref):

                async def _fetch(ref: MessageRef = ref) -> bytes:
                    return await guarded(
                        gateway.fetch_content(ref),
                        timeout_s=timeout_s,
                        operation="fetch",
                    )

                content = await retry_async(
                    _fetch,
                    retry_budget=retry_budget,
                    policy=policy,
                    token=token,
                )
            fingerprint = strategy.compute(ref, content)
        except AuthFailureError:
            raise
        except (GatewayError, FingerprintError) as exc:
            cause = exc.kind.value if isinstance(exc, GatewayError) else "invalid"
            index.failures.append(
                MessageFailure(
                    side=side,
                    uid=ref.uid,
                    error_kind=ErrorKind.fingerprint,
                    message=f"{cause}: {exc}",
                ),
            )
            events.emit(
                "message.fingerprint_failed",
                level=logging.WARNING,
                side=side.value,
                folder=handle.display,
                uid=ref.uid,
                error=str(exc),
            )
            continue

        if fingerprint in index:
            events.emit(
                "message.duplicate",
                level=logging.DEBUG,
                side=side.value,
                folder=handle.display,
                uid=ref.uid,
                fingerprint=fingerprint,
            )
        index.add(fingerprint, ref)

    events.emit(
        "index.built",
        level=logging.DEBUG,
        side=side.value,
        folder=handle.display,
        messages=index.total,
        indexed=len(index),
        duplicates=len(index.duplicates),
        failures=len(index.failures),
    )
    return index
