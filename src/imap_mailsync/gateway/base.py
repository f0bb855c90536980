"""Transport-neutral mailbox gateway protocol and error taxonomy."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from imap_mailsync.models.types import ErrorKind


class GatewayError(RuntimeError):
    """Base class for failures raised by a mailbox gateway."""

    kind: ErrorKind = ErrorKind.unexpected
    retryable: bool = False


class TransientError(GatewayError):
    """Network, timeout or server-busy failure; safe to retry."""

    kind = ErrorKind.transient
    retryable = True


class AuthFailureError(GatewayError):
    """Authentication failed or the session lost its authorization."""

    kind = ErrorKind.auth_failure


class NotFoundError(GatewayError):
    """Folder or message does not exist."""

    kind = ErrorKind.not_found


class PermissionDeniedError(GatewayError):
    """The session is not allowed to perform the operation."""

    kind = ErrorKind.permission_denied


class QuotaExceededError(GatewayError):
    """The destination store is over quota."""

    kind = ErrorKind.quota_exceeded


class MalformedContentError(GatewayError):
    """The store rejected the message content as invalid."""

    kind = ErrorKind.malformed_content


def display_path(path: Sequence[str]) -> str:
    """Join folder path segments into the `/`-separated display form."""
    return "/".join(path)


@dataclass(frozen=True)
class Folder:
    """A folder discovered on an endpoint."""

    path: tuple[str, ...]
    delimiter: str | None = "/"
    subscribed: bool = False
    selectable: bool = True
    has_children: bool | None = None
    message_count: int | None = None

    @property
    def display(self) -> str:
        """Return the `/`-separated display path."""
        return display_path(self.path)


@dataclass(frozen=True)
class FolderHandle:
    """A selected folder."""

    path: tuple[str, ...]
    uidvalidity: int | None = None
    exists: int | None = None
    simulated: bool = False

    @property
    def display(self) -> str:
        """Return the `/`-separated display path."""
        return display_path(self.path)


@dataclass(frozen=True)
class MessageRef:
    """Store-local reference to one message plus cheap metadata.

    `content_digest` is the SHA-256 hex digest of the raw message when the
    store already knows it (simulated appends do); otherwise it is None and
    the accurate fingerprint fetches the content.
    """

    folder: tuple[str, ...]
    uid: int
    size: int | None = None
    internal_date: datetime | None = None
    flags: tuple[str, ...] = ()
    message_id: str | None = None
    content_digest: str | None = None
    simulated: bool = False


class ConnectionGateway(Protocol):
    """Session-bound mailbox operations consumed by the engine.

    Implementations raise subclasses of `GatewayError` and are driven by a
    single task at a time.
    """

    async def list_folders(
        self,
        parent: tuple[str, ...],
        *,
        subscribed_only: bool,
    ) -> list[Folder]:
        """Return the direct children of `parent` (top level for `()`)."""
        ...

    async def select_folder(self, path: tuple[str, ...]) -> FolderHandle:
        """Select a folder; raise `NotFoundError` if it does not exist."""
        ...

    async def enumerate_messages(self, handle: FolderHandle) -> list[MessageRef]:
        """Return references for every message in a selected folder."""
        ...

    async def fetch_content(self, ref: MessageRef) -> bytes:
        """Return the raw RFC822 bytes of a message."""
        ...

    async def append(
        self,
        handle: FolderHandle,
        content: bytes,
        *,
        flags: Sequence[str],
        internal_date: datetime | None,
    ) -> MessageRef | None:
        """Append a message to a folder and return its reference if known."""
        ...

    async def create_folder(self, path: tuple[str, ...]) -> None:
        """Create a folder, including missing intermediate levels."""
        ...
