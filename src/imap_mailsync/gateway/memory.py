"""In-memory mailbox gateway used for rehearsals and tests."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

from imap_mailsync.gateway.base import (
    Folder,
    FolderHandle,
    MessageRef,
    NotFoundError,
    display_path,
)
from imap_mailsync.utils.email import parse_message_id


def _as_path(path: str | Sequence[str]) -> tuple[str, ...]:
    """Accept either a display path or segments."""
    if isinstance(path, str):
        return tuple(part for part in path.split("/") if part)
    return tuple(path)


@dataclass
class StoredMessage:
    """A message held by `MemoryGateway`."""

    uid: int
    content: bytes
    flags: tuple[str, ...] = ()
    internal_date: datetime | None = None


@dataclass
class _MemoryFolder:
    subscribed: bool = True
    selectable: bool = True
    uidvalidity: int = 1
    next_uid: int = 1
    messages: dict[int, StoredMessage] = field(default_factory=dict)


class MemoryGateway:
    """A `ConnectionGateway` backed by dictionaries.

    Every protocol call is appended to `calls` as ``(operation, path)`` so
    callers can verify which operations reached the store.
    """

    def __init__(self, *, delimiter: str = "/") -> None:
        """Initialize an empty store.

        Args:
            delimiter: Hierarchy delimiter reported for folders.
        """
        self._delimiter = delimiter
        self._folders: dict[tuple[str, ...], _MemoryFolder] = {}
        self.calls: list[tuple[str, str]] = []

    def add_folder(
        self,
        path: str | Sequence[str],
        *,
        subscribed: bool = True,
        selectable: bool = True,
    ) -> None:
        """Create a folder (and missing parents) directly in the store."""
        segments = _as_path(path)
        for depth in range(1, len(segments)):
            self._folders.setdefault(segments[:depth], _MemoryFolder())
        existing = self._folders.get(segments)
        if existing is None:
            self._folders[segments] = _MemoryFolder(subscribed=subscribed, selectable=selectable)
        else:
            existing.subscribed = subscribed
            existing.selectable = selectable

    def add_message(
        self,
        path: str | Sequence[str],
        content: bytes,
        *,
        flags: Sequence[str] = (),
        internal_date: datetime | None = None,
    ) -> MessageRef:
        """Store a message directly, creating the folder if needed."""
        segments = _as_path(path)
        if segments not in self._folders:
            self.add_folder(segments)
        return self._store(segments, content, flags=flags, internal_date=internal_date)

    def messages(self, path: str | Sequence[str]) -> list[StoredMessage]:
        """Return the messages of a folder in UID order."""
        folder = self._folders[_as_path(path)]
        return [folder.messages[uid] for uid in sorted(folder.messages)]

    def remove_message(self, path: str | Sequence[str], uid: int) -> None:
        """Delete a message directly from the store."""
        del self._folders[_as_path(path)].messages[uid]

    def folder_paths(self) -> list[str]:
        """Return every folder as a sorted display path."""
        return sorted(display_path(path) for path in self._folders)

    async def list_folders(
        self,
        parent: tuple[str, ...],
        *,
        subscribed_only: bool,
    ) -> list[Folder]:
        """List direct children; unsubscribed folders with subscribed descendants stay listed."""
        self.calls.append(("list", display_path(parent)))
        if parent and parent not in self._folders:
            raise NotFoundError(f"No such folder: {display_path(parent)}")

        out: list[Folder] = []
        for path, folder in sorted(self._folders.items()):
            if len(path) != len(parent) + 1 or path[: len(parent)] != parent:
                continue
            descendants = [
                other
                for other_path, other in self._folders.items()
                if len(other_path) > len(path) and other_path[: len(path)] == path
            ]
            if subscribed_only and not folder.subscribed:
                if not any(other.subscribed for other in descendants):
                    continue
            out.append(
                Folder(
                    path=path,
                    delimiter=self._delimiter,
                    subscribed=folder.subscribed,
                    selectable=folder.selectable,
                    has_children=bool(descendants),
                    message_count=len(folder.messages),
                ),
            )
        return out

    async def select_folder(self, path: tuple[str, ...]) -> FolderHandle:
        """Select a folder; unselectable or missing folders raise `NotFoundError`."""
        self.calls.append(("select", display_path(path)))
        folder = self._require(path)
        return FolderHandle(path=path, uidvalidity=folder.uidvalidity, exists=len(folder.messages))

    async def enumerate_messages(self, handle: FolderHandle) -> list[MessageRef]:
        """Return references in UID order."""
        self.calls.append(("enumerate", handle.display))
        folder = self._require(handle.path)
        return [
            self._ref(handle.path, folder.messages[uid]) for uid in sorted(folder.messages)
        ]

    async def fetch_content(self, ref: MessageRef) -> bytes:
        """Return the stored bytes of a message."""
        self.calls.append(("fetch", display_path(ref.folder)))
        folder = self._require(ref.folder)
        stored = folder.messages.get(ref.uid)
        if stored is None:
            raise NotFoundError(f"UID {ref.uid} no longer exists in {display_path(ref.folder)}")
        return stored.content

    async def append(
        self,
        handle: FolderHandle,
        content: bytes,
        *,
        flags: Sequence[str],
        internal_date: datetime | None,
    ) -> MessageRef | None:
        """Store a message under the next UID and return its reference."""
        self.calls.append(("append", handle.display))
        self._require(handle.path)
        return self._store(handle.path, content, flags=flags, internal_date=internal_date)

    async def create_folder(self, path: tuple[str, ...]) -> None:
        """Create a folder and its missing parents."""
        self.calls.append(("create", display_path(path)))
        if path not in self._folders:
            self.add_folder(path)

    def _require(self, path: tuple[str, ...]) -> _MemoryFolder:
        folder = self._folders.get(path)
        if folder is None or not folder.selectable:
            raise NotFoundError(f"No such folder: {display_path(path)}")
        return folder

    def _store(
        self,
        path: tuple[str, ...],
        content: bytes,
        *,
        flags: Sequence[str],
        internal_date: datetime | None,
    ) -> MessageRef:
        folder = self._folders[path]
        stored = StoredMessage(
            uid=folder.next_uid,
            content=bytes(content),
            flags=tuple(flags),
            internal_date=internal_date,
        )
        folder.messages[stored.uid] = stored
        folder.next_uid += 1
        return self._ref(path, stored)

    @staticmethod
    def _ref(path: tuple[str, ...], stored: StoredMessage) -> MessageRef:
        return MessageRef(
            folder=path,
            uid=stored.uid,
            size=len(stored.content),
            internal_date=stored.internal_date,
            flags=stored.flags,
            message_id=parse_message_id(stored.content),
        )
