"""Dry-run overlay for a destination gateway."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from imap_mailsync.gateway.base import (
    ConnectionGateway,
    Folder,
    FolderHandle,
    MessageRef,
    NotFoundError,
    display_path,
)
from imap_mailsync.utils.email import parse_message_id
from imap_mailsync.utils.fingerprint import sha256_hex


class DryRunGateway:
    """Wraps a gateway so that folder creation and appends stay in memory.

    Read operations reach the real store; `create_folder` and `append` only
    update a local shadow which later reads merge in. Decisions made against
    this gateway are therefore the same as against a real store with
    identical starting state, while the real store is never modified.
    """

    def __init__(self, inner: ConnectionGateway) -> None:
        """Initialize the overlay.

        Args:
            inner: Real gateway to read through to.
        """
        self._inner = inner
        self._created: list[tuple[str, ...]] = []
        self._appended: dict[tuple[str, ...], list[tuple[MessageRef, bytes]]] = {}
        self._next_uid = 1

    @property
    def created_folders(self) -> list[str]:
        """Return folders that would have been created."""
        return [display_path(path) for path in self._created]

    @property
    def appended_count(self) -> int:
        """Return how many messages would have been appended."""
        return sum(len(items) for items in self._appended.values())

    async def list_folders(
        self,
        parent: tuple[str, ...],
        *,
        subscribed_only: bool,
    ) -> list[Folder]:
        if parent in self._created:
            folders: list[Folder] = []
        else:
            folders = await self._inner.list_folders(parent, subscribed_only=subscribed_only)
        known = {folder.path for folder in folders}
        for path in self._created:
            if path[:-1] == parent and path not in known:
                folders.append(Folder(path=path, subscribed=True, has_children=False))
        return folders

    async def select_folder(self, path: tuple[str, ...]) -> FolderHandle:
        if path in self._created:
            return FolderHandle(
                path=path,
                exists=len(self._appended.get(path, [])),
                simulated=True,
            )
        return await self._inner.select_folder(path)

    async def enumerate_messages(self, handle: FolderHandle) -> list[MessageRef]:
        refs = [] if handle.simulated else await self._inner.enumerate_messages(handle)
        refs.extend(ref for ref, _ in self._appended.get(handle.path, []))
        return refs

    async def fetch_content(self, ref: MessageRef) -> bytes:
        if not ref.simulated:
            return await self._inner.fetch_content(ref)
        for candidate, content in self._appended.get(ref.folder, []):
            if candidate.uid == ref.uid:
                return content
        raise NotFoundError(f"Simulated UID {ref.uid} not found in {display_path(ref.folder)}")

    async def append(
        self,
        handle: FolderHandle,
        content: bytes,
        *,
        flags: Sequence[str],
        internal_date: datetime | None,
    ) -> MessageRef | None:
        ref = MessageRef(
            folder=handle.path,
            uid=self._next_uid,
            size=len(content),
            internal_date=internal_date,
            flags=tuple(flags),
            message_id=parse_message_id(content),
            content_digest=sha256_hex(content),
            simulated=True,
        )
        self._next_uid += 1
        self._appended.setdefault(handle.path, []).append((ref, bytes(content)))
        return ref

    async def create_folder(self, path: tuple[str, ...]) -> None:
        if path not in self._created:
            self._created.append(path)
