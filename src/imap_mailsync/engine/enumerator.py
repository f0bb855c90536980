"""Folder discovery and folder-job planning."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field, replace

from imap_mailsync.engine.endpoint import Endpoint
from imap_mailsync.engine.events import RunEvents
from imap_mailsync.engine.matcher import FolderPathMatcher
from imap_mailsync.engine.retry import guarded
from imap_mailsync.gateway.base import (
    AuthFailureError,
    Folder,
    GatewayError,
    display_path,
)
from imap_mailsync.models.sync import (
    FolderSelection,
    RecurseSubscribed,
    SingleFolder,
    split_display_path,
)


class EnumerationError(RuntimeError):
    """The source folder tree could not be enumerated at all."""


@dataclass(frozen=True)
class FolderJob:
    """A source folder paired with the destination path it syncs into."""

    source: Folder
    destination_path: tuple[str, ...]

    @property
    def source_display(self) -> str:
        """Return the source display path."""
        return self.source.display

    @property
    def destination_display(self) -> str:
        """Return the destination display path."""
        return display_path(self.destination_path)


@dataclass
class EnumerationResult:
    """Ordered folder jobs plus what was pruned or skipped on the way."""

    jobs: list[FolderJob] = field(default_factory=list)
    excluded: list[str] = field(default_factory=list)
    skipped_paths: list[str] = field(default_factory=list)


def map_destination_path(
    source_path: tuple[str, ...],
    *,
    source_root: tuple[str, ...],
    destination_root: tuple[str, ...],
    folder_map: Mapping[str, str] | None = None,
) -> tuple[str, ...]:
    """Derive the destination path for a source folder.

    The source path is made relative to the source root, the longest matching
    `folder_map` prefix (if any) is substituted, and the result is placed
    under the destination root.

    Args:
        source_path: Source folder segments.
        source_root: Root the source walk starts from.
        destination_root: Root on the destination that mirrors it.
        folder_map: Source-prefix to destination-prefix remapping, both as
            display paths relative to their roots.

    Returns:
        Destination folder segments.
    """
    relative = source_path
    if source_root and source_path[: len(source_root)] == source_root:
        relative = source_path[len(source_root) :]

    if folder_map:
        for depth in range(len(relative), 0, -1):
            prefix = display_path(relative[:depth])
            if prefix in folder_map:
                relative = split_display_path(folder_map[prefix]) + relative[depth:]
                break

    return destination_root + relative


class FolderEnumerator:
    """Walks the source folder hierarchy and plans folder jobs."""

    def __init__(
        self,
        *,
        source: Endpoint,
        matcher: FolderPathMatcher,
        events: RunEvents,
        destination_root: tuple[str, ...] = (),
        folder_map: Mapping[str, str] | None = None,
        timeout_s: float | None = None,
    ) -> None:
        """Initialize the enumerator.

        Args:
            source: Source endpoint.
            matcher: Exclusion matcher.
            events: Run observability context.
            destination_root: Destination root folder segments.
            folder_map: Optional folder remapping.
            timeout_s: Per-operation timeout.
        """
        self._source = source
        self._matcher = matcher
        self._events = events
        self._destination_root = destination_root
        self._folder_map = dict(folder_map or {})
        self._timeout_s = timeout_s

    def job_for(self, folder: Folder) -> FolderJob:
        """Pair a source folder with its destination path."""
        return FolderJob(
            source=folder,
            destination_path=map_destination_path(
                folder.path,
                source_root=self._source.root,
                destination_root=self._destination_root,
                folder_map=self._folder_map,
            ),
        )

    async def enumerate(self, selection: FolderSelection) -> EnumerationResult:
        """Produce folder jobs for a folder selection.

        Args:
            selection: Resolved folder selection.

        Returns:
            Jobs in parent-before-child order.

        Raises:
            EnumerationError: If the root cannot be listed or does not exist.
            AuthFailureError: If authentication is lost during traversal.
        """
        result = EnumerationResult()

        if isinstance(selection, SingleFolder):
            job = self.job_for(Folder(path=selection.segments, subscribed=True))
            result.jobs.append(job)
            self._events.emit(
                "folders.enumerated",
                jobs=1,
                excluded=0,
                selection=selection.kind,
            )
            return result

        subscribed_only = isinstance(selection, RecurseSubscribed)
        root = self._source.root

        if root:
            root_folder = await self._find_root(root, subscribed_only=subscribed_only)
            if self._matcher.matches(root_folder.display):
                result.excluded.append(root_folder.display)
                return result
            self._consider(root_folder, result, subscribed_only=subscribed_only)
            if root_folder.has_children is not False:
                await self._walk(root, result, subscribed_only=subscribed_only)
        else:
            await self._walk((), result, subscribed_only=subscribed_only)

        self._events.emit(
            "folders.enumerated",
            jobs=len(result.jobs),
            excluded=len(result.excluded),
            skipped=len(result.skipped_paths),
            selection=selection.kind,
        )
        return result

    async def _find_root(self, root: tuple[str, ...], *, subscribed_only: bool) -> Folder:
        siblings = await self._list_root_siblings(root, subscribed_only=False)
        found = next((folder for folder in siblings if folder.path == root), None)
        if found is None:
            raise EnumerationError(f"Root folder {display_path(root)!r} does not exist")
        if not subscribed_only:
            return found
        # LIST does not reliably report \Subscribed; LSUB is authoritative.
        subscribed = await self._list_root_siblings(root, subscribed_only=True)
        is_subscribed = any(folder.path == root and folder.subscribed for folder in subscribed)
        return replace(found, subscribed=is_subscribed)

    async def _list_root_siblings(
        self,
        root: tuple[str, ...],
        *,
        subscribed_only: bool,
    ) -> list[Folder]:
        try:
            return await guarded(
                self._source.gateway.list_folders(root[:-1], subscribed_only=subscribed_only),
                timeout_s=self._timeout_s,
                operation="list",
            )
        except AuthFailureError:
            raise
        except GatewayError as exc:
            raise EnumerationError(
                f"Cannot list root folder {display_path(root)!r}: {exc}",
            ) from exc

    def _consider(self, folder: Folder, result: EnumerationResult, *, subscribed_only: bool) -> None:
        if not folder.selectable:
            return
        if subscribed_only and not folder.subscribed:
            return
        result.jobs.append(self.job_for(folder))

    async def _walk(
        self,
        parent: tuple[str, ...],
        result: EnumerationResult,
        *,
        subscribed_only: bool,
    ) -> None:
        try:
            children = await guarded(
                self._source.gateway.list_folders(parent, subscribed_only=subscribed_only),
                timeout_s=self._timeout_s,
                operation="list",
            )
        except AuthFailureError:
            raise
        except GatewayError as exc:
            if parent == self._source.root:
                raise EnumerationError(
                    f"Cannot list folders under {display_path(parent) or '(top level)'}: {exc}",
                ) from exc
            result.skipped_paths.append(display_path(parent))
            self._events.emit(
                "folders.list_failed",
                level=logging.WARNING,
                folder=display_path(parent),
                error_kind=exc.kind.value,
                error=str(exc),
            )
            return

        depth = len(parent)
        for child in sorted(children, key=lambda f: f.path):
            if len(child.path) <= depth or child.path[:depth] != parent:
                continue
            if self._matcher.matches(child.display):
                result.excluded.append(child.display)
                self._events.emit("folder.excluded", level=logging.DEBUG, folder=child.display)
                continue
            self._consider(child, result, subscribed_only=subscribed_only)
            if child.has_children is not False:
                await self._walk(child.path, result, subscribed_only=subscribed_only)
