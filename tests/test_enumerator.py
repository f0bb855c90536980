"""Tests for folder enumeration and folder-job planning."""

from __future__ import annotations

import asyncio

import pytest

from imap_mailsync.engine.endpoint import Endpoint
from imap_mailsync.engine.enumerator import (
    EnumerationError,
    EnumerationResult,
    FolderEnumerator,
    map_destination_path,
)
from imap_mailsync.engine.events import RunEvents
from imap_mailsync.engine.matcher import FolderPathMatcher
from imap_mailsync.gateway.base import AuthFailureError, Folder, TransientError
from imap_mailsync.gateway.memory import MemoryGateway
from imap_mailsync.models.sync import (
    FolderSelection,
    RecurseAll,
    RecurseSubscribed,
    SingleFolder,
)


class _ListFails(MemoryGateway):
    def __init__(self, failing: tuple[str, ...], error: Exception | None = None) -> None:
        super().__init__()
        self._failing = failing
        self._error = error or TransientError("LIST timed out")

    async def list_folders(self, parent: tuple[str, ...], *, subscribed_only: bool) -> list[Folder]:
        if parent == self._failing:
            raise self._error
        return await super().list_folders(parent, subscribed_only=subscribed_only)


def _tree(gateway: MemoryGateway) -> MemoryGateway:
    for path in ("INBOX", "Archive/2020", "Archive/2021", "Trash/Old", "Sent"):
        gateway.add_folder(path)
    return gateway


def _enumerate(
    gateway: MemoryGateway,
    selection: FolderSelection,
    *,
    exclude: list[str] | None = None,
    root: tuple[str, ...] = (),
    destination_root: tuple[str, ...] = (),
    folder_map: dict[str, str] | None = None,
) -> EnumerationResult:
    enumerator = FolderEnumerator(
        source=Endpoint(gateway=gateway, label="source", root=root),
        matcher=FolderPathMatcher(exclude or []),
        events=RunEvents(),
        destination_root=destination_root,
        folder_map=folder_map,
    )
    return asyncio.run(enumerator.enumerate(selection))


def test_parents_before_children_in_stable_order() -> None:
    """Folders should be visited depth-first, parents first, siblings sorted."""
    result = _enumerate(_tree(MemoryGateway()), RecurseAll())
    assert [job.source_display for job in result.jobs] == [
        "Archive",
        "Archive/2020",
        "Archive/2021",
        "INBOX",
        "Sent",
        "Trash",
        "Trash/Old",
    ]


def test_excluded_folder_prunes_its_subtree() -> None:
    """An excluded folder and its descendants should produce no jobs."""
    gateway = _tree(MemoryGateway())
    result = _enumerate(gateway, RecurseAll(), exclude=["Trash*"])
    assert "Trash" not in [job.source_display for job in result.jobs]
    assert "Trash/Old" not in [job.source_display for job in result.jobs]
    assert result.excluded == ["Trash"]
    assert ("list", "Trash") not in gateway.calls


def test_single_folder_ignores_exclusions_and_listing() -> None:
    """Single-folder mode should yield exactly that folder without listing."""
    gateway = _tree(MemoryGateway())
    result = _enumerate(gateway, SingleFolder(path="Trash/Old"), exclude=["Trash*"])
    assert [job.source_display for job in result.jobs] == ["Trash/Old"]
    assert not [call for call in gateway.calls if call[0] == "list"]


def test_subscribed_mode_skips_unsubscribed_folders() -> None:
    """Unsubscribed folders should be skipped while subscribed descendants are kept."""
    gateway = MemoryGateway()
    gateway.add_folder("INBOX")
    gateway.add_folder("Lists", subscribed=False)
    gateway.add_folder("Lists/python")
    gateway.add_folder("Old", subscribed=False)
    result = _enumerate(gateway, RecurseSubscribed())
    assert [job.source_display for job in result.jobs] == ["INBOX", "Lists/python"]


def test_unselectable_folders_are_walked_but_not_synced() -> None:
    """`\\Noselect` containers should be traversed without a job of their own."""
    gateway = MemoryGateway()
    gateway.add_folder("Projects", selectable=False)
    gateway.add_folder("Projects/Alpha")
    result = _enumerate(gateway, RecurseAll())
    assert [job.source_display for job in result.jobs] == ["Projects/Alpha"]


def test_sub_path_listing_failure_is_skipped() -> None:
    """A failing sub-path should be recorded while the walk continues."""
    gateway = _tree(_ListFails(("Archive",)))
    result = _enumerate(gateway, RecurseAll())
    names = [job.source_display for job in result.jobs]
    assert "Archive" in names
    assert "Archive/2020" not in names
    assert "INBOX" in names
    assert result.skipped_paths == ["Archive"]


def test_root_listing_failure_is_fatal() -> None:
    """Failing to list the root should abort enumeration."""
    gateway = _tree(_ListFails(()))
    with pytest.raises(EnumerationError):
        _enumerate(gateway, RecurseAll())


def test_auth_failure_propagates() -> None:
    """Authentication failures should never be downgraded to skipped paths."""
    gateway = _tree(_ListFails(("Archive",), AuthFailureError("session expired")))
    with pytest.raises(AuthFailureError):
        _enumerate(gateway, RecurseAll())


def test_root_folder_is_included_and_must_exist() -> None:
    """A configured root should itself be synced, and missing roots are fatal."""
    gateway = _tree(MemoryGateway())
    result = _enumerate(gateway, RecurseAll(), root=("Archive",), destination_root=("Backup",))
    assert [(job.source_display, job.destination_display) for job in result.jobs] == [
        ("Archive", "Backup"),
        ("Archive/2020", "Backup/2020"),
        ("Archive/2021", "Backup/2021"),
    ]
    with pytest.raises(EnumerationError):
        _enumerate(gateway, RecurseAll(), root=("Missing",))


def test_unsubscribed_root_exists_in_subscribed_mode() -> None:
    """An unsubscribed root should yield no jobs rather than a missing-root abort."""
    gateway = MemoryGateway()
    gateway.add_folder("INBOX")
    gateway.add_folder("Archive", subscribed=False)
    gateway.add_folder("Archive/2020", subscribed=False)
    result = _enumerate(gateway, RecurseSubscribed(), root=("Archive",))
    assert result.jobs == []

    gateway.add_folder("Archive/2021")
    result = _enumerate(gateway, RecurseSubscribed(), root=("Archive",))
    assert [job.source_display for job in result.jobs] == ["Archive/2021"]

    gateway.add_folder("Archive", subscribed=True)
    result = _enumerate(gateway, RecurseSubscribed(), root=("Archive",))
    assert [job.source_display for job in result.jobs] == ["Archive", "Archive/2021"]


def test_map_destination_path_prefers_longest_prefix() -> None:
    """Folder remapping should use the most specific matching prefix."""
    folder_map = {"Archive": "Old", "Archive/2020": "Y2020"}
    assert map_destination_path(
        ("Archive", "2020", "Q1"),
        source_root=(),
        destination_root=("Imported",),
        folder_map=folder_map,
    ) == ("Imported", "Y2020", "Q1")
    assert map_destination_path(
        ("Archive", "2021"),
        source_root=(),
        destination_root=(),
        folder_map=folder_map,
    ) == ("Old", "2021")
    assert map_destination_path(("INBOX",), source_root=(), destination_root=()) == ("INBOX",)
