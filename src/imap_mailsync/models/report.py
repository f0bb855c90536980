"""Run report models accumulated by the synchronization runner."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated

from pydantic import Field

from imap_mailsync.models.base import AppModel
from imap_mailsync.models.types import ErrorKind, FolderStatus, RunStatus, ScanMode, Side

NonNegative = Annotated[int, Field(ge=0)]


class FolderCounts(AppModel):
    """Per-folder outcome counters."""

    source_messages: NonNegative = 0
    destination_messages: NonNegative = 0
    copied: NonNegative = 0
    skipped_existing: NonNegative = 0
    skipped_excluded: NonNegative = 0
    skipped_duplicate: NonNegative = 0
    failed_permanent: NonNegative = 0
    failed_retried_then_succeeded: NonNegative = 0
    pending: NonNegative = 0
    unverified_destination: NonNegative = 0

    def add(self, other: FolderCounts) -> None:
        """Add another counter set into this one in place."""
        for field_name in type(self).model_fields:
            setattr(self, field_name, getattr(self, field_name) + getattr(other, field_name))


class MessageFailure(AppModel):
    """Diagnostic record for one message that could not be handled."""

    side: Side
    uid: int | None = None
    fingerprint: str | None = None
    error_kind: ErrorKind
    attempts: NonNegative = 0
    message: str


class FolderReport(AppModel):
    """Outcome of one folder job."""

    source_path: str
    destination_path: str
    status: FolderStatus = FolderStatus.completed
    error: str | None = None
    counts: FolderCounts = Field(default_factory=FolderCounts)
    failures: list[MessageFailure] = Field(default_factory=list)


class RunReport(AppModel):
    """Aggregated result of one synchronization pass."""

    started_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    finished_at: datetime | None = None
    status: RunStatus = RunStatus.running
    dry_run: bool = False
    scan_mode: ScanMode = ScanMode.accurate
    fatal_error: str | None = None
    excluded_folders: list[str] = Field(default_factory=list)
    skipped_paths: list[str] = Field(default_factory=list)
    folders: list[FolderReport] = Field(default_factory=list)

    def add_folder(self, folder: FolderReport) -> None:
        """Append a finalized folder report.

        The report is copied so later changes to the caller's instance never
        leak into the run report.

        Args:
            folder: Finalized folder report.
        """
        self.folders.append(folder.model_copy(deep=True))

    def folder(self, source_path: str) -> FolderReport | None:
        """Return the report for a source folder path, if present."""
        for item in self.folders:
            if item.source_path == source_path:
                return item
        return None

    def totals(self) -> FolderCounts:
        """Return counts summed over all folders."""
        total = FolderCounts()
        for item in self.folders:
            total.add(item.counts)
        return total

    @property
    def has_failures(self) -> bool:
        """Return True if any folder or message failed."""
        if self.status == RunStatus.aborted:
            return True
        return any(
            item.status == FolderStatus.failed or item.counts.failed_permanent
            for item in self.folders
        )
