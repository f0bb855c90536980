"""Tests for run report persistence."""

from __future__ import annotations

from pathlib import Path

from imap_mailsync.models.report import FolderReport, RunReport
from imap_mailsync.models.types import FolderStatus, RunStatus
from imap_mailsync.storage.report_store import ReportStore, report_filename


def test_report_store_rewrites_same_file(tmp_path: Path) -> None:
    """Repeated writes for one run should replace a single file atomically."""
    store = ReportStore(reports_dir=tmp_path / "reports")
    report = RunReport()

    first = store.write(report)
    report.add_folder(FolderReport(source_path="INBOX", destination_path="INBOX"))
    report.status = RunStatus.completed
    second = store.write(report)

    assert first == second
    assert [p.name for p in store.reports_dir.iterdir()] == [first.name]
    loaded = ReportStore.read(second)
    assert loaded.status == RunStatus.completed
    assert loaded.folders[0].status == FolderStatus.completed
    assert loaded == report


def test_dry_run_reports_are_named_apart() -> None:
    """Dry-run reports should never collide with real runs."""
    report = RunReport(dry_run=True)
    assert report_filename(report).endswith("-dry-run.json")
    assert not report_filename(RunReport(started_at=report.started_at)).endswith("-dry-run.json")


def test_add_folder_snapshots_the_folder_report() -> None:
    """Later edits to a folder report should not leak into the run report."""
    report = RunReport()
    folder = FolderReport(source_path="INBOX", destination_path="INBOX")
    report.add_folder(folder)
    folder.counts.copied = 5
    assert report.folders[0].counts.copied == 0
    assert report.totals().copied == 0
