"""Atomic JSON persistence for run reports."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from imap_mailsync.models.report import RunReport


def report_filename(report: RunReport) -> str:
    """Return the file name for a run report, derived from its start time."""
    stamp = report.started_at.strftime("%Y%m%dT%H%M%S%fZ")
    suffix = "-dry-run" if report.dry_run else ""
    return f"run-{stamp}{suffix}.json"


class ReportStore:
    """Writes run reports so a reader never sees a half-written file."""

    def __init__(self, *, reports_dir: Path) -> None:
        """Initialize the store.

        Args:
            reports_dir: Directory receiving report files.
        """
        self._reports_dir = reports_dir

    @property
    def reports_dir(self) -> Path:
        """Return the reports directory."""
        return self._reports_dir

    def path_for(self, report: RunReport) -> Path:
        """Return the path a report is written to."""
        return self._reports_dir / report_filename(report)

    def write(self, report: RunReport) -> Path:
        """Write (or replace) the JSON file for a report.

        The same run always maps to the same file, so calling this after every
        folder keeps one up-to-date partial report on disk.

        Args:
            report: Report to persist.

        Returns:
            Path of the written file.
        """
        self._reports_dir.mkdir(parents=True, exist_ok=True)
        target = self.path_for(report)
        payload = report.model_dump_json(indent=2).encode("utf-8")

        fd, tmp_name = tempfile.mkstemp(
            prefix=target.name + ".",
            suffix=".tmp",
            dir=str(self._reports_dir),
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, target)
        finally:
            try:
                if tmp_path.exists():
                    tmp_path.unlink()
            except OSError:
                pass
        return target

    @staticmethod
    def read(path: Path) -> RunReport:
        """Load a previously written report."""
        return RunReport.model_validate_json(path.read_text(encoding="utf-8"))
