"""Top-level orchestration of one synchronization pass."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime

from imap_mailsync.engine.cancel import CancellationToken, SyncCancelled
from imap_mailsync.engine.dryrun import DryRunGateway
from imap_mailsync.engine.endpoint import Endpoint
from imap_mailsync.engine.enumerator import EnumerationError, FolderEnumerator, FolderJob
from imap_mailsync.engine.events import RunEvents
from imap_mailsync.engine.fingerprint import FingerprintStrategy, strategy_for
from imap_mailsync.engine.index import ReconciliationIndex, build_index
from imap_mailsync.engine.matcher import FolderPathMatcher, load_exclusion_patterns
from imap_mailsync.engine.retry import guarded, retry_async
from imap_mailsync.engine.scheduler import CopyScheduler
from imap_mailsync.gateway.base import (
    AuthFailureError,
    ConnectionGateway,
    FolderHandle,
    GatewayError,
    NotFoundError,
)
from imap_mailsync.models.report import FolderReport, RunReport
from imap_mailsync.models.sync import SyncConfig
from imap_mailsync.models.types import FolderStatus, RunStatus, Side

logger = logging.getLogger(__name__)

ReportCallback = Callable[[RunReport], None]


class SyncRunner:
    """Runs folder enumeration, indexing and copying for two endpoints.

    Folder jobs are processed one at a time in enumeration order, each
    endpoint session is driven by a single task, and the report is only
    touched from this loop.
    """

    def __init__(
        self,
        *,
        events: RunEvents | None = None,
        on_report_update: ReportCallback | None = None,
        strategy: FingerprintStrategy | None = None,
    ) -> None:
        """Initialize the runner.

        Args:
            events: Observability context for the run (a default one logging
                to this module's logger is created otherwise).
            on_report_update: Called with the report after each finalized
                folder and at the end of the run, e.g. to persist it.
            strategy: Fingerprint strategy overriding the configured scan mode.
        """
        self._events = events or RunEvents(log=logger)
        self._on_report_update = on_report_update
        self._strategy = strategy

    async def run(
        self,
        source: Endpoint,
        destination: Endpoint,
        config: SyncConfig,
        *,
        token: CancellationToken | None = None,
    ) -> RunReport:
        """Synchronize the source into the destination.

        Args:
            source: Source endpoint.
            destination: Destination endpoint.
            config: Engine configuration.
            token: Optional cancellation token.

        Returns:
            The run report; partial if the run was cancelled or aborted.
        """
        token = token or CancellationToken()
        strategy = self._strategy or strategy_for(config.scan_mode)
        report = RunReport(dry_run=config.dry_run, scan_mode=strategy.mode)

        if config.dry_run:
            destination = replace(destination, gateway=DryRunGateway(destination.gateway))

        patterns = load_exclusion_patterns(config.exclude, config.exclude_file)
        enumerator = FolderEnumerator(
            source=source,
            matcher=FolderPathMatcher(patterns, case_insensitive=source.case_insensitive),
            events=self._events,
            destination_root=destination.root,
            folder_map=config.folder_map,
            timeout_s=config.timeout_s,
        )
        scheduler = CopyScheduler(
            source=source,
            destination=destination,
            config=config,
            events=self._events,
            token=token,
        )

        self._events.emit(
            "run.started",
            dry_run=config.dry_run,
            scan_mode=strategy.mode.value,
            selection=config.selection.kind,
            exclusions=len(patterns),
        )

        try:
            token.raise_if_cancelled()
            plan = await enumerator.enumerate(config.selection)
        except SyncCancelled:
            return self._finish(report, RunStatus.cancelled)
        except (AuthFailureError, EnumerationError) as exc:
            report.fatal_error = str(exc)
            return self._finish(report, RunStatus.aborted)

        report.excluded_folders = list(plan.excluded)
        report.skipped_paths = list(plan.skipped_paths)

        for job in plan.jobs:
            if token.cancelled:
                return self._finish(report, RunStatus.cancelled)

            folder_report = FolderReport(
                source_path=job.source_display,
                destination_path=job.destination_display,
            )
            self._events.emit(
                "folder.started",
                folder=job.source_display,
                destination=job.destination_display,
            )
            try:
                await self._sync_folder(
                    job,
                    source=source,
                    destination=destination,
                    config=config,
                    strategy=strategy,
                    scheduler=scheduler,
                    token=token,
                    report=folder_report,
                )
            except SyncCancelled:
                folder_report.status = FolderStatus.cancelled
                self._finalize(report, folder_report)
                return self._finish(report, RunStatus.cancelled)
            except AuthFailureError as exc:
                folder_report.status = FolderStatus.aborted
                folder_report.error = str(exc)
                self._finalize(report, folder_report)
                report.fatal_error = str(exc)
                return self._finish(report, RunStatus.aborted)

            self._finalize(report, folder_report)

        return self._finish(report, RunStatus.completed)

    async def _sync_folder(
        self,
        job: FolderJob,
        *,
        source: Endpoint,
        destination: Endpoint,
        config: SyncConfig,
        strategy: FingerprintStrategy,
        scheduler: CopyScheduler,
        token: CancellationToken,
        report: FolderReport,
    ) -> None:
        try:
            source_handle = await self._select(source.gateway, job.source.path, config, token)
            source_index = await build_index(
                source.gateway,
                source_handle,
                strategy,
                side=Side.source,
                events=self._events,
                retry_budget=config.retry_budget,
                backoff=config.backoff,
                timeout_s=config.timeout_s,
                token=token,
            )
        except AuthFailureError:
            raise
        except GatewayError as exc:
            self._fail_folder(report, f"source folder unavailable: {exc}", exc)
            return

        destination_handle: FolderHandle | None
        try:
            destination_handle = await self._select(
                destination.gateway,
                job.destination_path,
                config,
                token,
            )
        except NotFoundError:
            destination_handle = None
        except AuthFailureError:
            raise
        except GatewayError as exc:
            self._fail_destination(scheduler, source_index, report, exc)
            return

        if destination_handle is None:
            destination_index = ReconciliationIndex(side=Side.destination)
        else:
            try:
                destination_index = await build_index(
                    destination.gateway,
                    destination_handle,
                    strategy,
                    side=Side.destination,
                    events=self._events,
                    retry_budget=config.retry_budget,
                    backoff=config.backoff,
                    timeout_s=config.timeout_s,
                    token=token,
                )
            except AuthFailureError:
                raise
            except GatewayError as exc:
                self._fail_destination(scheduler, source_index, report, exc)
                return

        await scheduler.run(job, source_index, destination_index, destination_handle, report)

    async def _select(
        self,
        gateway: ConnectionGateway,
        path: tuple[str, ...],
        config: SyncConfig,
        token: CancellationToken,
    ) -> FolderHandle:
        async def _call() -> FolderHandle:
            return await guarded(
                gateway.select_folder(path),
                timeout_s=config.timeout_s,
                operation="select",
            )

        return await retry_async(
            _call,
            retry_budget=config.retry_budget,
            policy=config.backoff,
            token=token,
        )

    def _fail_destination(
        self,
        scheduler: CopyScheduler,
        source_index: ReconciliationIndex,
        report: FolderReport,
        exc: GatewayError,
    ) -> None:
        message = f"destination folder unavailable: {exc}"
        tasks = scheduler.fail_folder(source_index, report, exc.kind, message)
        self._events.emit(
            "folder.failed",
            level=logging.ERROR,
            folder=report.source_path,
            error_kind=exc.kind.value,
            error=str(exc),
            tasks=len(tasks),
        )

    def _fail_folder(self, report: FolderReport, message: str, exc: GatewayError) -> None:
        report.status = FolderStatus.failed
        report.error = message
        self._events.emit(
            "folder.failed",
            level=logging.ERROR,
            folder=report.source_path,
            error_kind=exc.kind.value,
            error=str(exc),
        )

    def _finalize(self, report: RunReport, folder_report: FolderReport) -> None:
        report.add_folder(folder_report)
        counts = folder_report.counts
        self._events.emit(
            "folder.finished",
            folder=folder_report.source_path,
            status=folder_report.status.value,
            copied=counts.copied,
            skipped_existing=counts.skipped_existing,
            failed=counts.failed_permanent,
        )
        if self._on_report_update is not None:
            self._on_report_update(report)

    def _finish(self, report: RunReport, status: RunStatus) -> RunReport:
        report.status = status
        report.finished_at = datetime.now(tz=UTC)
        totals = report.totals()
        self._events.emit(
            "run.finished",
            level=logging.ERROR if status == RunStatus.aborted else logging.INFO,
            status=status.value,
            folders=len(report.folders),
            copied=totals.copied,
            skipped_existing=totals.skipped_existing,
            failed=totals.failed_permanent,
            fatal_error=report.fatal_error,
        )
        if self._on_report_update is not None:
            self._on_report_update(report)
        return report
