"""Copy planning and the per-message copy/retry state machine."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from imap_mailsync.engine.cancel import CancellationToken, SyncCancelled
from imap_mailsync.engine.endpoint import Endpoint
from imap_mailsync.engine.enumerator import FolderJob
from imap_mailsync.engine.events import RunEvents
from imap_mailsync.engine.index import ReconciliationIndex
from imap_mailsync.engine.retry import backoff_delay, guarded, retry_async
from imap_mailsync.gateway.base import (
    AuthFailureError,
    FolderHandle,
    GatewayError,
    MessageRef,
    TransientError,
)
from imap_mailsync.models.report import FolderReport, MessageFailure
from imap_mailsync.models.sync import SyncConfig
from imap_mailsync.models.types import ErrorKind, FolderStatus, Side, TaskState

logger = logging.getLogger(__name__)

FOLDER_CREATION_DISABLED = "destination folder missing and folder creation is disabled"

# Set by the server on delivery; APPEND rejects it.
_UNSETTABLE_FLAGS = frozenset({"\\recent"})

_OPEN_STATES = frozenset({TaskState.pending, TaskState.in_flight, TaskState.retry_scheduled})


@dataclass
class CopyTask:
    """One source message that is missing on the destination."""

    ref: MessageRef
    fingerprint: str
    state: TaskState = TaskState.pending
    attempts: int = 0
    last_error: str | None = None
    last_error_kind: ErrorKind | None = None


class CopyScheduler:
    """Diffs two indexes and copies what the destination lacks.

    Task states move ``pending → in_flight → succeeded | retry_scheduled |
    failed_permanent`` and ``retry_scheduled → in_flight | failed_permanent``.
    Transient failures are retried until `retry_budget` retries are used;
    every other gateway failure is permanent for the task. Authentication
    failures and cancellation leave open tasks pending and propagate.
    """

    def __init__(
        self,
        *,
        source: Endpoint,
        destination: Endpoint,
        config: SyncConfig,
        events: RunEvents,
        token: CancellationToken,
    ) -> None:
        """Initialize the scheduler.

        Args:
            source: Source endpoint.
            destination: Destination endpoint (a dry-run overlay in rehearsals).
            config: Engine configuration.
            events: Run observability context.
            token: Cancellation token.
        """
        self._source = source
        self._destination = destination
        self._config = config
        self._events = events
        self._token = token
        self._skip_flags = {flag.casefold() for flag in config.skip_flags}

    def plan(
        self,
        source_index: ReconciliationIndex,
        destination_index: ReconciliationIndex,
        report: FolderReport,
    ) -> list[CopyTask]:
        """Build copy tasks and count messages that need no copy.

        Args:
            source_index: Source folder index.
            destination_index: Destination folder index.
            report: Folder report to update.

        Returns:
            Tasks in source enumeration order.
        """
        counts = report.counts
        counts.source_messages = source_index.total
        counts.destination_messages = destination_index.total
        counts.skipped_duplicate += len(source_index.duplicates)

        counts.failed_permanent += len(source_index.failures)
        counts.unverified_destination += len(destination_index.failures)
        report.failures.extend(source_index.failures)
        report.failures.extend(destination_index.failures)

        tasks: list[CopyTask] = []
        for fingerprint, ref in source_index.entries.items():
            if fingerprint in destination_index:
                counts.skipped_existing += 1
                continue
            if self._skip_flags and any(f.casefold() in self._skip_flags for f in ref.flags):
                counts.skipped_excluded += 1
                continue
            tasks.append(CopyTask(ref=ref, fingerprint=fingerprint))
        return tasks

    def fail_folder(
        self,
        source_index: ReconciliationIndex,
        report: FolderReport,
        kind: ErrorKind,
        message: str,
    ) -> list[CopyTask]:
        """Fail every source message of a folder whose destination is unusable.

        Args:
            source_index: Source folder index.
            report: Folder report to update.
            kind: Error kind recorded for each task.
            message: Folder-level error message.

        Returns:
            The failed tasks.
        """
        tasks = self.plan(source_index, ReconciliationIndex(side=Side.destination), report)
        self._fail_all(tasks, report, kind, message)
        report.status = FolderStatus.failed
        report.error = message
        return tasks

    async def run(
        self,
        job: FolderJob,
        source_index: ReconciliationIndex,
        destination_index: ReconciliationIndex,
        destination_handle: FolderHandle | None,
        report: FolderReport,
    ) -> list[CopyTask]:
        """Reconcile one folder job.

        Args:
            job: Folder job.
            source_index: Source folder index.
            destination_index: Destination folder index; successful copies are
                added to it.
            destination_handle: Selected destination folder, or None if it
                does not exist yet.
            report: Folder report to update.

        Returns:
            All tasks with their final state.

        Raises:
            SyncCancelled: If cancellation was requested.
            AuthFailureError: If authentication was lost.
        """
        tasks = self.plan(source_index, destination_index, report)
        self._events.emit(
            "folder.planned",
            folder=report.source_path,
            tasks=len(tasks),
            skipped_existing=report.counts.skipped_existing,
            skipped_excluded=report.counts.skipped_excluded,
        )
        try:
            handle = destination_handle
            if handle is None:
                handle = await self._ensure_destination(job, tasks, report)
                if handle is None:
                    return tasks

            for task in tasks:
                await self._copy(task, handle, destination_index, report)
        except (SyncCancelled, AuthFailureError):
            report.counts.pending = sum(1 for task in tasks if task.state in _OPEN_STATES)
            raise
        return tasks

    async def _ensure_destination(
        self,
        job: FolderJob,
        tasks: list[CopyTask],
        report: FolderReport,
    ) -> FolderHandle | None:
        path = job.destination_path
        if not (self._config.create_folders and self._destination.supports_create):
            if tasks:
                self._fail_all(tasks, report, ErrorKind.folder_missing, FOLDER_CREATION_DISABLED)
                report.status = FolderStatus.failed
                report.error = FOLDER_CREATION_DISABLED
            self._events.emit(
                "folder.missing",
                level=logging.WARNING if tasks else logging.INFO,
                folder=job.destination_display,
                tasks=len(tasks),
            )
            return None

        gateway = self._destination.gateway
        timeout_s = self._config.timeout_s

        async def _create_and_select() -> FolderHandle:
            await guarded(gateway.create_folder(path), timeout_s=timeout_s, operation="create")
            return await guarded(gateway.select_folder(path), timeout_s=timeout_s, operation="select")

        def _on_retry(attempt: int, exc: BaseException, delay: float) -> None:
            self._events.emit(
                "folder.create_retry",
                level=logging.WARNING,
                folder=job.destination_display,
                attempt=attempt,
                delay_s=round(delay, 3),
                error=str(exc),
            )

        try:
            handle = await retry_async(
                _create_and_select,
                retry_budget=self._config.retry_budget,
                policy=self._config.backoff,
                token=self._token,
                on_retry=_on_retry,
            )
        except AuthFailureError:
            raise
        except GatewayError as exc:
            message = f"cannot create destination folder: {exc}"
            self._fail_all(tasks, report, exc.kind, message)
            report.status = FolderStatus.failed
            report.error = message
            self._events.emit(
                "folder.create_failed",
                level=logging.ERROR,
                folder=job.destination_display,
                error_kind=exc.kind.value,
                error=str(exc),
            )
            return None

        self._events.emit(
            "folder.created",
            folder=job.destination_display,
            dry_run=self._config.dry_run,
        )
        return handle

    async def _copy(
        self,
        task: CopyTask,
        handle: FolderHandle,
        destination_index: ReconciliationIndex,
        report: FolderReport,
    ) -> None:
        timeout_s = self._config.timeout_s
        flags = self._flags_for(task.ref)

        while True:
            self._token.raise_if_cancelled()
            task.state = TaskState.in_flight
            task.attempts += 1
            side = Side.source
            try:
                content = await guarded(
                    self._source.gateway.fetch_content(task.ref),
                    timeout_s=timeout_s,
                    operation="fetch",
                )
                side = Side.destination
                appended = await guarded(
                    self._destination.gateway.append(
                        handle,
                        content,
                        flags=flags,
                        internal_date=task.ref.internal_date,
                    ),
                    timeout_s=timeout_s,
                    operation="append",
                )
            except AuthFailureError:
                task.state = TaskState.pending
                raise
            except TransientError as exc:
                task.last_error = str(exc)
                task.last_error_kind = exc.kind
                if task.attempts > self._config.retry_budget:
                    self._fail(task, report, side)
                    return
                task.state = TaskState.retry_scheduled
                delay = backoff_delay(self._config.backoff, task.attempts)
                self._events.emit(
                    "message.retry",
                    level=logging.WARNING,
                    folder=handle.display,
                    uid=task.ref.uid,
                    attempt=task.attempts,
                    delay_s=round(delay, 3),
                    error=str(exc),
                )
                try:
                    await self._token.sleep(delay)
                except SyncCancelled:
                    task.state = TaskState.pending
                    raise
                continue
            except GatewayError as exc:
                task.last_error = str(exc)
                task.last_error_kind = exc.kind
                self._fail(task, report, side)
                return
            except Exception as exc:
                logger.exception("Unexpected error copying UID %s from %s", task.ref.uid, handle.display)
                task.last_error = repr(exc)
                task.last_error_kind = ErrorKind.unexpected
                self._fail(task, report, side)
                return

            task.state = TaskState.succeeded
            destination_index.add(task.fingerprint, appended or task.ref)
            report.counts.copied += 1
            if task.attempts > 1:
                report.counts.failed_retried_then_succeeded += 1
            self._events.emit(
                "message.copied",
                level=logging.DEBUG,
                folder=handle.display,
                uid=task.ref.uid,
                fingerprint=task.fingerprint,
                attempts=task.attempts,
                dry_run=self._config.dry_run,
            )
            return

    def _flags_for(self, ref: MessageRef) -> list[str]:
        if not (self._config.sync_flags and self._destination.supports_flags):
            return []
        return [flag for flag in ref.flags if flag.casefold() not in _UNSETTABLE_FLAGS]

    def _fail(self, task: CopyTask, report: FolderReport, side: Side) -> None:
        task.state = TaskState.failed_permanent
        kind = task.last_error_kind or ErrorKind.unexpected
        report.counts.failed_permanent += 1
        report.failures.append(
            MessageFailure(
                side=side,
                uid=task.ref.uid,
                fingerprint=task.fingerprint,
                error_kind=kind,
                attempts=task.attempts,
                message=task.last_error or kind.value,
            ),
        )
        self._events.emit(
            "message.failed",
            level=logging.WARNING,
            side=side.value,
            folder=report.source_path,
            uid=task.ref.uid,
            fingerprint=task.fingerprint,
            error_kind=kind.value,
            attempts=task.attempts,
            error=task.last_error,
        )

    def _fail_all(
        self,
        tasks: list[CopyTask],
        report: FolderReport,
        kind: ErrorKind,
        message: str,
    ) -> None:
        for task in tasks:
            task.last_error = message
            task.last_error_kind = kind
            self._fail(task, report, Side.destination)
