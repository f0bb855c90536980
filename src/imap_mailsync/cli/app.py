"""Typer CLI for the IMAP folder synchronization tool."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from imap_mailsync.config.settings import (
    AppSettings,
    EndpointSettings,
    build_sync_config,
    load_settings,
)
from imap_mailsync.engine.cancel import CancellationToken
from imap_mailsync.engine.endpoint import Endpoint
from imap_mailsync.engine.enumerator import EnumerationError, FolderEnumerator
from imap_mailsync.engine.events import RunEvents, SyncEvent
from imap_mailsync.engine.matcher import FolderPathMatcher, load_exclusion_patterns
from imap_mailsync.gateway.base import AuthFailureError
from imap_mailsync.gateway.imap import ImapGateway
from imap_mailsync.models.report import FolderCounts, RunReport
from imap_mailsync.models.sync import (
    FolderSelection,
    RecurseAll,
    RecurseSubscribed,
    SingleFolder,
    SyncConfig,
)
from imap_mailsync.models.types import RunStatus, ScanMode
from imap_mailsync.pipeline.runner import SyncRunner
from imap_mailsync.storage.report_store import ReportStore
from imap_mailsync.utils.logging import configure_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_CONFIG = 2
EXIT_ABORTED = 3
EXIT_INTERRUPTED = 130

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help="One-way, idempotent IMAP → IMAP folder synchronization.",
)


def load_app_settings(*, env_file: Path | None) -> AppSettings:
    """Load application settings, exiting with a config error on failure.

    Args:
        env_file: Optional path to a .env file to load in addition to environment variables.

    Returns:
        Validated application settings.

    Raises:
        typer.Exit: With code 2 if the settings do not validate.
    """
    try:
        return load_settings(env_file=env_file)
    except ValidationError as exc:
        typer.echo(f"Invalid configuration:\n{exc}", err=True)
        raise typer.Exit(code=EXIT_CONFIG) from None


def resolve_selection(
    *,
    folder: str | None,
    all_folders: bool,
    all_subscribed: bool,
) -> FolderSelection:
    """Turn the mutually exclusive selection options into a selection.

    Args:
        folder: Single folder display path.
        all_folders: Whether `--all` was given.
        all_subscribed: Whether `--all-subscribed` was given.

    Returns:
        The folder selection; recursing over all folders if none was given.

    Raises:
        typer.BadParameter: If more than one option was given.
    """
    given = [
        name
        for name, enabled in (
            ("--folder", folder is not None),
            ("--all", all_folders),
            ("--all-subscribed", all_subscribed),
        )
        if enabled
    ]
    if len(given) > 1:
        raise typer.BadParameter(f"{' and '.join(given)} are mutually exclusive")
    if folder is not None:
        try:
            return SingleFolder(path=folder)
        except ValidationError:
            raise typer.BadParameter(f"invalid folder path: {folder!r}") from None
    if all_subscribed:
        return RecurseSubscribed()
    return RecurseAll()


def exit_code_for(report: RunReport) -> int:
    """Map a finished run report to the process exit code."""
    if report.status == RunStatus.aborted:
        return EXIT_ABORTED
    if report.status == RunStatus.cancelled:
        return EXIT_INTERRUPTED
    if report.has_failures:
        return EXIT_FAILURES
    return EXIT_OK


def _endpoint(settings: EndpointSettings, gateway: ImapGateway, *, label: str) -> Endpoint:
    return Endpoint(
        gateway=gateway,
        label=label,
        root=settings.root_path,
        case_insensitive=settings.case_insensitive,
        supports_create=settings.create_folders,
        supports_flags=settings.sync_flags,
    )


def _require_endpoints(settings: AppSettings, *, destination: bool = True) -> None:
    missing: list[str] = []
    if settings.source is None:
        missing.append("MAILSYNC_SOURCE__HOST/USERNAME/PASSWORD")
    if destination and settings.destination is None:
        missing.append("MAILSYNC_DESTINATION__HOST/USERNAME/PASSWORD")
    if missing:
        typer.echo(f"Missing endpoint settings. Set {' and '.join(missing)}.", err=True)
        raise typer.Exit(code=EXIT_CONFIG)


class ProgressSink:
    """Event sink that drives a rich progress display."""

    def __init__(self, progress: Progress) -> None:
        self._progress = progress
        self._overall = progress.add_task("[bold magenta]Folders", total=None)
        self._folder: TaskID | None = None

    def __call__(self, event: SyncEvent) -> None:
        fields = event.fields
        if event.name == "folders.enumerated":
            self._progress.update(self._overall, total=fields.get("jobs"))
        elif event.name == "folder.started":
            self._folder = self._progress.add_task(f"[cyan]{fields['folder']}", total=None)
        elif event.name == "folder.planned" and self._folder is not None:
            self._progress.update(self._folder, total=fields["tasks"])
        elif event.name in ("message.copied", "message.failed") and self._folder is not None:
            self._progress.advance(self._folder)
        elif event.name == "folder.finished":
            if self._folder is not None:
                self._progress.update(self._folder, visible=False)
                self._folder = None
            self._progress.advance(self._overall)


def render_report(console: Console, report: RunReport) -> None:
    """Print per-folder counts and run totals."""
    table = Table(title=f"Sync {report.status.value}" + (" (dry run)" if report.dry_run else ""))
    table.add_column("Folder")
    table.add_column("Status")
    for header in ("Source", "Copied", "Existing", "Excluded", "Duplicate", "Failed", "Pending"):
        table.add_column(header, justify="right")

    def _row(label: str, status: str, counts: FolderCounts) -> None:
        table.add_row(
            label,
            status,
            str(counts.source_messages),
            str(counts.copied),
            str(counts.skipped_existing),
            str(counts.skipped_excluded),
            str(counts.skipped_duplicate),
            str(counts.failed_permanent),
            str(counts.pending),
        )

    for folder in report.folders:
        label = folder.source_path
        if folder.destination_path != folder.source_path:
            label = f"{folder.source_path} → {folder.destination_path}"
        _row(label, folder.status.value, folder.counts)
    table.add_section()
    _row("[bold]Total", "", report.totals())
    console.print(table)

    for folder in report.folders:
        if folder.error:
            console.print(f"[red]✘[/red] {folder.source_path}: {folder.error}")
    if report.excluded_folders:
        console.print(f"[dim]Excluded:[/dim] {', '.join(report.excluded_folders)}")
    if report.skipped_paths:
        console.print(f"[yellow]Not enumerated:[/yellow] {', '.join(report.skipped_paths)}")
    if report.fatal_error:
        console.print(f"[bold red]Aborted:[/bold red] {report.fatal_error}")


async def run_sync(
    settings: AppSettings,
    config: SyncConfig,
    *,
    console: Console,
    store: ReportStore | None = None,
) -> RunReport:
    """Open both endpoints and run one synchronization pass.

    SIGINT and SIGTERM request cooperative cancellation; the run then stops
    at the next safe point and returns a partial report.

    Args:
        settings: Application settings with both endpoints configured.
        config: Engine configuration.
        console: Console for progress output.
        store: Optional store receiving the report after every folder.

    Returns:
        The run report.
    """
    assert settings.source is not None
    assert settings.destination is not None
    gateways = (
        ImapGateway.from_settings(settings.source),
        ImapGateway.from_settings(settings.destination),
    )
    source = _endpoint(settings.source, gateways[0], label="source")
    destination = _endpoint(settings.destination, gateways[1], label="destination")

    token = CancellationToken()
    loop = asyncio.get_running_loop()
    signals = (signal.SIGINT, signal.SIGTERM)
    for sig in signals:
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, token.cancel, f"received {sig.name}")

    progress = Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        console=console,
        expand=True,
    )
    events = RunEvents(log=logging.getLogger("imap_mailsync.run"), sinks=[ProgressSink(progress)])
    runner = SyncRunner(
        events=events,
        on_report_update=store.write if store is not None else None,
    )
    try:
        with progress:
            return await runner.run(source, destination, config, token=token)
    finally:
        for sig in signals:
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(sig)
        for gateway in gateways:
            await gateway.logout()


@app.command("sync")
def sync_cmd(
    *,
    folder: str | None = typer.Option(
        None,
        "--folder",
        help="Synchronize only this folder (display path with `/` separators).",
    ),
    all_folders: bool = typer.Option(
        False,
        "--all",
        help="Recurse over all folders under the source root (default).",
    ),
    all_subscribed: bool = typer.Option(
        False,
        "--all-subscribed",
        help="Recurse over subscribed folders under the source root.",
    ),
    exclude: list[str] | None = typer.Option(
        None,
        "--exclude",
        help="Glob pattern of folders to skip (repeatable; `=PATH` matches one path exactly).",
    ),
    exclude_file: Path | None = typer.Option(
        None,
        "--exclude-file",
        exists=True,
        dir_okay=False,
        help="File with one exclusion pattern per line.",
    ),
    fast: bool = typer.Option(
        False,
        "--fast",
        help="Match messages by size, internal date and Message-ID instead of content hashes.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Compute and report the copy plan without writing to the destination.",
    ),
    no_create_folders: bool = typer.Option(
        False,
        "--no-create-folders",
        help="Fail folders that are missing on the destination instead of creating them.",
    ),
    retries: int | None = typer.Option(
        None,
        "--retries",
        min=0,
        help="Retries per message for transient failures.",
    ),
    timeout: float | None = typer.Option(
        None,
        "--timeout",
        min=0.001,
        help="Per-operation timeout in seconds.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        exists=True,
        dir_okay=False,
        help="Optional path to a .env file (in addition to environment variables).",
    ),
) -> None:
    """Copy messages missing on the destination from the source.

    Args:
        folder: Single folder to synchronize.
        all_folders: Recurse over all folders.
        all_subscribed: Recurse over subscribed folders only.
        exclude: Extra exclusion patterns.
        exclude_file: Extra exclusion pattern file.
        fast: Use the fast scan mode.
        dry_run: Rehearse without writing.
        no_create_folders: Disable destination folder creation.
        retries: Retry budget override.
        timeout: Per-operation timeout override.
        env_file: Optional path to a .env file to load configuration from.
    """
    selection = resolve_selection(folder=folder, all_folders=all_folders, all_subscribed=all_subscribed)
    settings = load_app_settings(env_file=env_file)
    configure_logging(settings=settings.logging)
    _require_endpoints(settings)

    try:
        config = build_sync_config(
            settings,
            selection=selection,
            exclude=exclude,
            exclude_file=exclude_file,
            scan_mode=ScanMode.fast if fast else None,
            dry_run=dry_run,
            create_folders=False if no_create_folders else None,
            retry_budget=retries,
            timeout_s=timeout,
        )
    except (ValidationError, OSError) as exc:
        typer.echo(f"Invalid sync options: {exc}", err=True)
        raise typer.Exit(code=EXIT_CONFIG) from None

    console = Console(stderr=True)
    store = ReportStore(reports_dir=settings.storage.reports_dir)
    console.print(
        f"[bold blue]Sync starting[/bold blue] (dry_run={config.dry_run}, "
        f"scan_mode={config.scan_mode.value}, selection={config.selection.kind})",
    )

    try:
        report = asyncio.run(run_sync(settings, config, console=console, store=store))
    except KeyboardInterrupt:
        raise typer.Exit(code=EXIT_INTERRUPTED) from None

    render_report(console, report)
    console.print(f"  [dim]Report:[/dim] {store.path_for(report)}")
    raise typer.Exit(code=exit_code_for(report))


async def _plan_folders(settings: AppSettings, config: SyncConfig, *, subscribed: bool) -> None:
    assert settings.source is not None
    gateway = ImapGateway.from_settings(settings.source)
    source = _endpoint(settings.source, gateway, label="source")
    destination_root = settings.destination.root_path if settings.destination is not None else ()
    patterns = load_exclusion_patterns(config.exclude, config.exclude_file)
    enumerator = FolderEnumerator(
        source=source,
        matcher=FolderPathMatcher(patterns, case_insensitive=source.case_insensitive),
        events=RunEvents(log=logger),
        destination_root=destination_root,
        folder_map=config.folder_map,
        timeout_s=config.timeout_s,
    )
    try:
        plan = await enumerator.enumerate(RecurseSubscribed() if subscribed else RecurseAll())
    finally:
        await gateway.logout()

    for job in plan.jobs:
        if job.destination_display == job.source_display:
            typer.echo(job.source_display)
        else:
            typer.echo(f"{job.source_display} -> {job.destination_display}")
    for path in plan.excluded:
        typer.echo(f"excluded: {path}")
    for path in plan.skipped_paths:
        typer.echo(f"not enumerated: {path}", err=True)


@app.command("list-folders")
def list_folders_cmd(
    *,
    all_subscribed: bool = typer.Option(
        False,
        "--all-subscribed",
        help="Only list subscribed folders.",
    ),
    exclude: list[str] | None = typer.Option(
        None,
        "--exclude",
        help="Glob pattern of folders to skip (repeatable).",
    ),
    exclude_file: Path | None = typer.Option(
        None,
        "--exclude-file",
        exists=True,
        dir_okay=False,
        help="File with one exclusion pattern per line.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        exists=True,
        dir_okay=False,
        help="Optional path to a .env file (in addition to environment variables).",
    ),
) -> None:
    """Print the source folders a sync would visit, in visiting order.

    Args:
        all_subscribed: Only list subscribed folders.
        exclude: Extra exclusion patterns.
        exclude_file: Extra exclusion pattern file.
        env_file: Optional path to a .env file to load configuration from.
    """
    settings = load_app_settings(env_file=env_file)
    configure_logging(settings=settings.logging)
    _require_endpoints(settings, destination=False)

    try:
        config = build_sync_config(settings, exclude=exclude, exclude_file=exclude_file)
    except (ValidationError, OSError) as exc:
        typer.echo(f"Invalid options: {exc}", err=True)
        raise typer.Exit(code=EXIT_CONFIG) from None

    try:
        asyncio.run(_plan_folders(settings, config, subscribed=all_subscribed))
    except (AuthFailureError, EnumerationError) as exc:
        logger.error("Folder listing failed: %s", exc)
        typer.echo(f"Folder listing failed: {exc}", err=True)
        raise typer.Exit(code=EXIT_ABORTED) from None
    except KeyboardInterrupt:
        raise typer.Exit(code=EXIT_INTERRUPTED) from None
