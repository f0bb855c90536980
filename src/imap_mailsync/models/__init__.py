"""Validated domain models (Pydantic)."""

from __future__ import annotations

from imap_mailsync.models.report import (
    FolderCounts,
    FolderReport,
    MessageFailure,
    RunReport,
)
from imap_mailsync.models.sync import (
    BackoffPolicy,
    FolderSelection,
    RecurseAll,
    RecurseSubscribed,
    SingleFolder,
    SyncConfig,
)
from imap_mailsync.models.types import (
    ErrorKind,
    FolderStatus,
    RunStatus,
    ScanMode,
    Side,
    TaskState,
)

__all__ = [
    "BackoffPolicy",
    "ErrorKind",
    "FolderCounts",
    "FolderReport",
    "FolderSelection",
    "FolderStatus",
    "MessageFailure",
    "RecurseAll",
    "RecurseSubscribed",
    "RunReport",
    "RunStatus",
    "ScanMode",
    "Side",
    "SingleFolder",
    "SyncConfig",
    "TaskState",
]
