"""Shared enums used across the engine, reports and settings."""

from __future__ import annotations

from enum import StrEnum


class ScanMode(StrEnum):
    """How messages are fingerprinted for reconciliation."""

    accurate = "accurate"
    fast = "fast"


class TaskState(StrEnum):
    """Lifecycle of a single copy task."""

    pending = "pending"
    in_flight = "in_flight"
    succeeded = "succeeded"
    retry_scheduled = "retry_scheduled"
    failed_permanent = "failed_permanent"


class ErrorKind(StrEnum):
    """Classification of gateway and engine failures."""

    transient = "transient"
    auth_failure = "auth_failure"
    not_found = "not_found"
    permission_denied = "permission_denied"
    quota_exceeded = "quota_exceeded"
    malformed_content = "malformed_content"
    folder_missing = "folder_missing"
    fingerprint = "fingerprint"
    unexpected = "unexpected"


class FolderStatus(StrEnum):
    """Final status of one folder job."""

    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"
    aborted = "aborted"


class RunStatus(StrEnum):
    """Overall status of a synchronization run."""

    running = "running"
    completed = "completed"
    cancelled = "cancelled"
    aborted = "aborted"


class Side(StrEnum):
    """Which endpoint a failure was observed on."""

    source = "source"
    destination = "destination"
