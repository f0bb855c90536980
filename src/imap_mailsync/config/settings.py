"""Configuration and environment settings for the sync tool."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from imap_mailsync.engine.matcher import read_pattern_file
from imap_mailsync.models.sync import (
    BackoffPolicy,
    FolderSelection,
    RecurseAll,
    SyncConfig,
    split_display_path,
)
from imap_mailsync.models.types import ScanMode


def _split_list(value: object) -> object:
    """Parse a list from JSON or comma-separated env values."""
    if value is None:
        return []
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if stripped.startswith("["):
            return json.loads(stripped)
        return [part.strip() for part in stripped.split(",") if part.strip()]
    return value


class EndpointSettings(BaseSettings):
    """Connection settings and capabilities of one IMAP endpoint."""

    model_config = SettingsConfigDict(extra="forbid")

    host: Annotated[str, Field(min_length=1)]
    port: Annotated[int, Field(ge=1, le=65535)] = 993
    ssl: bool = True
    username: Annotated[str, Field(min_length=1)]
    password: Annotated[str, Field(min_length=1, repr=False)]

    root: str = ""
    case_insensitive: bool = False
    create_folders: bool = True
    sync_flags: bool = True

    timeout_seconds: Annotated[float, Field(gt=0, le=3600)] = 120.0
    fetch_batch_size: Annotated[int, Field(ge=1, le=5000)] = 200

    @field_validator("root")
    @classmethod
    def _normalize_root(cls, value: str) -> str:
        """Normalize the root folder to a `/`-separated display path."""
        return "/".join(split_display_path(value))

    @property
    def root_path(self) -> tuple[str, ...]:
        """Return the root folder as path segments."""
        return split_display_path(self.root)


class SyncSettings(BaseSettings):
    """Defaults for engine behaviour; CLI options override them."""

    model_config = SettingsConfigDict(extra="forbid")

    scan_mode: ScanMode = ScanMode.accurate
    retry_budget: Annotated[int, Field(ge=0, le=100)] = 3
    backoff_base_seconds: Annotated[float, Field(ge=0)] = 1.0
    backoff_max_seconds: Annotated[float, Field(ge=0)] = 30.0
    backoff_jitter_seconds: Annotated[float, Field(ge=0)] = 0.25

    exclude: list[str] = Field(default_factory=list)
    exclude_file: Path | None = None
    skip_flags: list[str] = Field(default_factory=list)
    folder_map: dict[str, str] = Field(default_factory=dict)

    @field_validator("exclude", "skip_flags", mode="before")
    @classmethod
    def _parse_lists(cls, value: object) -> object:
        """Accept JSON arrays or comma-separated values."""
        return _split_list(value)

    @field_validator("exclude_file")
    @classmethod
    def _exclude_file_must_exist(cls, value: Path | None) -> Path | None:
        """Ensure the exclusion file exists and is a file.

        Args:
            value: Path to the exclusion file.

        Returns:
            The resolved path.

        Raises:
            ValueError: If the path does not exist or is not a file.
        """
        if value is None:
            return None
        resolved = value.expanduser().resolve()
        if not resolved.is_file():
            msg = f"exclude_file does not exist or is not a file: {value}"
            raise ValueError(msg)
        return resolved


class StorageSettings(BaseSettings):
    """Settings for report storage."""

    model_config = SettingsConfigDict(extra="forbid")

    reports_dir: Path = Path("./reports")

    @field_validator("reports_dir")
    @classmethod
    def _reports_dir_to_absolute(cls, value: Path) -> Path:
        """Resolve the reports directory to an absolute path."""
        return value.expanduser().resolve()


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    model_config = SettingsConfigDict(extra="forbid")

    level: Annotated[str, Field(min_length=1)] = "INFO"
    json_logs: bool = False


class AppSettings(BaseSettings):
    """Top-level application settings."""

    model_config = SettingsConfigDict(
        env_prefix="MAILSYNC_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="forbid",
    )

    source: EndpointSettings | None = None
    destination: EndpointSettings | None = None
    sync: SyncSettings = Field(default_factory=SyncSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(*, env_file: Path | None) -> AppSettings:
    """Load validated settings from environment and optional file.

    Args:
        env_file: Optional .env file path.

    Returns:
        Validated AppSettings instance.
    """
    if env_file is None:
        return AppSettings()
    return AppSettings(_env_file=env_file)  # type: ignore[call-arg]


def build_sync_config(
    settings: AppSettings,
    *,
    selection: FolderSelection | None = None,
    exclude: list[str] | None = None,
    exclude_file: Path | None = None,
    scan_mode: ScanMode | None = None,
    dry_run: bool = False,
    create_folders: bool | None = None,
    retry_budget: int | None = None,
    timeout_s: float | None = None,
) -> SyncConfig:
    """Merge settings with CLI overrides into an engine configuration.

    Exclusion patterns and exclusion files from settings and CLI are
    unioned; every other override replaces the settings value when given.

    Args:
        settings: Loaded application settings.
        selection: Resolved folder selection.
        exclude: Extra exclusion patterns.
        exclude_file: Exclusion file overriding the configured one.
        scan_mode: Scan mode override.
        dry_run: Whether to rehearse without writing.
        create_folders: Folder creation override.
        retry_budget: Retry budget override.
        timeout_s: Per-operation timeout override.

    Returns:
        Validated SyncConfig.
    """
    sync = settings.sync
    destination = settings.destination
    allow_create = destination.create_folders if destination is not None else True
    if create_folders is not None:
        allow_create = allow_create and create_folders

    if timeout_s is None:
        timeout_s = settings.source.timeout_seconds if settings.source is not None else 120.0

    patterns = [*sync.exclude, *(exclude or [])]
    if exclude_file is not None and sync.exclude_file is not None and exclude_file != sync.exclude_file:
        patterns.extend(read_pattern_file(sync.exclude_file))

    return SyncConfig(
        selection=selection or RecurseAll(),
        exclude=patterns,
        exclude_file=exclude_file or sync.exclude_file,
        scan_mode=scan_mode or sync.scan_mode,
        dry_run=dry_run,
        create_folders=allow_create,
        sync_flags=destination.sync_flags if destination is not None else True,
        retry_budget=sync.retry_budget if retry_budget is None else retry_budget,
        timeout_s=timeout_s,
        backoff=BackoffPolicy(
            base_delay_s=sync.backoff_base_seconds,
            max_delay_s=sync.backoff_max_seconds,
            jitter_s=sync.backoff_jitter_seconds,
        ),
        skip_flags=sync.skip_flags,
        folder_map=sync.folder_map,
    )
