"""Resolved engine configuration produced by the CLI/settings layer."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, field_validator

from imap_mailsync.models.base import AppModel
from imap_mailsync.models.types import ScanMode


def split_display_path(value: str) -> tuple[str, ...]:
    """Split a `/`-separated display path into path segments.

    Args:
        value: Display path such as ``"Archive/2020"``.

    Returns:
        Tuple of non-empty segments.
    """
    return tuple(part for part in value.strip().split("/") if part)


class SingleFolder(AppModel):
    """Synchronize exactly one folder, ignoring exclusions."""

    kind: Literal["single"] = "single"
    path: Annotated[str, Field(min_length=1)]

    @property
    def segments(self) -> tuple[str, ...]:
        """Return the selected folder as path segments."""
        return split_display_path(self.path)


class RecurseAll(AppModel):
    """Walk every folder below the source root."""

    kind: Literal["all"] = "all"


class RecurseSubscribed(AppModel):
    """Walk only subscribed folders below the source root."""

    kind: Literal["subscribed"] = "subscribed"


FolderSelection = Annotated[
    SingleFolder | RecurseAll | RecurseSubscribed,
    Field(discriminator="kind"),
]


class BackoffPolicy(AppModel):
    """Exponential backoff parameters for recoverable failures."""

    base_delay_s: Annotated[float, Field(ge=0)] = 1.0
    max_delay_s: Annotated[float, Field(ge=0)] = 30.0
    jitter_s: Annotated[float, Field(ge=0)] = 0.25


class SyncConfig(AppModel):
    """Everything the engine needs to run one synchronization pass."""

    selection: FolderSelection = Field(default_factory=RecurseAll)

    exclude: list[str] = Field(default_factory=list)
    exclude_file: Path | None = None

    scan_mode: ScanMode = ScanMode.accurate
    dry_run: bool = False
    create_folders: bool = True
    sync_flags: bool = True

    retry_budget: Annotated[int, Field(ge=0)] = 3
    timeout_s: Annotated[float, Field(gt=0)] | None = 120.0
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)

    skip_flags: list[str] = Field(default_factory=list)
    folder_map: dict[str, str] = Field(default_factory=dict)

    @field_validator("exclude", "skip_flags")
    @classmethod
    def _drop_blank(cls, value: list[str]) -> list[str]:
        """Strip entries and drop blanks."""
        return [item.strip() for item in value if item.strip()]

    @field_validator("folder_map")
    @classmethod
    def _normalize_folder_map(cls, value: dict[str, str]) -> dict[str, str]:
        """Normalize folder map keys and values to canonical display paths.

        Args:
            value: Raw mapping of source path prefix to destination path prefix.

        Returns:
            Mapping with surrounding separators removed.

        Raises:
            ValueError: If a source prefix is blank.
        """
        normalized: dict[str, str] = {}
        for src, dst in value.items():
            key = "/".join(split_display_path(src))
            if not key:
                raise ValueError("folder_map source paths must not be blank")
            normalized[key] = "/".join(split_display_path(dst))
        return normalized
