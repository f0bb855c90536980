"""Tests for settings loading and engine configuration merging."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from imap_mailsync.config.settings import (
    AppSettings,
    EndpointSettings,
    SyncSettings,
    build_sync_config,
    load_settings,
)
from imap_mailsync.models.sync import RecurseSubscribed, SyncConfig
from imap_mailsync.models.types import ScanMode


def _endpoint(**kwargs: object) -> EndpointSettings:
    values: dict[str, object] = {"host": "imap.example.com", "username": "u", "password": "p"}
    values.update(kwargs)
    return EndpointSettings.model_validate(values)


def test_settings_load_from_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Nested settings should load from MAILSYNC_ environment variables."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MAILSYNC_SOURCE__HOST", "imap.old.example")
    monkeypatch.setenv("MAILSYNC_SOURCE__USERNAME", "alice")
    monkeypatch.setenv("MAILSYNC_SOURCE__PASSWORD", "secret")
    monkeypatch.setenv("MAILSYNC_SOURCE__ROOT", "/Archive/")
    monkeypatch.setenv("MAILSYNC_SYNC__RETRY_BUDGET", "5")
    monkeypatch.setenv("MAILSYNC_SYNC__EXCLUDE", '["Trash*", "Spam"]')

    settings = load_settings(env_file=None)
    assert settings.source is not None
    assert settings.source.host == "imap.old.example"
    assert settings.source.root == "Archive"
    assert settings.source.root_path == ("Archive",)
    assert settings.destination is None
    assert settings.sync.retry_budget == 5
    assert settings.sync.exclude == ["Trash*", "Spam"]
    assert "secret" not in repr(settings.source)


def test_settings_load_from_env_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """An explicit .env file should be read in addition to the environment."""
    monkeypatch.chdir(tmp_path)
    env_file = tmp_path / "sync.env"
    env_file.write_text(
        "MAILSYNC_DESTINATION__HOST=imap.new.example\n"
        "MAILSYNC_DESTINATION__USERNAME=bob\n"
        "MAILSYNC_DESTINATION__PASSWORD=pw\n"
        "MAILSYNC_DESTINATION__CREATE_FOLDERS=false\n",
        encoding="utf-8",
    )
    settings = load_settings(env_file=env_file)
    assert settings.destination is not None
    assert settings.destination.create_folders is False


def test_exclude_file_must_exist(tmp_path: Path) -> None:
    """A configured exclusion file that does not exist should fail validation."""
    with pytest.raises(ValidationError):
        SyncSettings(exclude_file=tmp_path / "missing.txt")


def test_build_sync_config_merges_overrides(tmp_path: Path) -> None:
    """CLI overrides should replace settings, except exclusions which are unioned."""
    settings_file = tmp_path / "settings-exclude.txt"
    settings_file.write_text("Junk\n", encoding="utf-8")
    cli_file = tmp_path / "cli-exclude.txt"
    cli_file.write_text("Drafts\n", encoding="utf-8")

    settings = AppSettings(
        source=_endpoint(timeout_seconds=30),
        destination=_endpoint(sync_flags=False),
        sync=SyncSettings(exclude=["Trash*"], exclude_file=settings_file, retry_budget=4),
    )
    config = build_sync_config(
        settings,
        selection=RecurseSubscribed(),
        exclude=["Spam"],
        exclude_file=cli_file,
        scan_mode=ScanMode.fast,
        dry_run=True,
        create_folders=False,
    )

    assert isinstance(config, SyncConfig)
    assert config.selection.kind == "subscribed"
    assert config.exclude == ["Trash*", "Spam", "Junk"]
    assert config.exclude_file == cli_file
    assert config.scan_mode == ScanMode.fast
    assert config.dry_run is True
    assert config.create_folders is False
    assert config.sync_flags is False
    assert config.retry_budget == 4
    assert config.timeout_s == 30


def test_build_sync_config_defaults() -> None:
    """Without overrides the settings defaults should apply."""
    config = build_sync_config(AppSettings(source=_endpoint(), destination=_endpoint()))
    assert config.selection.kind == "all"
    assert config.scan_mode == ScanMode.accurate
    assert config.create_folders is True
    assert config.retry_budget == 3
    assert config.timeout_s == 120.0
    assert config.dry_run is False


def test_sync_config_rejects_negative_retry_budget() -> None:
    """Retry budgets must be non-negative."""
    with pytest.raises(ValidationError):
        build_sync_config(AppSettings(), retry_budget=-1)
