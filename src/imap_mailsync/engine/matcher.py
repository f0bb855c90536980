"""Folder exclusion patterns."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from fnmatch import fnmatchcase
from pathlib import Path

EXACT_PREFIX = "="


def _normalize(path: str, *, case_insensitive: bool) -> str:
    """Canonicalize a display path for comparison.

    The top-level INBOX is case-insensitive on every IMAP server, so it is
    always upper-cased.
    """
    segments = [part for part in path.strip().split("/") if part]
    if segments and segments[0].upper() == "INBOX":
        segments[0] = "INBOX"
    joined = "/".join(segments)
    return joined.casefold() if case_insensitive else joined


class FolderPathMatcher:
    """Matches `/`-separated folder display paths against exclusion patterns.

    Patterns use shell-style wildcards (``*``, ``?``, ``[...]``). A pattern
    starting with ``=`` is an exact path with no wildcard interpretation,
    e.g. ``=Archive[2020]``.
    """

    def __init__(self, patterns: Iterable[str], *, case_insensitive: bool = False) -> None:
        """Compile the pattern list.

        Args:
            patterns: Exclusion patterns.
            case_insensitive: Whether folder names compare case-insensitively.
        """
        self._case_insensitive = case_insensitive
        self._exact: set[str] = set()
        self._globs: list[str] = []
        for raw in patterns:
            pattern = raw.strip()
            if not pattern:
                continue
            if pattern.startswith(EXACT_PREFIX):
                self._exact.add(_normalize(pattern[1:], case_insensitive=case_insensitive))
            else:
                self._globs.append(_normalize(pattern, case_insensitive=case_insensitive))

    def __bool__(self) -> bool:
        return bool(self._exact or self._globs)

    def matches(self, path: str) -> bool:
        """Return True if `path` is excluded by any pattern."""
        candidate = _normalize(path, case_insensitive=self._case_insensitive)
        if candidate in self._exact:
            return True
        return any(fnmatchcase(candidate, pattern) for pattern in self._globs)


def matches(path: str, patterns: Sequence[str], *, case_insensitive: bool = False) -> bool:
    """Return True if `path` matches any of `patterns`.

    Args:
        path: `/`-separated folder display path.
        patterns: Exclusion patterns.
        case_insensitive: Whether folder names compare case-insensitively.

    Returns:
        Whether the folder is excluded.
    """
    return FolderPathMatcher(patterns, case_insensitive=case_insensitive).matches(path)


def read_pattern_file(path: Path) -> list[str]:
    """Read one pattern per line, ignoring blank lines and ``#`` comments.

    Args:
        path: Pattern file.

    Returns:
        Patterns in file order.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    out: list[str] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        out.append(stripped)
    return out


def load_exclusion_patterns(patterns: Iterable[str], exclude_file: Path | None) -> list[str]:
    """Union explicit patterns with those from an optional file.

    Args:
        patterns: Patterns given directly.
        exclude_file: Optional pattern file.

    Returns:
        De-duplicated patterns, explicit ones first.
    """
    merged = [p.strip() for p in patterns if p.strip()]
    if exclude_file is not None:
        merged.extend(read_pattern_file(exclude_file))

    seen: set[str] = set()
    result: list[str] = []
    for pattern in merged:
        if pattern in seen:
            continue
        seen.add(pattern)
        result.append(pattern)
    return result
