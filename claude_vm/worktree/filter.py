"""Composable filters over worktree entries; each takes and returns an iterable."""

from __future__ import annotations

from typing import Iterable, Iterator

from .state import WorktreeEntry


def skip_main(entries: Iterable[WorktreeEntry]) -> Iterator[WorktreeEntry]:
    """The first porcelain entry is always the main working tree."""
    it = iter(entries)
    next(it, None)
    yield from it


def filter_merged(entries: Iterable[WorktreeEntry], merged_branches: Iterable[str]) -> Iterator[WorktreeEntry]:
    merged = set(merged_branches)
    return (e for e in entries if e.branch is not None and e.branch in merged)


def filter_locked(entries: Iterable[WorktreeEntry]) -> Iterator[WorktreeEntry]:
    return (e for e in entries if e.is_locked)


def exclude_locked(entries: Iterable[WorktreeEntry]) -> Iterator[WorktreeEntry]:
    return (e for e in entries if not e.is_locked)


def filter_detached(entries: Iterable[WorktreeEntry]) -> Iterator[WorktreeEntry]:
    return (e for e in entries if e.is_detached)
