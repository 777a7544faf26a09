"""Best-effort cleanup of stale worktree metadata."""

from __future__ import annotations

from loguru import logger

from ..errors import GitError
from ..gitutil import run_git
from .state import WorktreeEntry, list_worktrees

log = logger


def auto_prune(cwd=None) -> None:
    """``git worktree prune``; failures only warn."""
    try:
        run_git(['worktree', 'prune'], 'prune worktrees', cwd=cwd)
    except GitError as ex:
        log.warning('git worktree prune failed: {}', ex)


def ensure_clean_state(cwd=None) -> list[WorktreeEntry]:
    auto_prune(cwd=cwd)
    return list_worktrees(cwd=cwd)
