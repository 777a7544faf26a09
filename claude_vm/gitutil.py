"""Thin wrappers around git queries, each bounded by a timeout."""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

from .errors import GitError, GitTimeoutError
from .util import CmdError, CmdTimeoutError, run_cmd

log = logger

GIT_TIMEOUT = 30.0


def run_git(
    args: Sequence[str],
    context: str,
    *,
    cwd: Optional[str | Path] = None,
    timeout: float = GIT_TIMEOUT,
) -> str:
    """Run ``git <args>`` and return stripped stdout."""
    try:
        res = run_cmd(['git', *args], check=True, cwd=cwd, timeout=timeout)
    except CmdTimeoutError:
        raise GitTimeoutError(
            f'Failed to {context}: git {args[0]} timed out after {timeout:g}s'
        )
    except CmdError as ex:
        raise GitError(
            f'Failed to {context}: {ex.result.stderr.strip() or ex.result.code}'
        )
    except FileNotFoundError:
        raise GitError(f'Failed to {context}: git is not installed')
    return res.stdout.strip()


def try_git(
    args: Sequence[str],
    *,
    cwd: Optional[str | Path] = None,
    timeout: float = GIT_TIMEOUT,
) -> Optional[str]:
    """Like :func:`run_git` but returns None when git exits non-zero."""
    try:
        res = run_cmd(['git', *args], check=False, cwd=cwd, timeout=timeout)
    except CmdTimeoutError:
        raise GitTimeoutError(f'git {args[0]} timed out after {timeout:g}s')
    except FileNotFoundError:
        return None
    if res.code != 0:
        return None
    return res.stdout.strip()


def get_git_root(cwd: Optional[str | Path] = None) -> Optional[Path]:
    out = try_git(['rev-parse', '--show-toplevel'], cwd=cwd)
    if not out:
        return None
    return Path(out)


def _resolve_git_path(out: Optional[str], cwd: Optional[str | Path]) -> Optional[Path]:
    if not out:
        return None
    path = Path(out)
    if not path.is_absolute():
        path = Path(cwd or Path.cwd()) / path
    return path.resolve()


def get_git_common_dir(cwd: Optional[str | Path] = None) -> Optional[Path]:
    return _resolve_git_path(
        try_git(['rev-parse', '--git-common-dir'], cwd=cwd), cwd
    )


def is_worktree(cwd: Optional[str | Path] = None) -> bool:
    git_dir = _resolve_git_path(try_git(['rev-parse', '--git-dir'], cwd=cwd), cwd)
    common = get_git_common_dir(cwd)
    if git_dir is None or common is None:
        return False
    return git_dir != common


def get_current_branch(cwd: Optional[str | Path] = None) -> str:
    return run_git(
        ['symbolic-ref', '--short', 'HEAD'], 'get current branch', cwd=cwd
    )


def get_short_hash(cwd: Optional[str | Path] = None) -> str:
    return run_git(['rev-parse', '--short', 'HEAD'], 'get short hash', cwd=cwd)
