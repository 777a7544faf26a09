from __future__ import annotations

import re
import sys
from pathlib import Path

from ..errors import GitVersionTooOldError, WorktreeError
from ..gitutil import run_git

MIN_GIT_VERSION = (2, 5, 0)
RESERVED_REFS = {'HEAD', 'FETCH_HEAD', 'ORIG_HEAD', 'MERGE_HEAD'}

_submodule_warning_shown = False


def parse_git_version(output: str):
    """
    Example:
        >>> from claude_vm.worktree.validation import parse_git_version
        >>> parse_git_version('git version 2.39.3 (Apple Git-145)')
        (2, 39, 3)
        >>> parse_git_version('git version 2.45') is None
        True
    """
    parts = output.split()
    if len(parts) < 3:
        return None
    match = re.match(r'^(\d+)\.(\d+)\.(\d+)', parts[2])
    if match is None:
        return None
    return tuple(int(g) for g in match.groups())


def check_git_version(cwd=None) -> None:
    out = run_git(['--version'], 'check git version', cwd=cwd)
    version = parse_git_version(out)
    if version is None:
        raise WorktreeError('Could not parse git version')
    if version < MIN_GIT_VERSION:
        raise GitVersionTooOldError('.'.join(map(str, version)))


def check_submodules_and_warn(repo_root: Path) -> bool:
    """Warn once per process when the repository has submodules."""
    global _submodule_warning_shown
    has = (Path(repo_root) / '.gitmodules').exists()
    if has and not _submodule_warning_shown:
        print(
            'Warning: This repository contains submodules. '
            'Git worktree support for submodules is experimental.',
            file=sys.stderr,
        )
        print('See: https://git-scm.com/docs/git-worktree#_bugs', file=sys.stderr)
        _submodule_warning_shown = True
    return has


def validate_branch_name(branch: str) -> str:
    if not branch:
        raise WorktreeError('Branch name cannot be empty')
    if branch.startswith('-'):
        raise WorktreeError('Branch name cannot start with a dash')
    if '\0' in branch:
        raise WorktreeError('Branch name cannot contain null bytes')
    if '..' in branch:
        raise WorktreeError("Branch name cannot contain '..'")
    if branch in RESERVED_REFS:
        raise WorktreeError(f"'{branch}' is a reserved git ref name")
    return branch
