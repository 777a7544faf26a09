"""
Create and remove worktrees.

Every git call goes through :func:`claude_vm.gitutil.run_git`, so each is
bounded by the shared timeout and failures surface as ``GitError``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from ..errors import BranchNotFoundError, WorktreeLockedError, WorktreeNotFoundError
from ..gitutil import get_short_hash, run_git, try_git
from .recovery import ensure_clean_state
from .template import TemplateContext, compute_worktree_path
from .validation import validate_branch_name

log = logger


class BranchStatus(enum.Enum):
    IN_WORKTREE = 'in_worktree'
    EXISTS_NOT_CHECKED_OUT = 'exists_not_checked_out'
    DOES_NOT_EXIST = 'does_not_exist'


@dataclass(frozen=True)
class CreateResult:
    path: Path
    resumed: bool

    def message(self, branch: str) -> str:
        if self.resumed:
            return f"Resuming worktree for branch '{branch}' at {self.path}"
        return f"Created worktree for branch '{branch}' at {self.path}"


def branch_exists(branch: str, cwd=None) -> bool:
    return try_git(['show-ref', '--verify', '--quiet', f'refs/heads/{branch}'], cwd=cwd) is not None


def detect_branch_status(branch: str, cwd=None) -> tuple[BranchStatus, Optional[Path]]:
    for entry in ensure_clean_state(cwd=cwd):
        if entry.branch == branch:
            return BranchStatus.IN_WORKTREE, entry.path
    if branch_exists(branch, cwd=cwd):
        return BranchStatus.EXISTS_NOT_CHECKED_OUT, None
    return BranchStatus.DOES_NOT_EXIST, None


def create_worktree(
    repo_root: Path,
    branch: str,
    base: Optional[str] = None,
    *,
    template: str = '{branch}',
    location: str = '',
) -> CreateResult:
    """Resume the worktree of ``branch`` or create one (and the branch) from ``base``."""
    validate_branch_name(branch)
    repo_root = Path(repo_root)
    status, existing = detect_branch_status(branch, cwd=repo_root)
    if status is BranchStatus.IN_WORKTREE:
        return CreateResult(existing, resumed=True)

    context = TemplateContext(
        repo=repo_root.name or 'repo',
        branch=branch,
        short_hash=get_short_hash(cwd=repo_root),
    )
    path = compute_worktree_path(template, repo_root, context, location=location)
    if status is BranchStatus.EXISTS_NOT_CHECKED_OUT:
        args = ['worktree', 'add', str(path), branch]
    else:
        args = ['worktree', 'add', '-b', branch, str(path)]
        if base:
            args.append(base)
    run_git(args, 'create worktree', cwd=repo_root)
    log.info('git worktree add {} ({})', path, branch)
    return CreateResult(path, resumed=False)


def remove_worktree(branch: str, cwd=None, *, allow_locked: bool = False) -> Path:
    """Remove the worktree checked out on ``branch``; the branch itself is kept."""
    validate_branch_name(branch)
    for entry in ensure_clean_state(cwd=cwd):
        if entry.branch == branch:
            break
    else:
        raise WorktreeNotFoundError(branch)
    args = ['worktree', 'remove']
    if entry.is_locked:
        if not allow_locked:
            raise WorktreeLockedError(entry.locked or 'no reason given', str(entry.path))
        # Locked worktrees need the force flag twice.
        args += ['--force', '--force']
    args.append(str(entry.path))
    run_git(args, 'remove worktree', cwd=cwd)
    return entry.path


def list_merged_branches(base: str, cwd=None) -> list[str]:
    """Local branches merged into ``base`` (local or remote ref), excluding ``base``."""
    found = any(
        try_git(['show-ref', '--verify', ref], cwd=cwd) is not None
        for ref in (f'refs/heads/{base}', f'refs/remotes/{base}')
    )
    if not found:
        raise BranchNotFoundError(base)
    out = run_git(
        ['branch', '--merged', base, '--format=%(refname:short)'],
        'list merged branches',
        cwd=cwd,
    )
    return [line.strip() for line in out.splitlines() if line.strip() and line.strip() != base]


