"""Git worktree exports: state queries, path templating and create/remove."""

from __future__ import annotations

from .operations import (
    BranchStatus,
    CreateResult,
    create_worktree,
    detect_branch_status,
    list_merged_branches,
    remove_worktree,
)
from .recovery import auto_prune, ensure_clean_state
from .state import WorktreeEntry, list_worktrees, parse_porcelain
from .template import TemplateContext, compute_worktree_path, sanitize_path_component
from .validation import check_git_version, check_submodules_and_warn, validate_branch_name

__all__ = [
    'BranchStatus',
    'CreateResult',
    'TemplateContext',
    'WorktreeEntry',
    'auto_prune',
    'check_git_version',
    'check_submodules_and_warn',
    'compute_worktree_path',
    'create_worktree',
    'detect_branch_status',
    'ensure_clean_state',
    'list_merged_branches',
    'list_worktrees',
    'parse_porcelain',
    'remove_worktree',
    'sanitize_path_component',
    'validate_branch_name',
]
