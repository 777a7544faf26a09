"""Expand the ``worktree.template`` setting into a target directory."""

from __future__ import annotations

import datetime as datetime_mod
import os
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import WorktreeError, WorktreePathTraversalError
from ..shell import expand_tilde


def sanitize_path_component(s: str) -> str:
    """
    Example:
        >>> from claude_vm.worktree.template import sanitize_path_component
        >>> sanitize_path_component('feature/my branch')
        'feature-my_branch'
    """
    out = []
    for c in s:
        if c in '/\\':
            out.append('-')
        elif c == ' ' or not c.isprintable():
            out.append('_')
        else:
            out.append(c)
    return ''.join(out)


def _today() -> str:
    return datetime_mod.date.today().strftime('%Y-%m-%d')


@dataclass
class TemplateContext:
    repo: str
    branch: str
    short_hash: str = ''
    user: str = field(default_factory=lambda: os.environ.get('USER') or 'user')
    date: str = field(default_factory=_today)

    def __post_init__(self):
        self.short_hash = self.short_hash[:8]

    def expand(self, template: str) -> str:
        out = template
        for key in ('repo', 'branch', 'user', 'date', 'short_hash'):
            out = out.replace('{' + key + '}', sanitize_path_component(getattr(self, key)))
        return out


def worktree_base_dir(repo_root: Path, location: str = '') -> Path:
    if location:
        return expand_tilde(location) or Path(location)
    repo_root = Path(repo_root)
    name = repo_root.name or 'repo'
    return repo_root.parent / f'{name}-worktrees'


def compute_worktree_path(
    template: str,
    repo_root: Path,
    context: TemplateContext,
    location: str = '',
) -> Path:
    """
    Resolve the worktree directory for ``context`` under the base dir.

    Raises:
        WorktreePathTraversalError: the expanded template contains ``..``,
            is absolute, or (when the base exists) resolves outside it.
    """
    base = worktree_base_dir(repo_root, location)
    expanded = context.expand(template)
    final = base / expanded
    if '..' in expanded or expanded.startswith('/'):
        raise WorktreePathTraversalError(str(final))
    if base.exists():
        try:
            canonical_base = base.resolve(strict=True)
            check = final.resolve(strict=True) if final.exists() else canonical_base / expanded
        except OSError as ex:
            raise WorktreeError(f'Failed to canonicalize worktree path: {ex}')
        if not check.is_relative_to(canonical_base):
            raise WorktreePathTraversalError(str(final))
    return final
