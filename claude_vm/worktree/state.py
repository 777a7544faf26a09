"""Parse ``git worktree list --porcelain``."""

from __future__ import annotations

import datetime as datetime_mod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..gitutil import run_git


@dataclass(frozen=True)
class WorktreeEntry:
    path: Path
    head: str
    branch: Optional[str] = None
    is_bare: bool = False
    is_detached: bool = False
    locked: Optional[str] = None

    @property
    def is_locked(self) -> bool:
        return self.locked is not None


def parse_porcelain(output: str) -> list[WorktreeEntry]:
    """
    Blocks are separated by blank lines. ``branch`` loses its
    ``refs/heads/`` prefix and a bare ``locked`` line means an empty
    reason. Blocks without both ``worktree`` and ``HEAD`` are dropped.

    Example:
        >>> from claude_vm.worktree.state import parse_porcelain
        >>> text = 'worktree /r\\nHEAD abc\\nbranch refs/heads/feat/x\\nlocked\\n'
        >>> entry, = parse_porcelain(text)
        >>> entry.branch, entry.locked
        ('feat/x', '')
    """
    entries = []
    for block in output.split('\n\n'):
        if not block.strip():
            continue
        fields = {'is_bare': False, 'is_detached': False}
        path = head = None
        for line in block.splitlines():
            line = line.strip()
            if line.startswith('worktree '):
                path = Path(line[len('worktree '):])
            elif line.startswith('HEAD '):
                head = line[len('HEAD '):]
            elif line.startswith('branch '):
                ref = line[len('branch '):]
                fields['branch'] = ref.removeprefix('refs/heads/')
            elif line == 'bare':
                fields['is_bare'] = True
            elif line == 'detached':
                fields['is_detached'] = True
            elif line.startswith('locked '):
                fields['locked'] = line[len('locked '):]
            elif line == 'locked':
                fields['locked'] = ''
        if path is not None and head is not None:
            entries.append(WorktreeEntry(path=path, head=head, **fields))
    return entries


def list_worktrees(cwd=None) -> list[WorktreeEntry]:
    return parse_porcelain(run_git(['worktree', 'list', '--porcelain'], 'list worktrees', cwd=cwd) + '\n')


def get_last_activity(path: Path) -> Optional[datetime_mod.datetime]:
    try:
        return datetime_mod.datetime.fromtimestamp(Path(path).stat().st_mtime)
    except OSError:
        return None


def format_activity(when: Optional[datetime_mod.datetime]) -> str:
    if when is None:
        return 'unknown'
    return when.strftime('%Y-%m-%d %H:%M')
