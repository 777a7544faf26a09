"""Map the current working directory to a project and its template name."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from . import __version__
from .errors import ProjectDetectionError
from .gitutil import get_git_common_dir, get_git_root

log = logger

TEMPLATE_PREFIX = 'claude-tpl_'


@dataclass(frozen=True)
class Project:
    root: Path
    main_repo_root: Path
    template_name: str

    @property
    def is_worktree(self) -> bool:
        return self.root != self.main_repo_root

    @property
    def name(self) -> str:
        return self.main_repo_root.name or 'project'

    @classmethod
    def detect(cls, cwd: Optional[str | Path] = None) -> 'Project':
        root = _detect_root(cwd)
        main_repo_root = _main_repo_root(root) or root
        log.debug('Detected project root={} main_repo_root={}', root, main_repo_root)
        return cls(
            root=root,
            main_repo_root=main_repo_root,
            template_name=template_name(main_repo_root),
        )


def _detect_root(cwd: Optional[str | Path]) -> Path:
    top = get_git_root(cwd)
    if top is not None:
        try:
            return top.resolve(strict=True)
        except OSError:
            pass
    try:
        base = Path(cwd) if cwd is not None else Path.cwd()
        return base.resolve()
    except OSError as ex:
        raise ProjectDetectionError(f'Failed to get current directory: {ex}')


def _main_repo_root(root: Path) -> Optional[Path]:
    """
    Find the main checkout for a linked worktree.

    A linked worktree has a ``.git`` *file* whose first line is
    ``gitdir: <main>/.git/worktrees/<name>``. The main repository root is
    the parent of that ``.git`` directory. Returns None when ``root`` is
    not a linked worktree.
    """
    dotgit = root / '.git'
    if not dotgit.is_file():
        return None
    try:
        first = dotgit.read_text(encoding='utf-8').splitlines()[0].strip()
    except (OSError, IndexError):
        return None
    if not first.startswith('gitdir:'):
        return None
    gitdir = Path(first[len('gitdir:'):].strip())
    if not gitdir.is_absolute():
        gitdir = root / gitdir
    if gitdir.parent.name == 'worktrees':
        return gitdir.parent.parent.parent.resolve()
    # Unusual layouts: ask git for the shared directory.
    common = get_git_common_dir(root)
    if common is not None and common.name == '.git':
        return common.parent
    return None


def sanitize_name(name: str) -> str:
    slug = re.sub(r'[^a-z0-9]+', '-', name.lower()).strip('-')
    return slug or 'project'


def template_name(main_repo_root: str | Path) -> str:
    """
    Deterministic template name for a repository root.

    Example:
        >>> from claude_vm.project import template_name
        >>> name = template_name('/home/user/My Project')
        >>> name.startswith('claude-tpl_my-project_')
        True
    """
    root = Path(main_repo_root)
    digest = hashlib.md5(str(root).encode('utf-8')).hexdigest()[:8]
    suffix = '-dev' if 'dev' in __version__ else ''
    return f'{TEMPLATE_PREFIX}{sanitize_name(root.name)}_{digest}{suffix}'
