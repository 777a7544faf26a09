from __future__ import annotations

import sys
from pathlib import Path

import scriptconfig as scfg
from loguru import logger

from .. import config as config_mod
from ..config import Config
from ..errors import TemplateNotFoundError, WorktreeError
from ..lima import LimaCtl
from ..project import Project
from ..vm import template
from ..worktree import (
    check_git_version,
    check_submodules_and_warn,
    create_worktree,
)

log = logger


class _BaseCommand(scfg.DataConfig):
    """Base options shared by all commands."""

    verbose = scfg.Value(
        0,
        short_alias=['v'],
        isflag='counter',
        help='Increase verbosity (-v, -vv).',
    )


def _get_lima() -> LimaCtl:
    return LimaCtl()


def _load_project_config(
    overrides=None,
    *,
    cwd: str | Path | None = None,
) -> tuple[Project, Config]:
    """Detect the project at ``cwd`` and load its layered config plus CLI flags."""
    project = Project.detect(cwd)
    cfg = config_mod.load(project.root, project.main_repo_root)
    if overrides is not None:
        cfg.with_cli_overrides(overrides)
    cfg.validate()
    return project, cfg


def _confirm(prompt: str, *, yes: bool = False, default: bool = False) -> bool:
    """Ask a yes/no question; ``--yes`` answers it and a non-tty stdin refuses."""
    if yes:
        return True
    if not sys.stdin.isatty():
        raise RuntimeError(
            'Confirmation required, but stdin is not interactive. '
            'Re-run with --yes.'
        )
    answer = input(prompt).strip().lower()
    if not answer:
        return default
    return answer in {'y', 'yes'}


def _choose(options: list[str], *, reason: str) -> str:
    if len(options) == 1:
        return options[0]
    if not sys.stdin.isatty():
        raise RuntimeError(
            f'Selection is ambiguous ({reason}). Stop the other sessions or '
            'run this command from an interactive terminal.'
        )
    print(f'Multiple {reason}:')
    for idx, item in enumerate(options, start=1):
        print(f'  {idx}. {item}')
    while True:
        raw = input(f'Select (1-{len(options)}): ').strip()
        if not raw.isdigit():
            print('Please enter a number.')
            continue
        choice = int(raw)
        if 1 <= choice <= len(options):
            return options[choice - 1]
        print(f'Please enter a number between 1 and {len(options)}.')


def _ensure_template(project: Project, cfg: Config, *, lima) -> None:
    """Build the template when it is missing, after asking unless auto-setup is on."""
    if template.exists(lima, project.template_name):
        return
    if cfg.auto_setup:
        print('Template not found. Auto-creating template...')
    else:
        print(f'No template found for project: {project.root}')
        print(f'Template name: {project.template_name}')
        print()
        if not sys.stdin.isatty():
            raise TemplateNotFoundError(project.template_name)
        if not _confirm('Would you like to create it now? [Y/n]: ', default=True):
            raise TemplateNotFoundError(project.template_name)
        print()
    # A template built on demand always carries the agent.
    cfg.install_agent = True
    template.build(project, cfg, lima=lima)


def _resolve_worktree(spec: str, cfg: Config, project: Project) -> Path:
    """Create or resume the worktree named by ``--worktree BRANCH[,BASE]``."""
    parts = [p.strip() for p in spec.split(',')]
    if not parts or not parts[0] or len(parts) > 2:
        raise WorktreeError(f'Invalid worktree arguments: {spec!r}')
    branch = parts[0]
    base = parts[1] if len(parts) == 2 and parts[1] else None
    check_git_version(cwd=project.root)
    check_submodules_and_warn(project.root)
    result = create_worktree(
        project.root,
        branch,
        base,
        template=cfg.worktree.template,
        location=cfg.worktree.location,
    )
    print(result.message(branch), file=sys.stderr)
    return result.path
