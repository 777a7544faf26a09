from __future__ import annotations

import sys

import scriptconfig as scfg

from ..errors import ClaudeVMError, WorktreeError
from ..gitutil import get_current_branch
from ..project import Project
from ..worktree import (
    check_git_version,
    create_worktree,
    check_submodules_and_warn,
    ensure_clean_state,
    list_merged_branches,
    remove_worktree,
)
from ..worktree import filter as wt_filter
from ..worktree.state import format_activity, get_last_activity
from ._common import _BaseCommand, _confirm, _load_project_config


def _merge_base(base: str, cwd) -> str:
    if base:
        return base
    branch = get_current_branch(cwd=cwd)
    print(f'Using current branch: {branch}')
    return branch


class WorktreeCreateCLI(_BaseCommand):
    """Create (or resume) a worktree for BRANCH, branching from BASE when new."""

    branch = scfg.Value(None, position=1, help='Branch to check out.')
    base = scfg.Value(None, position=2, help='Start point for a new branch.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        if not args.branch:
            raise WorktreeError('A branch name is required: claude-vm worktree create BRANCH [BASE]')
        project, cfg = _load_project_config()
        check_git_version(cwd=project.root)
        check_submodules_and_warn(project.root)
        result = create_worktree(
            project.root,
            args.branch,
            args.base or None,
            template=cfg.worktree.template,
            location=cfg.worktree.location,
        )
        print(result.message(args.branch))
        return 0


class WorktreeListCLI(_BaseCommand):
    """List worktrees with their branch and last activity."""

    merged = scfg.Value(False, isflag=True, help='Only worktrees merged into --merged_base (default: current branch).')
    merged_base = scfg.Value('', help='Base branch for --merged.')
    locked = scfg.Value(False, isflag=True, help='Only locked worktrees.')
    detached = scfg.Value(False, isflag=True, help='Only worktrees with a detached HEAD.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        project = Project.detect()
        check_git_version(cwd=project.root)
        entries = ensure_clean_state(cwd=project.root)
        if args.merged:
            base = _merge_base(args.merged_base, project.root)
            merged = list_merged_branches(base, cwd=project.root)
            entries = list(wt_filter.filter_merged(wt_filter.skip_main(entries), merged))
        if args.locked:
            entries = list(wt_filter.filter_locked(entries))
        if args.detached:
            entries = list(wt_filter.filter_detached(entries))
        if not entries:
            print('No worktrees found')
            return 0
        print(f'{"BRANCH":<20} {"PATH":<50} {"LAST ACTIVITY":<20}')
        for entry in entries:
            if entry.branch is not None:
                label = entry.branch + (' (locked)' if entry.is_locked else '')
            else:
                label = f'(detached: {entry.head[:7]})'
            activity = format_activity(get_last_activity(entry.path))
            print(f'{label:<20} {str(entry.path):<50} {activity:<20}')
        return 0


class WorktreeRemoveCLI(_BaseCommand):
    """Remove worktree directories; the branches themselves are kept."""

    branches = scfg.Value([], position=1, nargs='*', help='Branches whose worktrees to remove.')
    merged = scfg.Value(False, isflag=True, help='Remove every worktree merged into --merged_base (default: current branch).')
    merged_base = scfg.Value('', help='Base branch for --merged.')
    locked = scfg.Value(False, isflag=True, help='With --merged, include locked worktrees.')
    yes = scfg.Value(False, isflag=True, short_alias=['y'], help='Do not ask for confirmation.')
    dry_run = scfg.Value(False, isflag=True, help='Only show what would be removed.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        branches = [b for b in (args.branches or []) if b]
        if args.locked and not args.merged:
            raise WorktreeError('--locked flag requires --merged flag')
        if branches and args.merged:
            raise WorktreeError('Cannot use both explicit branches and --merged flag')
        if not branches and not args.merged:
            raise WorktreeError('Must specify either branch names or --merged flag')

        project = Project.detect()
        check_git_version(cwd=project.root)
        entries = ensure_clean_state(cwd=project.root)

        if branches:
            by_branch = {e.branch: e for e in entries if e.branch is not None}
            missing = [b for b in branches if b not in by_branch]
            targets = [(b, by_branch[b].path) for b in branches if b in by_branch]
            if missing:
                print('Warning: The following branches have no worktree:', file=sys.stderr)
                for b in missing:
                    print(f'  {b}', file=sys.stderr)
                if not targets:
                    raise WorktreeError('No valid worktrees found to remove')
                print(file=sys.stderr)
            base = None
        else:
            base = _merge_base(args.merged_base, project.root)
            merged = list_merged_branches(base, cwd=project.root)
            found = wt_filter.filter_merged(wt_filter.skip_main(entries), merged)
            if not args.locked:
                found = wt_filter.exclude_locked(found)
            targets = [(e.branch, e.path) for e in found]

        if not targets:
            print('No merged worktrees to remove.' if base else 'No worktrees found to remove.')
            return 0

        if base is not None:
            print(f"The following worktrees have been merged into '{base}':")
        else:
            print('The following worktrees will be removed:')
        for branch, path in targets:
            print(f'  {branch} -> {path}')
        print()
        noun = 'directory' if len(targets) == 1 else 'directories'
        print(f'This will remove the worktree {noun}. Branches will be preserved.')
        print()
        if args.dry_run:
            print('[Dry run - no changes made]')
            return 0
        if not _confirm('Remove worktrees? [y/N] ', yes=args.yes):
            print('Aborted.')
            return 0

        failures = 0
        for branch, _ in targets:
            try:
                path = remove_worktree(branch, cwd=project.root, allow_locked=args.locked)
            except ClaudeVMError as ex:
                failures += 1
                print(f'  ✗ {branch}: {ex}', file=sys.stderr)
                continue
            print(f'  ✓ Removed {branch} ({path})')
        if failures:
            raise WorktreeError(f'{failures} worktree(s) could not be removed')
        return 0


class WorktreeModalCLI(scfg.ModalCLI):
    """Manage git worktrees for parallel sessions."""

    create = WorktreeCreateCLI
    list = WorktreeListCLI
    remove = WorktreeRemoveCLI
