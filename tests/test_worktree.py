from __future__ import annotations

from pathlib import Path

import pytest

from claude_vm.errors import (
    BranchNotFoundError,
    WorktreeError,
    WorktreeLockedError,
    WorktreeNotFoundError,
    WorktreePathTraversalError,
)
from claude_vm.worktree import (
    BranchStatus,
    TemplateContext,
    compute_worktree_path,
    create_worktree,
    detect_branch_status,
    list_merged_branches,
    list_worktrees,
    parse_porcelain,
    remove_worktree,
    validate_branch_name,
)
from claude_vm.worktree import filter as wt_filter
from claude_vm.worktree.validation import parse_git_version

from test_project import _git, init_repo, requires_git

PORCELAIN = '''worktree /repo
HEAD 1111111111111111111111111111111111111111
branch refs/heads/main

worktree /repo-worktrees/feat
HEAD 2222222222222222222222222222222222222222
branch refs/heads/feat
locked busy elsewhere

worktree /repo-worktrees/detached
HEAD 3333333333333333333333333333333333333333
detached

worktree /broken
'''


def test_parse_porcelain() -> None:
    entries = parse_porcelain(PORCELAIN)
    assert [e.path for e in entries] == [
        Path('/repo'), Path('/repo-worktrees/feat'), Path('/repo-worktrees/detached')
    ]
    assert entries[1].branch == 'feat' and entries[1].locked == 'busy elsewhere'
    assert entries[2].branch is None and entries[2].is_detached


def test_filters() -> None:
    entries = parse_porcelain(PORCELAIN)
    rest = list(wt_filter.skip_main(entries))
    assert [e.path.name for e in rest] == ['feat', 'detached']
    assert [e.branch for e in wt_filter.filter_merged(rest, ['feat', 'main'])] == ['feat']
    assert [e.branch for e in wt_filter.filter_locked(entries)] == ['feat']
    assert [e.branch for e in wt_filter.exclude_locked(entries)] == ['main', None]
    assert len(list(wt_filter.filter_detached(entries))) == 1


def test_validate_branch_name() -> None:
    assert validate_branch_name('feature/x') == 'feature/x'
    for bad in ['', '-x', 'a..b', 'HEAD', 'a\0b']:
        with pytest.raises(WorktreeError):
            validate_branch_name(bad)


def test_parse_git_version() -> None:
    assert parse_git_version('git version 2.5.0') == (2, 5, 0)
    assert parse_git_version('garbage') is None


def test_template_context_expand() -> None:
    ctx = TemplateContext(repo='app', branch='feat/a b', short_hash='0123456789abc', user='me', date='2024-01-02')
    assert ctx.short_hash == '01234567'
    assert ctx.expand('{repo}-{branch}-{user}-{date}-{short_hash}') == 'app-feat-a_b-me-2024-01-02-01234567'


def test_compute_worktree_path(tmp_path) -> None:
    repo = tmp_path / 'app'
    repo.mkdir()
    ctx = TemplateContext(repo='app', branch='feat/x')
    assert compute_worktree_path('{branch}', repo, ctx) == tmp_path / 'app-worktrees' / 'feat-x'
    custom = tmp_path / 'wts'
    custom.mkdir()
    assert compute_worktree_path('{repo}/{branch}', repo, ctx, location=str(custom)) == custom / 'app' / 'feat-x'
    with pytest.raises(WorktreePathTraversalError):
        compute_worktree_path('../{branch}', repo, ctx)
    with pytest.raises(WorktreePathTraversalError):
        compute_worktree_path('/etc/{branch}', repo, ctx)


@requires_git
def test_create_resume_and_remove(tmp_path) -> None:
    repo = init_repo(tmp_path / 'app')
    assert detect_branch_status('feat', cwd=repo)[0] is BranchStatus.DOES_NOT_EXIST

    created = create_worktree(repo, 'feat')
    assert not created.resumed
    assert created.path == tmp_path / 'app-worktrees' / 'feat'
    assert (created.path / 'README').exists()
    assert "Created worktree for branch 'feat'" in created.message('feat')

    resumed = create_worktree(repo, 'feat')
    assert resumed.resumed
    assert resumed.path.resolve() == created.path.resolve()

    assert [e.branch for e in list_worktrees(cwd=repo)] == ['main', 'feat']
    assert list_merged_branches('main', cwd=repo) == ['feat']
    with pytest.raises(BranchNotFoundError):
        list_merged_branches('nope', cwd=repo)

    removed = remove_worktree('feat', cwd=repo)
    assert removed.resolve() == created.path.resolve()
    assert not created.path.exists()
    # the branch is kept
    assert detect_branch_status('feat', cwd=repo)[0] is BranchStatus.EXISTS_NOT_CHECKED_OUT
    again = create_worktree(repo, 'feat')
    assert not again.resumed and again.path.exists()
    with pytest.raises(WorktreeNotFoundError):
        remove_worktree('ghost', cwd=repo)


@requires_git
def test_locked_worktree_needs_allow_locked(tmp_path) -> None:
    repo = init_repo(tmp_path / 'app')
    created = create_worktree(repo, 'held', base='main')
    _git(repo, 'worktree', 'lock', '--reason', 'in use', str(created.path))
    with pytest.raises(WorktreeLockedError, match='in use'):
        remove_worktree('held', cwd=repo)
    remove_worktree('held', cwd=repo, allow_locked=True)
    assert not created.path.exists()
