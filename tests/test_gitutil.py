from __future__ import annotations

import pytest

from claude_vm import gitutil
from claude_vm.errors import GitError, GitTimeoutError


@pytest.fixture
def slow_git(tmp_path, monkeypatch):
    """A ``git`` on PATH that hangs, so the timeout has to fire."""
    bindir = tmp_path / 'bin'
    bindir.mkdir()
    fake = bindir / 'git'
    fake.write_text('#!/bin/sh\nexec sleep 10\n')
    fake.chmod(0o755)
    monkeypatch.setenv('PATH', f'{bindir}:/usr/bin:/bin')
    return fake


def test_default_git_timeout() -> None:
    assert gitutil.GIT_TIMEOUT == 30.0


def test_run_git_timeout_names_subcommand(slow_git) -> None:
    with pytest.raises(GitTimeoutError) as info:
        gitutil.run_git(['worktree', 'list', '--porcelain'], 'list worktrees', timeout=0.2)
    assert 'git worktree timed out after 0.2s' in str(info.value)
    assert 'list worktrees' in str(info.value)
    assert isinstance(info.value, GitError)


def test_try_git_timeout(slow_git) -> None:
    with pytest.raises(GitTimeoutError, match='git rev-parse timed out'):
        gitutil.try_git(['rev-parse', '--show-toplevel'], timeout=0.2)

