from __future__ import annotations

from pathlib import Path, PurePosixPath

import pytest

from claude_vm.errors import InvalidConfigError
from claude_vm.vm.mount import (
    Mount,
    MountPlan,
    compute_mounts,
    encode_project_path,
    vm_home,
)


def test_mount_from_spec_forms(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv('HOME', str(tmp_path))
    m = Mount.from_spec('/data')
    assert (m.location, m.mount_point, m.writable) == (Path('/data'), None, True)
    assert m.guest_path == '/data'
    m = Mount.from_spec('/data:ro')
    assert not m.writable and m.mount_point is None
    m = Mount.from_spec('/data:/guest:rw')
    assert m.writable and m.mount_point == PurePosixPath('/guest')
    m = Mount.from_spec('~/notes:/notes')
    assert m.location == tmp_path / 'notes'
    assert m.guest_path == '/notes'


@pytest.mark.parametrize('spec', ['', 'relative/path', '/a:/b:/c:ro', ':/guest', '/a:relative'])
def test_mount_from_spec_rejects(spec) -> None:
    with pytest.raises(InvalidConfigError):
        Mount.from_spec(spec)


def test_encode_project_path() -> None:
    assert encode_project_path('/Users/me/my.app') == '-Users-me-my-app'


def test_vm_home(monkeypatch) -> None:
    monkeypatch.setenv('USER', 'alice')
    assert vm_home() == PurePosixPath('/home/alice.linux')
    assert vm_home('bob') == PurePosixPath('/home/bob.linux')


def test_mount_plan_deduplicates_and_detects_conflicts() -> None:
    plan = MountPlan()
    plan.add(Mount(Path('/a'), writable=True))
    plan.add(Mount(Path('/a'), writable=False))
    assert len(plan.mounts) == 1
    plan.add(Mount(Path('/b'), PurePosixPath('/guest')))
    with pytest.raises(InvalidConfigError, match='Mount conflict'):
        plan.add(Mount(Path('/c'), PurePosixPath('/guest')))
    with pytest.raises(InvalidConfigError):
        plan.add(Mount(Path('/d'), PurePosixPath('/a')))


def test_compute_mounts_project_conversations_and_custom(tmp_path, monkeypatch) -> None:
    home = tmp_path / 'home'
    home.mkdir()
    proj = tmp_path / 'proj'
    proj.mkdir()
    monkeypatch.setenv('HOME', str(home))
    monkeypatch.setenv('USER', 'alice')
    custom = [Mount.from_spec(f'{tmp_path}/data:/data:ro')]
    mounts = compute_mounts(mount_conversations=True, custom_mounts=custom, cwd=proj)
    assert mounts[0] == Mount(proj.resolve(), writable=True)
    conv = mounts[1]
    assert conv.location.parent == home / '.claude' / 'projects'
    assert conv.location.is_dir()
    assert conv.guest_path.startswith('/home/alice.linux/.claude/projects/')
    assert mounts[2] == custom[0]

    without = compute_mounts(mount_conversations=False, cwd=proj)
    assert without == [Mount(proj.resolve(), writable=True)]
