"""Shared fixtures: a recording stand-in for ``LimaCtl`` and an isolated HOME."""

from __future__ import annotations

from pathlib import Path

import pytest

from claude_vm.errors import CommandExitCodeError, VMCommandError
from claude_vm.lima import VmInfo
from claude_vm.project import Project, template_name


class FakeLima:
    """Records every call and keeps a tiny in-memory VM table."""

    def __init__(self, vms=None):
        self.vms: dict[str, str] = dict(vms or {})
        self.calls: list[tuple] = []
        self.copied: dict[tuple[str, str], str] = {}
        self.shell_codes: dict[str, int] = {}
        self.outputs: dict[str, str] = {}
        self.fail_on: set[str] = set()
        self.workdirs: list = []

    def _record(self, *call):
        self.calls.append(call)
        if call[0] in self.fail_on:
            raise VMCommandError(f'{call[0]} failed', code=1)

    def names(self, verb: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == verb]

    def is_installed(self) -> bool:
        return True

    def require_installed(self) -> None:
        pass

    def create(self, name, template='debian-13', disk=20, memory=8, cpus=4,
               port_forwards=(), setup_mounts=(), verbose=False):
        self._record('create', name, disk, memory, cpus, list(port_forwards), list(setup_mounts))
        self.vms[name] = 'Stopped'

    def start(self, name, verbose=False):
        self._record('start', name)
        self.vms[name] = 'Running'

    def stop(self, name, verbose=False):
        self._record('stop', name)
        if name in self.vms:
            self.vms[name] = 'Stopped'

    def delete(self, name, force=False, verbose=False):
        self._record('delete', name)
        self.vms.pop(name, None)

    def clone(self, source, dest, mounts=(), verbose=False):
        self._record('clone', source, dest, list(mounts))
        self.vms[dest] = 'Stopped'

    def shell(self, name, cmd, args=(), *, workdir=None, forward_ssh_agent=False, check=True):
        args = list(args)
        self.workdirs.append(workdir)
        self._record('shell', name, cmd, args)
        key = ' '.join([cmd, *args])
        code = 0
        for pattern, value in self.shell_codes.items():
            if pattern in key:
                code = value
        if check and code != 0:
            raise CommandExitCodeError(code)
        return code

    def shell_output(self, name, cmd, args=()):
        args = list(args)
        self._record('shell_output', name, cmd, args)
        key = ' '.join([cmd, *args])
        for pattern, value in self.outputs.items():
            if pattern in key:
                if isinstance(value, Exception):
                    raise value
                return value
        raise VMCommandError(f'no output for {key}', code=1)

    def copy(self, src, name, dest):
        self._record('copy', name, dest)
        self.copied[(name, dest)] = Path(src).read_text(encoding='utf-8')

    def list(self):
        return [VmInfo(name, status) for name, status in self.vms.items()]

    def vm_exists(self, name):
        return name in self.vms


@pytest.fixture
def fake_lima() -> FakeLima:
    return FakeLima()


@pytest.fixture
def home(tmp_path: Path, monkeypatch) -> Path:
    """A throwaway HOME so no test reads or writes the real one."""
    home = tmp_path / 'home'
    home.mkdir()
    monkeypatch.setenv('HOME', str(home))
    for key in ('CLAUDE_VM_DISK', 'CLAUDE_VM_MEMORY', 'NETWORK_ISOLATION_ENABLED',
                'POLICY_MODE', 'ALLOWED_DOMAINS', 'BLOCKED_DOMAINS', 'BYPASS_DOMAINS'):
        monkeypatch.delenv(key, raising=False)
    return home


@pytest.fixture
def project(tmp_path: Path) -> Project:
    root = tmp_path / 'proj'
    root.mkdir()
    return Project(root=root, main_repo_root=root, template_name=template_name(root))
