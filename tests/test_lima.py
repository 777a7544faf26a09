from __future__ import annotations

import json

import pytest

from claude_vm.errors import CommandExitCodeError, LimaNotInstalledError, VMCommandError
from claude_vm.lima import HostVmFlavor, LimaCtl, mounts_set_arg
from claude_vm.util import CmdResult
from claude_vm.vm.mount import Mount
from claude_vm.vm.port_forward import PortForward


class _Recorder:
    def __init__(self, results=None):
        self.calls = []
        self.results = list(results or [])

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        if self.results:
            res = self.results.pop(0)
            if isinstance(res, Exception):
                raise res
            return res
        return CmdResult(0, '', '')


def test_mounts_set_arg() -> None:
    arg = mounts_set_arg([
        Mount.from_spec('/data:/mnt/data:ro'),
        Mount.from_spec('/code'),
    ])
    assert arg.startswith('.mounts=[')
    items = json.loads(arg[len('.mounts='):])
    assert items[0] == {'location': '/data', 'mountPoint': '/mnt/data', 'writable': False}
    assert items[1] == {'location': '/code', 'writable': True}


def test_create_builds_expected_args(monkeypatch) -> None:
    rec = _Recorder()
    monkeypatch.setattr('claude_vm.lima.run_cmd', rec)
    monkeypatch.setattr(
        'claude_vm.lima.HostVmFlavor.current',
        classmethod(lambda cls: HostVmFlavor('vz', 'virtiofs', True)),
    )
    pf = PortForward.unix_socket('/host/S.gpg', '/tmp/gpg.sock')
    LimaCtl().create('tpl', disk=30, memory=4, cpus=2, port_forwards=[pf])
    cmd = rec.calls[0]
    assert cmd[:4] == ['limactl', 'create', '--name=tpl', 'template:debian-13']
    assert '--vm-type=vz' in cmd
    assert '--mount-type=virtiofs' in cmd
    assert '--rosetta' in cmd
    assert '.mounts=[]' in cmd
    assert ['--disk=30', '--memory=4', '--cpus=2'] == [c for c in cmd if c.startswith(('--disk', '--memory', '--cpus'))]
    assert '.portForwards[0].hostSocket="/host/S.gpg"' in cmd


def test_clone_falls_back_to_copy(monkeypatch) -> None:
    from claude_vm.util import CmdError

    rec = _Recorder([CmdError(['limactl'], CmdResult(1, '', 'unknown command')), CmdResult(0, '', '')])
    monkeypatch.setattr('claude_vm.lima.run_cmd', rec)
    LimaCtl().clone('tpl', 'tpl-1')
    assert rec.calls[0][:4] == ['limactl', 'clone', 'tpl', 'tpl-1']
    assert rec.calls[1][:4] == ['limactl', 'copy', 'tpl', 'tpl-1']


def test_shell_exit_codes(monkeypatch) -> None:
    rec = _Recorder([CmdResult(3, '', ''), CmdResult(3, '', ''), CmdResult(-15, '', '')])
    monkeypatch.setattr('claude_vm.lima.run_cmd', rec)
    lima = LimaCtl()
    with pytest.raises(CommandExitCodeError) as info:
        lima.shell('vm', 'bash', ['-l'], workdir='/proj', forward_ssh_agent=True)
    assert info.value.code == 3
    assert rec.calls[0] == ['limactl', 'shell', '--workdir', '/proj', '-A', 'vm', 'bash', '-l']
    assert lima.shell('vm', 'true', check=False) == 3
    with pytest.raises(VMCommandError):
        lima.shell('vm', 'sleep', ['9'])


def test_list_parses_tab_separated(monkeypatch) -> None:
    out = 'claude-tpl_a_1\tStopped\nclaude-tpl_a_1-42\tRunning\nbroken-line\n'
    monkeypatch.setattr('claude_vm.lima.run_cmd', _Recorder([CmdResult(0, out, '')]))
    vms = LimaCtl().list()
    assert [(v.name, v.is_running) for v in vms] == [
        ('claude-tpl_a_1', False),
        ('claude-tpl_a_1-42', True),
    ]


def test_missing_limactl(monkeypatch) -> None:
    monkeypatch.setattr('claude_vm.lima.run_cmd', _Recorder([FileNotFoundError('limactl')]))
    with pytest.raises(LimaNotInstalledError):
        LimaCtl().start('vm')
    monkeypatch.setattr('claude_vm.lima.which', lambda name: None)
    with pytest.raises(LimaNotInstalledError):
        LimaCtl().require_installed()
