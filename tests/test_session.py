from __future__ import annotations

import pytest

from claude_vm.config import from_dict
from claude_vm.errors import CommandExitCodeError
from claude_vm.phases import BASE_CONTEXT_PATH
from claude_vm.vm.session import VmSession, run_in_session, session_name, session_workdir


def _cfg(**raw):
    cfg = from_dict(raw)
    cfg.mount_conversations = False
    return cfg


def test_session_name(project) -> None:
    assert session_name(project, pid=123) == f'{project.template_name}-123'


def test_close_is_idempotent(fake_lima) -> None:
    fake_lima.vms['vm-1'] = 'Running'
    session = VmSession('vm-1', fake_lima)
    session.close()
    session.close()
    assert [c[0] for c in fake_lima.calls] == ['stop', 'delete']
    assert session.cleaned_up


def test_close_continues_after_stop_failure(fake_lima) -> None:
    fake_lima.fail_on.add('stop')
    VmSession('vm-1', fake_lima).close()
    assert fake_lima.names('delete') == [('delete', 'vm-1')]


def test_failed_start_removes_clone(fake_lima, project, home) -> None:
    fake_lima.fail_on.add('start')
    with pytest.raises(Exception):
        VmSession.create(project, lima=fake_lima, mount_conversations=False)
    assert fake_lima.vms == {}


def test_run_in_session_lifecycle(fake_lima, project, home) -> None:
    fake_lima.vms[project.template_name] = 'Stopped'
    seen = []
    cfg = _cfg(phase={'teardown': [{'name': 'bye', 'script': 'echo bye'}]})
    code = run_in_session(
        project, cfg, 'claude', ['--resume'],
        lima=fake_lima,
        env_vars={'TOKEN': 'x'},
        before_exec=lambda s: seen.append(s.name),
    )
    assert code == 0
    name = session_name(project)
    assert seen == [name]
    assert fake_lima.names('clone')[0][1:3] == (project.template_name, name)
    assert name not in fake_lima.vms
    assert project.template_name in fake_lima.vms

    final = [c for c in fake_lima.names('shell') if c[3][:1] == ['-c'] and c[3][-2:] == ['claude', '--resume']]
    assert final, fake_lima.calls
    entrypoint = final[0][3][1]
    assert "export TOKEN='x'" in entrypoint
    assert 'NETWORK_ISOLATION_ENABLED' not in entrypoint
    assert (name, BASE_CONTEXT_PATH) in fake_lima.copied
    assert (name, '/tmp/bye-bye-inline') in fake_lima.copied

    verbs = [c[0] for c in fake_lima.calls]
    assert verbs[-2:] == ['stop', 'delete']


def test_run_in_session_exit_code_still_cleans_up(fake_lima, project, home) -> None:
    fake_lima.vms[project.template_name] = 'Stopped'
    fake_lima.shell_codes['-- false'] = 7
    with pytest.raises(CommandExitCodeError) as info:
        run_in_session(project, _cfg(), 'false', lima=fake_lima)
    assert info.value.code == 7
    assert session_name(project) not in fake_lima.vms


def test_run_in_session_network_policy(fake_lima, project, home) -> None:
    fake_lima.vms[project.template_name] = 'Stopped'
    cfg = _cfg(security={'network': {'enabled': True, 'mode': 'allowlist', 'allowed_domains': ['github.com']}})
    run_in_session(project, cfg, 'true', lima=fake_lima)
    entrypoint = next(c[3][1] for c in fake_lima.names('shell') if c[3][-1:] == ['true'])
    assert "export POLICY_MODE='allowlist'" in entrypoint
    assert "export ALLOWED_DOMAINS='github.com'" in entrypoint


def test_session_workdir_follows_caller(project, tmp_path) -> None:
    sub = project.root / 'src' / 'pkg'
    sub.mkdir(parents=True)
    root = project.root.resolve()
    assert session_workdir(project, sub) == sub.resolve()
    assert session_workdir(project, project.root) == root
    assert session_workdir(project, tmp_path) == root


def test_run_in_session_uses_workdir(fake_lima, project, home) -> None:
    fake_lima.vms[project.template_name] = 'Stopped'
    sub = project.root / 'docs'
    sub.mkdir()
    run_in_session(project, _cfg(), 'true', lima=fake_lima, workdir=sub)
    run_in_session(project, _cfg(), 'true', lima=fake_lima)
    shells = fake_lima.names('shell')
    used = [wd for call, wd in zip(shells, fake_lima.workdirs) if call[3][-1:] == ['true']]
    assert used == [sub, project.root]
