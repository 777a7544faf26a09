"""
Drive the command classes directly, the way ``ModalCLI`` does, against a
recording stand-in for ``limactl``.
"""

from __future__ import annotations

import io

import pytest

from claude_vm import __version__
from claude_vm.cli import network as network_cli
from claude_vm.cli import templates as templates_cli
from claude_vm.cli.config import ConfigValidateCLI
from claude_vm.cli.network import NetworkTestCLI
from claude_vm.cli.templates import CleanAllCLI, CleanCLI, InfoCLI, ListCLI
from claude_vm.cli.version import VersionCLI
from claude_vm.cli.worktree import WorktreeRemoveCLI
from claude_vm.config import Config
from claude_vm.errors import InvalidConfigError, WorktreeError
from claude_vm.project import Project

TPL_A = 'claude-tpl_alpha_0a1b2c3d'
TPL_B = 'claude-tpl_beta_4e5f6a7b'


@pytest.fixture
def lima(fake_lima, monkeypatch, tmp_path):
    monkeypatch.setattr(templates_cli, '_get_lima', lambda: fake_lima)
    monkeypatch.setattr(network_cli, '_get_lima', lambda: fake_lima)
    monkeypatch.setenv('LIMA_HOME', str(tmp_path / 'lima'))
    return fake_lima


@pytest.fixture
def no_tty(monkeypatch):
    monkeypatch.setattr('sys.stdin', io.StringIO())


def test_list_only_shows_templates(lima, capsys) -> None:
    lima.vms.update({TPL_B: 'Stopped', TPL_A: 'Stopped', 'default': 'Running'})
    assert ListCLI.main(argv=False) == 0
    out = capsys.readouterr().out
    assert out.splitlines() == ['Claude VM templates:', f'  {TPL_A}', f'  {TPL_B}']


def test_list_empty(lima, capsys) -> None:
    assert ListCLI.main(argv=False) == 0
    assert 'No claude-vm templates found.' in capsys.readouterr().out


def test_list_disk_usage_without_instance_dir(lima, capsys) -> None:
    lima.vms[TPL_A] = 'Stopped'
    assert ListCLI.main(argv=False, disk_usage=True) == 0
    out = capsys.readouterr().out
    assert 'TEMPLATE' in out and 'LAST USED' in out
    row = [line for line in out.splitlines() if line.startswith(TPL_A)][0]
    assert row.split()[1:] == ['unknown', 'unknown']


def test_list_unused_skips_unknown_age(lima, capsys) -> None:
    lima.vms[TPL_A] = 'Stopped'
    assert ListCLI.main(argv=False, unused=True) == 0
    assert 'No unused templates found.' in capsys.readouterr().out


def test_clean_all_deletes_every_template(lima, capsys) -> None:
    lima.vms.update({TPL_A: 'Stopped', TPL_B: 'Stopped', 'default': 'Running'})
    assert CleanAllCLI.main(argv=False, yes=True) == 0
    assert [c[1] for c in lima.names('delete')] == [TPL_A, TPL_B]
    assert list(lima.vms) == ['default']
    assert 'All templates cleaned successfully.' in capsys.readouterr().out


def test_clean_all_refuses_without_tty(lima, no_tty) -> None:
    lima.vms[TPL_A] = 'Stopped'
    with pytest.raises(RuntimeError, match='Re-run with --yes'):
        CleanAllCLI.main(argv=False)
    assert lima.names('delete') == []


def test_clean_missing_template(lima, project, monkeypatch, capsys) -> None:
    monkeypatch.chdir(project.root)
    assert CleanCLI.main(argv=False, yes=True) == 0
    assert 'Template does not exist' in capsys.readouterr().out
    assert lima.names('delete') == []


def test_clean_current_project(lima, project, monkeypatch, capsys) -> None:
    monkeypatch.chdir(project.root)
    name = Project.detect().template_name
    lima.vms[name] = 'Stopped'
    assert CleanCLI.main(argv=False, yes=True) == 0
    assert lima.names('delete') == [('delete', name)]
    assert f'Template cleaned successfully: {name}' in capsys.readouterr().out


def test_info_without_template(lima, project, monkeypatch, capsys) -> None:
    monkeypatch.setattr(templates_cli, '_load_project_config', lambda: (project, Config()))
    assert InfoCLI.main(argv=False) == 0
    out = capsys.readouterr().out
    assert f'Template: {project.template_name}' in out
    assert '➖ Status - Not created' in out
    assert "Run 'claude-vm setup'" in out


def test_info_with_template(lima, project, monkeypatch, capsys) -> None:
    cfg = Config()
    cfg.tools.docker = True
    cfg.runtime.scripts = ['./start.sh']
    monkeypatch.setattr(templates_cli, '_load_project_config', lambda: (project, cfg))
    lima.vms[project.template_name] = 'Stopped'
    assert InfoCLI.main(argv=False) == 0
    out = capsys.readouterr().out
    assert '✅ Status - Stopped' in out
    assert 'Disk: 20GB' in out
    assert 'docker' in out
    assert '  - ./start.sh' in out


def _network_config(**kw) -> Config:
    cfg = Config()
    for key, value in kw.items():
        setattr(cfg.security.network, key, value)
    return cfg


def test_network_test_disabled(project, monkeypatch, capsys) -> None:
    monkeypatch.setattr(network_cli, '_load_project_config', lambda: (project, Config()))
    assert NetworkTestCLI.main(argv=False, domain='example.com') == 0
    assert 'Network isolation is DISABLED' in capsys.readouterr().out


def test_network_test_allowlist(project, monkeypatch, capsys) -> None:
    cfg = _network_config(enabled=True, mode='allowlist', allowed_domains=['*.github.com'])
    monkeypatch.setattr(network_cli, '_load_project_config', lambda: (project, cfg))

    NetworkTestCLI.main(argv=False, domain='api.github.com')
    out = capsys.readouterr().out
    assert 'Result: ✓ ALLOWED' in out
    assert '• *.github.com' in out

    NetworkTestCLI.main(argv=False, domain='example.com')
    out = capsys.readouterr().out
    assert 'Result: ✗ BLOCKED' in out
    assert 'allowed_domains = ["example.com"]' in out


def test_network_test_denylist_and_bypass(project, monkeypatch, capsys) -> None:
    cfg = _network_config(
        enabled=True,
        blocked_domains=['*.evil.test'],
        bypass_domains=['pinned.example'],
    )
    monkeypatch.setattr(network_cli, '_load_project_config', lambda: (project, cfg))

    NetworkTestCLI.main(argv=False, domain='cdn.evil.test')
    out = capsys.readouterr().out
    assert 'Result: ✗ BLOCKED' in out
    assert 'Denylist' in out
    assert '• *.evil.test' in out

    NetworkTestCLI.main(argv=False, domain='pinned.example')
    assert 'ALLOWED (bypass)' in capsys.readouterr().out

    NetworkTestCLI.main(argv=False, domain='example.org')
    assert 'does NOT match any blocked patterns' in capsys.readouterr().out


def test_config_validate_file(tmp_path, capsys) -> None:
    fpath = tmp_path / 'good.toml'
    fpath.write_text('[vm]\ndisk = 30\n\n[tools]\ndocker = true\n')
    assert ConfigValidateCLI.main(argv=False, file=str(fpath)) == 0
    assert '✓ Configuration is valid!' in capsys.readouterr().out


def test_config_validate_file_type_error(tmp_path, capsys) -> None:
    fpath = tmp_path / 'bad.toml'
    fpath.write_text('[vm]\ndisk = "big"\n')
    with pytest.raises(InvalidConfigError, match='vm.disk'):
        ConfigValidateCLI.main(argv=False, file=str(fpath))
    assert '✗ Configuration is invalid!' in capsys.readouterr().out


def test_config_validate_file_syntax_error(tmp_path) -> None:
    fpath = tmp_path / 'broken.toml'
    fpath.write_text('[vm\n')
    with pytest.raises(InvalidConfigError, match='Failed to parse'):
        ConfigValidateCLI.main(argv=False, file=str(fpath))


def test_version_prints(capsys) -> None:
    assert VersionCLI.main(argv=False) == 0
    assert capsys.readouterr().out.strip() == f'claude-vm {__version__}'


@pytest.mark.parametrize('kwargs, message', [
    ({'branches': ['feat'], 'locked': True}, '--locked flag requires --merged'),
    ({'branches': ['feat'], 'merged': True}, 'Cannot use both'),
    ({}, 'Must specify either'),
])
def test_worktree_remove_rejects_bad_flag_combinations(kwargs, message) -> None:
    with pytest.raises(WorktreeError, match=message):
        WorktreeRemoveCLI.main(argv=False, **kwargs)
