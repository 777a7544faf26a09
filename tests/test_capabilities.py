from __future__ import annotations

import pytest

from claude_vm.capabilities import CAPABILITY_IDS, Capability, CapabilityRegistry, default_registry
from claude_vm.capabilities.registry import validate_package_name
from claude_vm.config import Config, from_dict
from claude_vm.errors import CapabilityError, InvalidConfigError


def _cap(cap_id, **kwargs) -> Capability:
    raw = {'capability': {'id': cap_id, 'name': cap_id.title()}}
    raw['capability'].update(kwargs.pop('meta', {}))
    raw.update(kwargs)
    return Capability.from_dict(raw)


def test_embedded_registry_loads_every_capability() -> None:
    registry = default_registry()
    assert registry.ids() == list(CAPABILITY_IDS)
    for cap_id in CAPABILITY_IDS:
        cap = registry.get(cap_id)
        assert cap.name
        for phase_type, phase in cap.iter_phases():
            # script_files are inlined at load time
            assert phase.script_files == []
            assert phase.script.strip()
            assert phase.env['CAPABILITY_ID'] == cap_id
            assert phase.env['CLAUDE_VM_PHASE'] == phase_type


def test_gpg_declares_forward_and_runtime_hook() -> None:
    gpg = default_registry().get('gpg')
    assert gpg.forwards[0].guest.endswith('.socket')
    assert gpg.forwards[0].host == {'detect': 'gpgconf --list-dir agent-extra-socket'}
    assert any(p.source for p in gpg.phases.runtime)


def test_unknown_capability() -> None:
    with pytest.raises(CapabilityError, match='Unknown capability'):
        default_registry().get('emacs')


def test_missing_id_is_rejected() -> None:
    with pytest.raises(CapabilityError, match='missing'):
        Capability.from_dict({'capability': {'name': 'x'}})


def test_script_files_without_data_dir() -> None:
    with pytest.raises(CapabilityError, match='script_files'):
        _cap('x', phase={'setup': [{'name': 's', 'script_files': ['a.sh']}]})


def test_dependency_order_and_missing_requirement() -> None:
    registry = CapabilityRegistry([
        _cap('b', meta={'requires': ['a']}),
        _cap('a'),
        _cap('c', meta={'requires': ['b']}),
    ])
    cfg = Config()
    cfg.is_enabled = lambda cap_id: True
    assert [c.id for c in registry.get_enabled(cfg)] == ['a', 'b', 'c']

    cfg.is_enabled = lambda cap_id: cap_id == 'b'
    with pytest.raises(CapabilityError, match="requires 'a'"):
        registry.get_enabled(cfg)


def test_unknown_requirement_and_cycles() -> None:
    with pytest.raises(CapabilityError, match='unknown capability'):
        CapabilityRegistry([_cap('a', meta={'requires': ['zzz']})])
    with pytest.raises(CapabilityError, match='Circular'):
        CapabilityRegistry([
            _cap('a', meta={'requires': ['b']}),
            _cap('b', meta={'requires': ['a']}),
        ])
    with pytest.raises(CapabilityError, match='Duplicate'):
        CapabilityRegistry([_cap('a'), _cap('a')])


def test_conflicts() -> None:
    registry = CapabilityRegistry([_cap('a', meta={'conflicts': ['b']}), _cap('b')])
    cfg = Config()
    cfg.is_enabled = lambda cap_id: True
    with pytest.raises(CapabilityError, match='conflicts'):
        registry.get_enabled(cfg)


def test_collect_system_packages() -> None:
    registry = default_registry()
    cfg = from_dict({'tools': {'docker': True, 'gpg': True}, 'packages': {'system': ['gnupg', 'htop']}})
    packages = registry.collect_system_packages(cfg)
    assert 'docker-ce' in packages
    assert packages.count('gnupg') == 1
    assert packages[-1] == 'htop'

    bad = from_dict({'packages': {'system': ['ok', 'rm -rf /']}})
    with pytest.raises(InvalidConfigError):
        registry.collect_system_packages(bad)


def test_validate_package_name() -> None:
    with pytest.raises(InvalidConfigError):
        validate_package_name('Bad;Name')


def test_mcp_servers_follow_enabled_capabilities() -> None:
    registry = default_registry()
    assert registry.get_mcp_servers(Config()) == []
    cfg = from_dict({'tools': {'chromium': True}})
    assert [s.id for s in registry.get_mcp_servers(cfg)] == ['chrome-devtools']


def test_merge_capability_phases_prepends_and_copies() -> None:
    registry = default_registry()
    cfg = from_dict({
        'tools': {'docker': True},
        'phase': {'setup': [{'name': 'user', 'script': 'true'}]},
    })
    merged = registry.merge_capability_phases(cfg)
    names = [p.name for p in merged.phase.setup]
    assert names[-1] == 'user'
    assert 'docker-group' in names
    assert [p.name for p in cfg.phase.setup] == ['user']


def test_get_port_forwards_resolves_detect(monkeypatch) -> None:
    monkeypatch.setattr(
        'claude_vm.vm.port_forward.detect_socket_path',
        lambda cmd: '/run/user/1/gnupg/S.gpg-agent.extra',
    )
    forwards = default_registry().get_port_forwards(from_dict({'tools': {'gpg': True}}))
    assert forwards[0].host_socket == '/run/user/1/gnupg/S.gpg-agent.extra'
    assert default_registry().get_port_forwards(Config()) == []
