"""
Embedded capability descriptors and dependency resolution.

Each capability lives in ``data/<id>/capability.toml`` next to the scripts
it references. Phases declared with ``script_files`` are resolved against
the capability directory at load time, so a loaded :class:`Capability`
only carries inline scripts and never touches the project tree.
"""

from __future__ import annotations

import copy
import re
import tomllib
from dataclasses import dataclass, field, fields
from functools import lru_cache
from importlib import resources
from typing import Any, Iterable, Optional

from loguru import logger

from ..config import Config, HostPhaseConfig, PhaseConfig, ScriptPhase, phases_from_dict
from ..errors import CapabilityError, InvalidConfigError

log = logger

CAPABILITY_IDS = (
    'docker',
    'node',
    'python',
    'chromium',
    'gpg',
    'gh',
    'git',
    'network-isolation',
)

_PACKAGE_RE = re.compile(r'^[a-z0-9][a-z0-9.+\-=:]*$')


@dataclass(frozen=True)
class McpServer:
    id: str
    command: str
    args: tuple[str, ...] = ()
    enabled_when: Optional[str] = None


@dataclass(frozen=True)
class ForwardSpec:
    """A unix socket forward whose host side is a path or ``{detect=...}``."""

    host: Any
    guest: str
    type: str = 'unix_socket'

    def resolve(self):
        from ..vm.port_forward import resolve_forward

        return resolve_forward(self.host, self.guest)


@dataclass
class Capability:
    id: str
    name: str
    description: str = ''
    requires: tuple[str, ...] = ()
    conflicts: tuple[str, ...] = ()
    system_packages: tuple[str, ...] = ()
    repo_setup_script: str = ''
    phases: PhaseConfig = field(default_factory=PhaseConfig)
    mcp: tuple[McpServer, ...] = ()
    forwards: tuple[ForwardSpec, ...] = ()

    def iter_phases(self) -> Iterable[tuple[str, ScriptPhase]]:
        """Yield ``(phase_type, phase)`` for every VM and host phase."""
        for name in ('setup', 'runtime', 'teardown'):
            for phase in getattr(self.phases, name):
                yield name, phase
        for f in fields(HostPhaseConfig):
            for phase in getattr(self.phases.host, f.name):
                yield f.name, phase

    @classmethod
    def from_dict(cls, raw: dict, source: str = '<capability>', read_file=None) -> 'Capability':
        """
        Args:
            raw: parsed ``capability.toml``
            source: label used in error messages
            read_file: callable mapping a relative script path to its text;
                required when any phase uses ``script_files``.
        """
        meta = raw.get('capability')
        if not isinstance(meta, dict) or not meta.get('id'):
            raise CapabilityError(f'{source}: missing [capability] id')
        cap_id = str(meta['id'])
        packages = raw.get('packages', {})
        cap = cls(
            id=cap_id,
            name=str(meta.get('name', cap_id)),
            description=str(meta.get('description', '')),
            requires=tuple(meta.get('requires', ())),
            conflicts=tuple(meta.get('conflicts', ())),
            system_packages=tuple(packages.get('system', ())),
            repo_setup_script=str(packages.get('setup_script', '')),
        )
        try:
            cap.phases = phases_from_dict(raw.get('phase', {}), source)
        except InvalidConfigError as ex:
            raise CapabilityError(str(ex))
        for phase_type, phase in cap.iter_phases():
            _inline_script_files(phase, read_file, source)
            phase.env.setdefault('CAPABILITY_ID', cap_id)
            phase.env.setdefault('CLAUDE_VM_PHASE', phase_type)
        cap.mcp = tuple(
            McpServer(
                id=str(item['id']),
                command=str(item['command']),
                args=tuple(str(a) for a in item.get('args', ())),
                enabled_when=item.get('enabled_when') or None,
            )
            for item in raw.get('mcp', ())
        )
        cap.forwards = tuple(
            ForwardSpec(
                host=item['host'],
                guest=str(item['guest']),
                type=str(item.get('type', 'unix_socket')),
            )
            for item in raw.get('forwards', ())
        )
        return cap


def _inline_script_files(phase: ScriptPhase, read_file, source: str) -> None:
    if not phase.script_files:
        return
    if read_file is None:
        raise CapabilityError(
            f"{source}: phase '{phase.name}' uses script_files but no data "
            'directory is available'
        )
    parts = [phase.script] if phase.script else []
    for relpath in phase.script_files:
        try:
            parts.append(read_file(relpath))
        except (FileNotFoundError, OSError) as ex:
            raise CapabilityError(
                f"{source}: phase '{phase.name}' script '{relpath}' not found ({ex})"
            )
    phase.script = '\n'.join(p.rstrip('\n') for p in parts) + '\n'
    phase.script_files = []


def get_embedded_script(capability_id: str, relpath: str) -> str:
    root = resources.files(__package__).joinpath('data', capability_id)
    return root.joinpath(relpath).read_text(encoding='utf-8')


def load_embedded(capability_id: str) -> Capability:
    root = resources.files(__package__).joinpath('data', capability_id)
    fpath = root.joinpath('capability.toml')
    source = f'capabilities/{capability_id}/capability.toml'
    try:
        raw = tomllib.loads(fpath.read_text(encoding='utf-8'))
    except FileNotFoundError:
        raise CapabilityError(f"Unknown capability '{capability_id}'")
    except tomllib.TOMLDecodeError as ex:
        raise CapabilityError(f'{source}: {ex}')
    cap = Capability.from_dict(
        raw,
        source=source,
        read_file=lambda rel: get_embedded_script(capability_id, rel),
    )
    if cap.id != capability_id:
        raise CapabilityError(
            f"{source}: id '{cap.id}' does not match directory '{capability_id}'"
        )
    return cap


def validate_package_name(name: str) -> str:
    """
    Example:
        >>> from claude_vm.capabilities.registry import validate_package_name
        >>> validate_package_name('python3-pip')
        'python3-pip'
        >>> validate_package_name('nodejs=22.1.0-1nodesource1')
        'nodejs=22.1.0-1nodesource1'
    """
    if not _PACKAGE_RE.match(name):
        raise InvalidConfigError(f"Invalid package name: '{name}'")
    return name


class CapabilityRegistry:
    """Known capabilities keyed by id, in declaration order."""

    def __init__(self, capabilities: Iterable[Capability]):
        self.capabilities: dict[str, Capability] = {}
        for cap in capabilities:
            if cap.id in self.capabilities:
                raise CapabilityError(f"Duplicate capability '{cap.id}'")
            self.capabilities[cap.id] = cap
        self._check_graph()

    @classmethod
    def load(cls) -> 'CapabilityRegistry':
        return cls(load_embedded(cap_id) for cap_id in CAPABILITY_IDS)

    def __contains__(self, cap_id: str) -> bool:
        return cap_id in self.capabilities

    def ids(self) -> list[str]:
        return list(self.capabilities)

    def get(self, cap_id: str) -> Capability:
        try:
            return self.capabilities[cap_id]
        except KeyError:
            raise CapabilityError(f"Unknown capability '{cap_id}'")

    def _check_graph(self) -> None:
        for cap in self.capabilities.values():
            for dep in cap.requires:
                if dep not in self.capabilities:
                    raise CapabilityError(
                        f"Capability '{cap.id}' requires unknown capability '{dep}'"
                    )
        self._toposort(list(self.capabilities))

    def _toposort(self, ids: list[str]) -> list[Capability]:
        order: list[Capability] = []
        done: set[str] = set()
        stack: set[str] = set()

        def visit(cap_id: str) -> None:
            if cap_id in done:
                return
            if cap_id in stack:
                raise CapabilityError(
                    f"Circular dependency detected involving capability '{cap_id}'"
                )
            stack.add(cap_id)
            cap = self.capabilities[cap_id]
            for dep in cap.requires:
                if dep in wanted:
                    visit(dep)
            stack.discard(cap_id)
            done.add(cap_id)
            order.append(cap)

        wanted = set(ids)
        for cap_id in ids:
            visit(cap_id)
        return order

    def get_enabled(self, config: Config) -> list[Capability]:
        """Enabled capabilities, each after the capabilities it requires."""
        enabled = [cid for cid in self.capabilities if config.is_enabled(cid)]
        enabled_set = set(enabled)
        for cid in enabled:
            for other in self.capabilities[cid].conflicts:
                if other in enabled_set:
                    raise CapabilityError(
                        f"Capability '{cid}' conflicts with '{other}'"
                    )
        for cid in enabled:
            for dep in self.capabilities[cid].requires:
                if dep not in enabled_set:
                    raise CapabilityError(
                        f"Capability '{cid}' requires '{dep}' but it is not enabled"
                    )
        return self._toposort(enabled)

    def get_mcp_servers(self, config: Config) -> list[McpServer]:
        enabled = self.get_enabled(config)
        enabled_ids = {cap.id for cap in enabled}
        servers = []
        for cap in enabled:
            for server in cap.mcp:
                if server.enabled_when and server.enabled_when not in enabled_ids:
                    log.debug(
                        'Skipping MCP server {} ({} not enabled)',
                        server.id, server.enabled_when,
                    )
                    continue
                servers.append(server)
        return servers

    def collect_system_packages(self, config: Config) -> list[str]:
        """Capability packages in dependency order, then user packages, deduplicated."""
        seen: set[str] = set()
        packages = []
        candidates = [p for cap in self.get_enabled(config) for p in cap.system_packages]
        candidates += list(config.packages.system)
        for name in candidates:
            name = name.strip()
            if not name or name in seen:
                continue
            validate_package_name(name)
            seen.add(name)
            packages.append(name)
        return packages

    def get_repo_setups(self, config: Config) -> list[tuple[str, str]]:
        return [
            (cap.id, cap.repo_setup_script)
            for cap in self.get_enabled(config)
            if cap.repo_setup_script.strip()
        ]

    def get_port_forwards(self, config: Config) -> list:
        forwards = []
        for cap in self.get_enabled(config):
            for spec in cap.forwards:
                if spec.type != 'unix_socket':
                    raise CapabilityError(
                        f"Capability '{cap.id}': unsupported forward type '{spec.type}'"
                    )
                forwards.append(spec.resolve())
        return forwards

    def merge_capability_phases(self, config: Config) -> Config:
        """
        Return a copy of ``config`` whose phase lists start with the phases
        of every enabled capability, in dependency order.
        """
        merged = copy.deepcopy(config)
        enabled = self.get_enabled(config)
        for name in ('setup', 'runtime', 'teardown'):
            cap_phases = [
                copy.deepcopy(p) for cap in enabled for p in getattr(cap.phases, name)
            ]
            setattr(merged.phase, name, cap_phases + getattr(merged.phase, name))
        for f in fields(HostPhaseConfig):
            cap_phases = [
                copy.deepcopy(p) for cap in enabled for p in getattr(cap.phases.host, f.name)
            ]
            setattr(merged.phase.host, f.name, cap_phases + getattr(merged.phase.host, f.name))
        return merged


@lru_cache(maxsize=None)
def default_registry() -> CapabilityRegistry:
    return CapabilityRegistry.load()
