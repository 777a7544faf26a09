"""Layered TOML configuration: defaults, global, main repo, project, env, CLI."""

from __future__ import annotations

import dataclasses
import os
import sys
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .errors import InvalidConfigError
from .shell import expand_tilde, validate_env_key

log = logger

CONFIG_FILENAME = '.claude-vm.toml'

DEFAULT_DISK = 20
DEFAULT_MEMORY = 8
DEFAULT_CPUS = 4

TOOL_IDS = (
    'docker',
    'node',
    'python',
    'chromium',
    'gpg',
    'gh',
    'git',
    'network_isolation',
)

_FALSY = {'0', 'false', 'no', 'off'}
_TRUTHY = {'1', 'true', 'yes', 'on'}


@dataclass
class VmSection:
    disk: int = DEFAULT_DISK
    memory: int = DEFAULT_MEMORY
    cpus: int = DEFAULT_CPUS


@dataclass
class ToolsSection:
    docker: bool = False
    node: bool = False
    python: bool = False
    chromium: bool = False
    gpg: bool = False
    gh: bool = False
    git: bool = False
    network_isolation: bool = False

    @staticmethod
    def _attr(capability_id: str) -> str:
        return capability_id.replace('-', '_')

    def is_enabled(self, capability_id: str) -> bool:
        return bool(getattr(self, self._attr(capability_id), False))

    def enable(self, capability_id: str) -> None:
        attr = self._attr(capability_id)
        if attr in TOOL_IDS:
            setattr(self, attr, True)


@dataclass
class PackagesSection:
    system: list[str] = field(default_factory=list)
    setup_script: str = ''


@dataclass
class MountEntry:
    location: str = ''
    writable: bool = True
    mount_point: str = ''

    def to_mount(self):
        from .vm.mount import Mount

        spec = self.location
        if self.mount_point:
            spec += f':{self.mount_point}'
        spec += ':rw' if self.writable else ':ro'
        return Mount.from_spec(spec)

    @classmethod
    def from_mount(cls, mount) -> 'MountEntry':
        return cls(
            location=str(mount.location),
            writable=bool(mount.writable),
            mount_point=str(mount.mount_point) if mount.mount_point else '',
        )


@dataclass
class SetupSection:
    scripts: list[str] = field(default_factory=list)
    mounts: list[MountEntry] = field(default_factory=list)


@dataclass
class RuntimeSection:
    scripts: list[str] = field(default_factory=list)


@dataclass
class ScriptPhase:
    """
    One ordered unit of script execution.

    Attributes:
        script: inline script body, run before any ``script_files``.
        script_files: paths relative to the project root (``~`` expanded).
        env: exported before each script runs.
        when: shell command; the phase is skipped unless it exits 0.
        source: runtime only; source the script into the session shell so
            its exports reach the final command.
    """

    name: str = ''
    script: str = ''
    script_files: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    when: str = ''
    source: bool = False

    @property
    def capability_id(self) -> Optional[str]:
        return self.env.get('CAPABILITY_ID')

    def validate(self, context: str = 'Setup') -> None:
        if not self.name:
            raise InvalidConfigError(f'{context} phase is missing a name')
        if not self.script and not self.script_files:
            raise InvalidConfigError(
                f"{context} phase '{self.name}' has no script content. "
                "Specify either 'script' (inline) or 'script_files' (file paths)"
            )
        for key in self.env:
            try:
                validate_env_key(key)
            except InvalidConfigError as ex:
                raise InvalidConfigError(
                    f"{context} phase '{self.name}' has invalid environment "
                    f'variable: {ex}'
                )

    def get_scripts(self, project_root: str | Path) -> list[tuple[str, str]]:
        from .errors import ScriptNotFoundError

        scripts = []
        if self.script:
            scripts.append((f'{self.name}-inline', self.script))
        for item in self.script_files:
            fpath = expand_tilde(item) or Path(item)
            if not fpath.is_absolute():
                fpath = Path(project_root) / fpath
            try:
                content = fpath.read_text(encoding='utf-8')
            except OSError as ex:
                raise ScriptNotFoundError(f'Script not found: {fpath} ({ex})')
            scripts.append((fpath.name, content))
        return scripts


@dataclass
class HostPhaseConfig:
    before_setup: list[ScriptPhase] = field(default_factory=list)
    after_setup: list[ScriptPhase] = field(default_factory=list)
    before_runtime: list[ScriptPhase] = field(default_factory=list)
    after_runtime: list[ScriptPhase] = field(default_factory=list)
    teardown: list[ScriptPhase] = field(default_factory=list)


@dataclass
class PhaseConfig:
    setup: list[ScriptPhase] = field(default_factory=list)
    runtime: list[ScriptPhase] = field(default_factory=list)
    teardown: list[ScriptPhase] = field(default_factory=list)
    host: HostPhaseConfig = field(default_factory=HostPhaseConfig)


@dataclass
class DefaultsSection:
    agent: str = 'claude'
    agent_args: list[str] = field(default_factory=list)


@dataclass
class ContextSection:
    instructions: str = ''
    instructions_file: str = ''


@dataclass
class NetworkSection:
    enabled: bool = False
    mode: str = 'denylist'
    allowed_domains: list[str] = field(default_factory=list)
    blocked_domains: list[str] = field(default_factory=list)
    bypass_domains: list[str] = field(default_factory=list)
    block_tcp_udp: bool = True
    block_private_networks: bool = True
    block_metadata_services: bool = True


@dataclass
class SecuritySection:
    network: NetworkSection = field(default_factory=NetworkSection)


@dataclass
class WorktreeSection:
    template: str = '{branch}'
    location: str = ''


@dataclass
class UpdateCheckSection:
    enabled: bool = True
    interval_hours: int = 72


@dataclass
class Config:
    vm: VmSection = field(default_factory=VmSection)
    tools: ToolsSection = field(default_factory=ToolsSection)
    packages: PackagesSection = field(default_factory=PackagesSection)
    setup: SetupSection = field(default_factory=SetupSection)
    runtime: RuntimeSection = field(default_factory=RuntimeSection)
    phase: PhaseConfig = field(default_factory=PhaseConfig)
    defaults: DefaultsSection = field(default_factory=DefaultsSection)
    context: ContextSection = field(default_factory=ContextSection)
    security: SecuritySection = field(default_factory=SecuritySection)
    worktree: WorktreeSection = field(default_factory=WorktreeSection)
    mounts: list[MountEntry] = field(default_factory=list)
    update_check: UpdateCheckSection = field(default_factory=UpdateCheckSection)

    # Transient, never read from or written to TOML.
    verbose: bool = field(default=False, metadata={'transient': True})
    forward_ssh_agent: bool = field(default=False, metadata={'transient': True})
    mount_conversations: bool = field(default=True, metadata={'transient': True})
    auto_setup: bool = field(default=False, metadata={'transient': True})
    install_agent: bool = field(default=True, metadata={'transient': True})
    sections_present: frozenset = field(
        default=frozenset(),
        compare=False,
        repr=False,
        metadata={'transient': True},
    )

    @property
    def network(self) -> NetworkSection:
        return self.security.network

    def is_enabled(self, capability_id: str) -> bool:
        if capability_id in {'network-isolation', 'network_isolation'}:
            return self.tools.network_isolation or self.security.network.enabled
        return self.tools.is_enabled(capability_id)

    def merge(self, other: 'Config') -> 'Config':
        """Fold ``other`` (higher precedence) into this config in place."""
        if other.vm.disk != DEFAULT_DISK:
            self.vm.disk = other.vm.disk
        if other.vm.memory != DEFAULT_MEMORY:
            self.vm.memory = other.vm.memory
        if other.vm.cpus != DEFAULT_CPUS:
            self.vm.cpus = other.vm.cpus

        for name in TOOL_IDS:
            setattr(
                self.tools,
                name,
                getattr(self.tools, name) or getattr(other.tools, name),
            )

        self.packages.system.extend(other.packages.system)
        if other.packages.setup_script:
            self.packages.setup_script = other.packages.setup_script

        self.setup.scripts.extend(other.setup.scripts)
        self.setup.mounts.extend(other.setup.mounts)
        self.runtime.scripts.extend(other.runtime.scripts)
        self.mounts.extend(other.mounts)

        for name in ('setup', 'runtime', 'teardown'):
            getattr(self.phase, name).extend(getattr(other.phase, name))
        for f in fields(HostPhaseConfig):
            getattr(self.phase.host, f.name).extend(
                getattr(other.phase.host, f.name)
            )

        if other.defaults.agent != DefaultsSection.agent:
            self.defaults.agent = other.defaults.agent
        self.defaults.agent_args.extend(other.defaults.agent_args)

        if other.context.instructions:
            self.context.instructions = other.context.instructions
        if other.context.instructions_file:
            self.context.instructions_file = other.context.instructions_file

        net, onet = self.security.network, other.security.network
        net.enabled = net.enabled or onet.enabled
        if onet.enabled:
            net.mode = onet.mode
            net.block_tcp_udp = onet.block_tcp_udp
            net.block_private_networks = onet.block_private_networks
            net.block_metadata_services = onet.block_metadata_services
        net.allowed_domains.extend(onet.allowed_domains)
        net.blocked_domains.extend(onet.blocked_domains)
        net.bypass_domains.extend(onet.bypass_domains)

        if other.worktree.template != WorktreeSection.template:
            self.worktree.template = other.worktree.template
        if other.worktree.location:
            self.worktree.location = other.worktree.location

        if 'update_check' in other.sections_present:
            self.update_check = dataclasses.replace(other.update_check)
        self.sections_present = self.sections_present | other.sections_present
        return self

    def merge_env(self, environ: Optional[dict[str, str]] = None) -> 'Config':
        env = os.environ if environ is None else environ
        for key, attr in (('CLAUDE_VM_DISK', 'disk'), ('CLAUDE_VM_MEMORY', 'memory')):
            raw = env.get(key)
            if raw is None:
                continue
            try:
                setattr(self.vm, attr, int(raw))
            except ValueError:
                log.warning('Ignoring {}={!r}: not an integer', key, raw)

        raw = env.get('CLAUDE_VM_UPDATE_CHECK')
        if raw is not None and raw.strip().lower() in _FALSY:
            self.update_check.enabled = False
        raw = env.get('CLAUDE_VM_UPDATE_INTERVAL')
        if raw is not None:
            try:
                self.update_check.interval_hours = int(raw)
            except ValueError:
                log.warning('Ignoring CLAUDE_VM_UPDATE_INTERVAL={!r}', raw)

        net = self.security.network
        raw = env.get('NETWORK_ISOLATION_ENABLED')
        if raw is not None and raw.strip().lower() in _TRUTHY:
            net.enabled = True
        raw = env.get('POLICY_MODE')
        if raw:
            net.mode = raw.strip().lower()
        for key, attr in (
            ('ALLOWED_DOMAINS', 'allowed_domains'),
            ('BLOCKED_DOMAINS', 'blocked_domains'),
            ('BYPASS_DOMAINS', 'bypass_domains'),
        ):
            raw = env.get(key)
            if raw:
                getattr(net, attr).extend(
                    d.strip() for d in raw.split(',') if d.strip()
                )
        for key, attr in (
            ('BLOCK_TCP_UDP', 'block_tcp_udp'),
            ('BLOCK_PRIVATE_NETWORKS', 'block_private_networks'),
            ('BLOCK_METADATA_SERVICES', 'block_metadata_services'),
        ):
            raw = env.get(key)
            if raw is None:
                continue
            val = raw.strip().lower()
            if val in _TRUTHY:
                setattr(net, attr, True)
            elif val in _FALSY:
                setattr(net, attr, False)
        return self

    def resolve_context_file(self, *, interactive: Optional[bool] = None) -> 'Config':
        """Load ``context.instructions_file`` when no inline instructions are set."""
        if self.context.instructions or not self.context.instructions_file:
            return self
        fpath = expand_tilde(self.context.instructions_file) or Path(
            self.context.instructions_file
        )
        try:
            self.context.instructions = fpath.read_text(encoding='utf-8')
            return self
        except OSError as ex:
            err = ex
        if interactive is None:
            interactive = sys.stdin.isatty()
        if not interactive:
            raise InvalidConfigError(
                f"Failed to read context file '{fpath}': {err}"
            )
        print('', file=sys.stderr)
        print('╔═══════════════════════════════════════════════════════╗', file=sys.stderr)
        print('║ ⚠️  WARNING: Failed to load context file            ║', file=sys.stderr)
        print('╚═══════════════════════════════════════════════════════╝', file=sys.stderr)
        print(f'  File: {fpath}', file=sys.stderr)
        print(f'  Error: {err}', file=sys.stderr)
        print('', file=sys.stderr)
        print('  The agent will start WITHOUT your custom instructions.', file=sys.stderr)
        print('', file=sys.stderr)
        answer = input('Continue anyway? [y/N]: ').strip().lower()
        if answer != 'y':
            raise InvalidConfigError(
                'Context file load failed and user chose to abort'
            )
        return self

    def validate(self) -> list[str]:
        """Return (and log) non-fatal configuration warnings."""
        from .network import validate_policy

        warnings = []
        if self.is_enabled('network-isolation'):
            warnings.extend(validate_policy(self.security.network))
        if self.worktree.location:
            loc = expand_tilde(self.worktree.location)
            if loc is None or not loc.exists():
                warnings.append(
                    f'worktree.location does not exist yet: '
                    f'{self.worktree.location}'
                )
        for msg in warnings:
            log.warning(msg)
        return warnings

    def with_cli_overrides(self, overrides: Any) -> 'Config':
        """
        Apply command line flags on top of the loaded config.

        ``overrides`` is a mapping or an object with attributes named after
        the runtime flags (``disk``, ``memory``, ``cpus``, ``mount``,
        ``runtime_script``, ``forward_ssh_agent``, ``no_conversations``,
        ``auto_setup``, ``verbose``) and the setup flags (``docker`` ...
        ``network_isolation``, ``all``, ``setup_script``, ``setup_mount``,
        ``agent``, ``no_agent_install``). Missing names are ignored.
        """
        if isinstance(overrides, dict):
            get = overrides.get
        else:
            def get(key, default=None):
                return getattr(overrides, key, default)

        self.verbose = bool(get('verbose', False))
        self.forward_ssh_agent = bool(get('forward_ssh_agent', False))
        self.mount_conversations = not bool(get('no_conversations', False))
        self.auto_setup = bool(get('auto_setup', False))
        self.install_agent = not bool(get('no_agent_install', False))

        for spec in get('mount', None) or []:
            entry = _parse_cli_mount(spec, 'mount')
            if entry is not None:
                self.mounts.append(entry)
        for spec in get('setup_mount', None) or []:
            entry = _parse_cli_mount(spec, 'setup mount')
            if entry is not None:
                self.setup.mounts.append(entry)

        for key in ('disk', 'memory', 'cpus'):
            value = get(key, None)
            if value not in (None, ''):
                setattr(self.vm, key, int(value))

        if get('all', False):
            for name in TOOL_IDS:
                self.tools.enable(name)
            self.security.network.enabled = True
        else:
            for name in TOOL_IDS:
                if get(name, False):
                    self.tools.enable(name)
            if get('network_isolation', False):
                self.security.network.enabled = True

        self.setup.scripts.extend(str(p) for p in get('setup_script', None) or [])
        self.runtime.scripts.extend(
            str(p) for p in get('runtime_script', None) or []
        )
        agent = get('agent', None)
        if agent:
            self.defaults.agent = str(agent)
        return self


def _parse_cli_mount(spec: str, what: str) -> Optional[MountEntry]:
    from .vm.mount import Mount

    try:
        return MountEntry.from_mount(Mount.from_spec(spec))
    except InvalidConfigError as ex:
        log.warning("Invalid {} spec '{}': {}", what, spec, ex)
        return None


def _type_name(default: Any) -> str:
    if isinstance(default, bool):
        return 'boolean'
    if isinstance(default, int):
        return 'integer'
    if isinstance(default, str):
        return 'string'
    if isinstance(default, list):
        return 'array'
    if isinstance(default, dict):
        return 'table'
    return type(default).__name__


def _check_value(value: Any, default: Any, where: str) -> Any:
    ok = True
    if isinstance(default, bool):
        ok = isinstance(value, bool)
    elif isinstance(default, int):
        ok = isinstance(value, int) and not isinstance(value, bool)
    elif isinstance(default, str):
        ok = isinstance(value, str)
    elif isinstance(default, list):
        ok = isinstance(value, list) and all(isinstance(v, str) for v in value)
    elif isinstance(default, dict):
        ok = isinstance(value, dict)
        if ok:
            value = {str(k): str(v) for k, v in value.items()}
    if not ok:
        raise InvalidConfigError(
            f'{where}: expected {_type_name(default)}, got {value!r}'
        )
    return value


def _fill(obj: Any, raw: Any, where: str, skip: tuple[str, ...] = ()) -> Any:
    """Copy known scalar and list keys from ``raw`` onto dataclass ``obj``."""
    if not isinstance(raw, dict):
        raise InvalidConfigError(f'{where}: expected a table')
    known = {f.name for f in fields(obj)}
    for key, value in raw.items():
        if key in skip:
            continue
        if key not in known:
            log.debug('Ignoring unknown config key {}.{}', where, key)
            continue
        default = getattr(obj, key)
        if dataclasses.is_dataclass(default):
            continue
        setattr(obj, key, _check_value(value, default, f'{where}.{key}'))
    return obj


def _table_list(raw: Any, cls: type, where: str) -> list:
    if not isinstance(raw, list):
        raise InvalidConfigError(f'{where}: expected an array of tables')
    return [_fill(cls(), item, f'{where}[{idx}]') for idx, item in enumerate(raw)]


def phases_from_dict(phase: Any, source: str = '<config>') -> PhaseConfig:
    """Parse a ``[phase]`` table (``setup``, ``runtime``, ``teardown``, ``host.*``)."""
    if not isinstance(phase, dict):
        raise InvalidConfigError(f'{source}: phase: expected a table')
    out = PhaseConfig()
    for name in ('setup', 'runtime', 'teardown'):
        if name in phase:
            setattr(
                out,
                name,
                _table_list(phase[name], ScriptPhase, f'{source}: phase.{name}'),
            )
    host = phase.get('host', {})
    if not isinstance(host, dict):
        raise InvalidConfigError(f'{source}: phase.host: expected a table')
    for f in fields(HostPhaseConfig):
        if f.name in host:
            setattr(
                out.host,
                f.name,
                _table_list(host[f.name], ScriptPhase, f'{source}: phase.host.{f.name}'),
            )
    return out


def from_dict(raw: dict, source: str = '<config>') -> Config:
    cfg = Config()
    for name in (
        'vm',
        'tools',
        'packages',
        'runtime',
        'defaults',
        'context',
        'worktree',
        'update_check',
    ):
        if name in raw:
            _fill(getattr(cfg, name), raw[name], f'{source}: {name}')
    if 'setup' in raw:
        _fill(cfg.setup, raw['setup'], f'{source}: setup', skip=('mounts',))
        if 'mounts' in raw['setup']:
            cfg.setup.mounts = _table_list(
                raw['setup']['mounts'], MountEntry, f'{source}: setup.mounts'
            )
    if 'mounts' in raw:
        cfg.mounts = _table_list(raw['mounts'], MountEntry, f'{source}: mounts')
    security = raw.get('security', {})
    if isinstance(security, dict) and 'network' in security:
        _fill(cfg.security.network, security['network'], f'{source}: security.network')
    cfg.phase = phases_from_dict(raw.get('phase', {}), source)
    cfg.sections_present = frozenset(k for k in raw if isinstance(k, str))
    return cfg


def from_file(path: Path) -> Config:
    try:
        raw = tomllib.loads(path.read_text(encoding='utf-8'))
    except tomllib.TOMLDecodeError as ex:
        raise InvalidConfigError(f'Failed to parse {path}: {ex}')
    except OSError as ex:
        raise InvalidConfigError(f'Failed to read {path}: {ex}')
    return from_dict(raw, source=str(path))


def global_config_path() -> Optional[Path]:
    home = os.environ.get('HOME')
    if not home:
        return None
    return Path(home) / CONFIG_FILENAME


def load(
    project_root: str | Path,
    main_repo_root: Optional[str | Path] = None,
    *,
    environ: Optional[dict[str, str]] = None,
    interactive: Optional[bool] = None,
) -> Config:
    """
    Build the effective config for a project.

    Sources are applied in order: defaults, ``~/.claude-vm.toml``, the main
    repository file (only for worktrees), the project file, environment
    variables, then the instructions file is resolved.
    """
    project_root = Path(project_root)
    main_repo_root = Path(main_repo_root) if main_repo_root else project_root
    cfg = Config()
    candidates = [global_config_path()]
    if main_repo_root != project_root:
        candidates.append(main_repo_root / CONFIG_FILENAME)
    candidates.append(project_root / CONFIG_FILENAME)
    for fpath in candidates:
        if fpath is not None and fpath.is_file():
            log.debug('Loading config layer {}', fpath)
            cfg.merge(from_file(fpath))
    cfg.merge_env(environ)
    cfg.resolve_context_file(interactive=interactive)
    return cfg


def _toml_escape(s: str) -> str:
    return (
        s.replace('\\', '\\\\')
        .replace('"', '\\"')
        .replace('\n', '\\n')
        .replace('\r', '\\r')
        .replace('\t', '\\t')
    )


def _toml_key(k: str) -> str:
    if k and all(c.isalnum() or c in '_-' for c in k):
        return k
    return f'"{_toml_escape(k)}"'


def _toml_value(v: Any) -> str:
    if isinstance(v, bool):
        return 'true' if v else 'false'
    if isinstance(v, int):
        return str(v)
    if isinstance(v, list):
        return '[' + ', '.join(_toml_value(item) for item in v) + ']'
    if isinstance(v, dict):
        body = ', '.join(f'{_toml_key(k)} = {_toml_value(x)}' for k, x in v.items())
        return '{ ' + body + ' }' if body else '{}'
    return f'"{_toml_escape(str(v))}"'


def _dump_table(lines: list[str], header: str, obj: Any, *, array: bool = False) -> None:
    lines.append(f'[[{header}]]' if array else f'[{header}]')
    for f in fields(obj):
        value = getattr(obj, f.name)
        if dataclasses.is_dataclass(value) or (
            isinstance(value, list) and value and dataclasses.is_dataclass(value[0])
        ):
            continue
        if array and value in ('', [], {}, False) and f.name != 'writable':
            continue
        lines.append(f'{f.name} = {_toml_value(value)}')
    lines.append('')


def dump_toml(cfg: Config) -> str:
    lines: list[str] = []
    for name in ('vm', 'tools', 'packages', 'setup'):
        _dump_table(lines, name, getattr(cfg, name))
    for m in cfg.setup.mounts:
        _dump_table(lines, 'setup.mounts', m, array=True)
    for name in ('runtime', 'defaults', 'context', 'worktree', 'update_check'):
        _dump_table(lines, name, getattr(cfg, name))
    _dump_table(lines, 'security.network', cfg.security.network)
    for m in cfg.mounts:
        _dump_table(lines, 'mounts', m, array=True)
    for name in ('setup', 'runtime', 'teardown'):
        for p in getattr(cfg.phase, name):
            _dump_table(lines, f'phase.{name}', p, array=True)
    for f in fields(HostPhaseConfig):
        for p in getattr(cfg.phase.host, f.name):
            _dump_table(lines, f'phase.host.{f.name}', p, array=True)
    return '\n'.join(lines).rstrip() + '\n'
