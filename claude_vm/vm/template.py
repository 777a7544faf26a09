"""
Build, inspect and delete per-project template VMs.

A template is a stopped Lima instance named after the project. Sessions
clone it; nothing writes to it after :func:`build` returns.
"""

from __future__ import annotations

import datetime as datetime_mod
import os
from pathlib import Path
from typing import Optional

import ubelt as ub
from loguru import logger

from ..config import Config
from ..errors import TemplateNotFoundError
from ..phases import (
    PhaseContext,
    execute_script,
    run_host_phases,
    run_vm_phases,
    validate_phases,
)
from ..project import TEMPLATE_PREFIX, Project
from ..shell import expand_tilde, shell_escape
from ..util import run_cmd

log = logger

BASELINE_PACKAGES = (
    'git',
    'curl',
    'jq',
    'wget',
    'build-essential',
    'ripgrep',
    'fd-find',
    'htop',
    'unzip',
    'zip',
    'ca-certificates',
)
UNUSED_AFTER_DAYS = 30
SETUP_SCRIPT_NAME = '.claude-vm.setup.sh'

_NEEDRESTART_CMD = (
    'sudo bash -c "mkdir -p /etc/needrestart/conf.d && '
    "echo '$nrconf{restart} = '\"'\"'a'\"'\"';' > /etc/needrestart/conf.d/no-prompt.conf\""
)


def lima_home() -> Path:
    env = os.environ.get('LIMA_HOME')
    if env:
        return Path(env)
    return Path(ub.Path.home()) / '.lima'


def get_path(name: str) -> Path:
    return lima_home() / name


def exists(lima, name: str) -> bool:
    return lima.vm_exists(name)


def verify(lima, name: str) -> None:
    if not exists(lima, name):
        raise TemplateNotFoundError(name)


def delete(lima, name: str, verbose: bool = False) -> None:
    lima.delete(name, force=True, verbose=verbose)


def list_all(lima) -> list[str]:
    return sorted(vm.name for vm in lima.list() if vm.name.startswith(TEMPLATE_PREFIX))


def get_disk_usage(name: str) -> str:
    """``du -sh`` of the instance directory, or ``unknown``."""
    path = get_path(name)
    if not path.exists():
        return 'unknown'
    try:
        res = run_cmd(['du', '-sh', str(path)], check=False, capture=True)
    except FileNotFoundError:
        return 'unknown'
    if res.code != 0 or not res.stdout.strip():
        return 'unknown'
    return res.stdout.split()[0]


def get_last_access_time(name: str) -> Optional[datetime_mod.datetime]:
    try:
        return datetime_mod.datetime.fromtimestamp(get_path(name).stat().st_mtime)
    except OSError:
        return None


def is_unused(name: str, now: Optional[datetime_mod.datetime] = None) -> bool:
    last = get_last_access_time(name)
    if last is None:
        return False
    now = now or datetime_mod.datetime.now()
    return (now - last).days >= UNUSED_AFTER_DAYS


def format_last_used(
    last: Optional[datetime_mod.datetime],
    now: Optional[datetime_mod.datetime] = None,
) -> str:
    """
    Example:
        >>> import datetime
        >>> from claude_vm.vm.template import format_last_used
        >>> now = datetime.datetime(2024, 6, 30)
        >>> [format_last_used(now - datetime.timedelta(days=d), now) for d in (0, 1, 12, 45, 90)]
        ['today', '1 day ago', '12 days ago', '6 weeks ago', '3 months ago']
    """
    if last is None:
        return 'unknown'
    now = now or datetime_mod.datetime.now()
    days = max((now - last).days, 0)
    if days == 0:
        return 'today'
    if days == 1:
        return '1 day ago'
    if days < 30:
        return f'{days} days ago'
    weeks = days // 7
    if weeks < 8:
        return f'{weeks} weeks ago'
    return f'{days // 30} months ago'


def _setup_script_paths(project: Project, config: Config) -> list[tuple[Path, bool]]:
    """``(path, required)`` pairs: the two conventional files, then ``setup.scripts``."""
    paths = []
    home = expand_tilde('~')
    if home is not None:
        paths.append((home / SETUP_SCRIPT_NAME, False))
    paths.append((Path(project.root) / SETUP_SCRIPT_NAME, False))
    for item in config.setup.scripts:
        fpath = expand_tilde(item) or Path(item)
        if not fpath.is_absolute():
            fpath = Path(project.root) / fpath
        paths.append((fpath, True))
    return paths


def run_setup_scripts(lima, vm_name: str, project: Project, config: Config) -> None:
    for fpath, required in _setup_script_paths(project, config):
        if not fpath.is_file():
            if required:
                log.warning('Setup script not found, skipping: {}', fpath)
            continue
        print(f'Running setup script: {fpath}')
        execute_script(lima, vm_name, fpath.read_text(encoding='utf-8'), fpath.name)


def build(
    project: Project,
    config: Config,
    *,
    lima,
    registry=None,
    agents=None,
) -> None:
    """
    Create, provision and stop the template for ``project``.

    Any existing template is deleted first. When a step fails after the
    VM was created, the partial VM is stopped and deleted before the error
    propagates.
    """
    from ..agents import AgentRegistry, verify_requirements
    from ..agents.executor import setup_agent
    from ..capabilities import default_registry
    from ..capabilities.executor import configure_mcp, run_capability_setup

    registry = registry or default_registry()
    agents = agents or AgentRegistry()
    name = project.template_name

    lima.require_installed()
    validate_phases(config)
    capabilities = registry.get_enabled(config)
    agent = agents.get(config.defaults.agent)
    if config.install_agent:
        verify_requirements(agent, config)
    merged = registry.merge_capability_phases(config)

    print(f'Setting up template for project: {project.root}')
    print(f'Template name: {name}')
    if exists(lima, name):
        print('Removing existing template...')
        delete(lima, name, verbose=True)

    lima.create(
        name,
        disk=config.vm.disk,
        memory=config.vm.memory,
        cpus=config.vm.cpus,
        port_forwards=registry.get_port_forwards(config),
        setup_mounts=[m.to_mount() for m in config.setup.mounts],
        verbose=True,
    )
    ctx = PhaseContext(project=project, vm_name=name)
    try:
        lima.start(name, verbose=True)
        run_host_phases(ctx, merged.phase.host.before_setup, 'before_setup')

        root = shell_escape(str(project.root))
        lima.shell(name, 'bash', ['-c', f'mkdir -p ~/.claude-vm && echo {root} > ~/.claude-vm/project-root'])
        lima.shell(name, 'bash', ['-c', _NEEDRESTART_CMD])
        print('Installing base packages...')
        lima.shell(name, 'bash', ['-c', 'sudo DEBIAN_FRONTEND=noninteractive apt-get update'])
        lima.shell(name, 'bash', [
            '-c',
            'sudo DEBIAN_FRONTEND=noninteractive apt-get install -y ' + ' '.join(BASELINE_PACKAGES),
        ])

        run_capability_setup(lima, ctx, config, registry)

        setup_agent(lima, name, agent, install=config.install_agent)
        if config.install_agent:
            configure_mcp(lima, name, registry.get_mcp_servers(config), agent.mcp_config_path)

        run_setup_scripts(lima, name, project, config)
        if config.phase.setup:
            run_vm_phases(lima, ctx, config.phase.setup, context='Setup')
        run_host_phases(ctx, merged.phase.host.after_setup, 'after_setup')

        lima.stop(name, verbose=True)
    except BaseException:
        print('Template setup failed; removing the partial template...')
        _discard(lima, name)
        raise
    enabled = ', '.join(cap.id for cap in capabilities) or 'none'
    print(f'Template ready for project: {project.root} (capabilities: {enabled})')


def _discard(lima, name: str) -> None:
    try:
        lima.stop(name)
    except Exception as ex:
        log.debug('Stopping partial template {} failed: {}', name, ex)
    try:
        lima.delete(name, force=True)
    except Exception as ex:
        log.warning('Could not delete partial template {}: {}', name, ex)
