"""Template-build steps contributed by enabled capabilities."""

from __future__ import annotations

import json
from typing import Sequence

from loguru import logger

from ..config import Config
from ..phases import (
    RUNTIME_HOOK_DIR,
    PhaseContext,
    copy_text,
    execute_script,
    render_capability_hook,
    run_vm_phases,
)
from ..shell import join_args, shell_escape
from .registry import Capability, CapabilityRegistry, McpServer

log = logger

APT_ENV = 'sudo DEBIAN_FRONTEND=noninteractive'


def setup_repositories(lima, ctx: PhaseContext, repo_setups: Sequence[tuple[str, str]]) -> None:
    if not repo_setups:
        return
    print('Setting up package repositories...')
    for cap_id, script in repo_setups:
        print(f'  Setting up repositories for {cap_id}...')
        execute_script(lima, ctx.vm_name, '#!/bin/bash\nset -e\n' + script, f'repo-setup-{cap_id}.sh')


def install_packages(lima, vm_name: str, packages: Sequence[str]) -> None:
    """One ``apt-get update`` followed by a single batched install."""
    if not packages:
        return
    print(f'Installing {len(packages)} system package(s)...')
    log.info('Installing packages: {}', ' '.join(packages))
    lima.shell(vm_name, 'bash', ['-c', f'{APT_ENV} apt-get update'])
    lima.shell(
        vm_name, 'bash',
        ['-c', f'{APT_ENV} apt-get install -y {join_args(packages)}'],
    )


def install_runtime_hooks(lima, ctx: PhaseContext, capabilities: Sequence[Capability]) -> None:
    """Install each capability's runtime phases as ``RUNTIME_HOOK_DIR/<id>.sh``."""
    with_hooks = [cap for cap in capabilities if cap.phases.runtime]
    if not with_hooks:
        return
    print('Installing capability runtime scripts...')
    lima.shell(ctx.vm_name, 'sudo', ['mkdir', '-p', RUNTIME_HOOK_DIR])
    for cap in with_hooks:
        content = render_capability_hook(cap.phases.runtime, ctx)
        tmp_dest = f'claude-vm-runtime-{cap.id}.sh'
        target = f'{RUNTIME_HOOK_DIR}/{cap.id}.sh'
        install = (
            f'sudo mv -f /tmp/{tmp_dest} {shell_escape(target)} && '
            f'sudo chmod +x {shell_escape(target)}'
        )
        copy_text(lima, ctx.vm_name, content, f'/tmp/{tmp_dest}')
        lima.shell(ctx.vm_name, 'bash', ['-c', install])
        print(f'  ✓ Installed {cap.id}.sh')


def mcp_jq_filter(servers: Sequence[McpServer]) -> str:
    """
    Example:
        >>> from claude_vm.capabilities.registry import McpServer
        >>> from claude_vm.capabilities.executor import mcp_jq_filter
        >>> mcp_jq_filter([McpServer('x', 'npx', ('-y', 'pkg'))])
        '.mcpServers["x"] = {"command": "npx", "args": ["-y", "pkg"]}'
    """
    parts = []
    for server in servers:
        value = json.dumps({'command': server.command, 'args': list(server.args)})
        parts.append(f'.mcpServers[{json.dumps(server.id)}] = {value}')
    return ' | '.join(parts)


def configure_mcp(lima, vm_name: str, servers: Sequence[McpServer], config_file: str = '$HOME/.claude.json') -> None:
    if not servers:
        return
    print('Configuring MCP servers...')
    jq_filter = mcp_jq_filter(servers)
    script = (
        f'f="{config_file}"; '
        '[ -f "$f" ] || echo "{}" > "$f"; '
        f'jq {shell_escape(jq_filter)} "$f" > "$f.tmp" && mv "$f.tmp" "$f"'
    )
    lima.shell(vm_name, 'bash', ['-c', script])
    for server in servers:
        print(f'  ✓ {server.id}')


def run_capability_setup(
    lima,
    ctx: PhaseContext,
    config: Config,
    registry: CapabilityRegistry,
) -> list[Capability]:
    """
    Repository setup, batched package install, capability setup phases
    and runtime hook installation, in that order. Returns the enabled
    capabilities.
    """
    capabilities = registry.get_enabled(config)
    repo_setups = registry.get_repo_setups(config)
    if config.packages.setup_script.strip():
        repo_setups.append(('project', config.packages.setup_script))
    setup_repositories(lima, ctx, repo_setups)
    install_packages(lima, ctx.vm_name, registry.collect_system_packages(config))
    cap_phases = [p for cap in capabilities for p in cap.phases.setup]
    if cap_phases:
        run_vm_phases(lima, ctx, cap_phases, context='Setup')
    install_runtime_hooks(lima, ctx, capabilities)
    return capabilities
