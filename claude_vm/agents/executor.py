"""Install and wire up the coding agent inside a template VM."""

from __future__ import annotations

from loguru import logger

from ..errors import CommandNotFoundError, VMCommandError
from ..phases import AGENT_DEPLOY_SCRIPT, SESSION_PATH_EXPORT, copy_text, execute_script
from ..shell import shell_escape
from .registry import Agent

log = logger

AGENT_METADATA = '/usr/local/share/claude-vm/agent'
AGENT_WRAPPER = '/usr/local/bin/agent'


def _sudo_install_text(lima, vm_name: str, content: str, target: str, mode: str = '0755') -> None:
    tmp = f'/tmp/claude-vm-{target.strip("/").replace("/", "-")}'
    copy_text(lima, vm_name, content, tmp)
    lima.shell(
        vm_name, 'bash',
        ['-c', f'sudo install -D -m {mode} {shell_escape(tmp)} {shell_escape(target)} && rm -f {shell_escape(tmp)}'],
    )


def install_agent(lima, vm_name: str, agent: Agent) -> None:
    """Run the installer, then write the metadata, deploy script and wrapper."""
    print(f'Installing agent: {agent.name}...')
    if agent.install_script.strip():
        execute_script(lima, vm_name, agent.install_script, f'agent-install-{agent.id}.sh')
    _sudo_install_text(
        lima, vm_name,
        f'export CLAUDE_VM_AGENT={shell_escape(agent.id)}\n',
        AGENT_METADATA, mode='0644',
    )
    _sudo_install_text(lima, vm_name, agent.deploy_script, AGENT_DEPLOY_SCRIPT, mode='0644')
    wrapper = (
        '#!/bin/bash\n'
        f'{SESSION_PATH_EXPORT}\n'
        f'exec {shell_escape(agent.command)} "$@"\n'
    )
    _sudo_install_text(lima, vm_name, wrapper, AGENT_WRAPPER)
    print(f'  ✓ {agent.name} installed')


def authenticate_agent(lima, vm_name: str, agent: Agent) -> None:
    if not agent.requires_authentication:
        return
    print(f'Authenticating {agent.name}...')
    execute_script(lima, vm_name, agent.authenticate_script, f'agent-auth-{agent.id}.sh')


def ensure_agent_command(lima, vm_name: str, agent: Agent) -> None:
    """Fail with guidance when the agent binary is missing from the VM."""
    probe = f'{SESSION_PATH_EXPORT}; command -v {shell_escape(agent.command)}'
    code = lima.shell(vm_name, 'bash', ['-c', probe], check=False)
    if code != 0:
        raise CommandNotFoundError(
            f"'{agent.command}' was not found in the VM. The template was "
            'probably built with --no-agent-install. Rebuild it with '
            "'claude-vm setup', or use 'claude-vm shell' to install it manually."
        )


def setup_agent(lima, vm_name: str, agent: Agent, *, install: bool = True) -> None:
    if not install:
        print(f'Skipping {agent.name} installation (--no-agent-install)')
        return
    install_agent(lima, vm_name, agent)
    try:
        authenticate_agent(lima, vm_name, agent)
    except VMCommandError as ex:
        log.warning('Authentication for {} did not complete: {}', agent.name, ex)
        print(f'⚠ {agent.name} is not authenticated; log in from the first session instead.')
