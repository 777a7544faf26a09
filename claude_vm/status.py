"""Probe and rendering logic for template and network-proxy status reporting."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional

from .errors import VMCommandError
from .project import Project

PROXY_PID_FILE = '/tmp/mitmproxy.pid'
PROXY_LOG_FILE = '/tmp/mitmproxy.log'
PROXY_STATS_FILE = '/tmp/mitmproxy_stats.json'
PROXY_LISTEN = 'localhost:8080'


@dataclass(frozen=True)
class ProbeOutcome:
    ok: bool | None
    detail: str
    diag: str = ''


def status_line(ok: bool | None, label: str, detail: str = '') -> str:
    icon = '✅' if ok is True else ('➖' if ok is None else '❌')
    suffix = f' - {detail}' if detail else ''
    return f'{icon} {label}{suffix}'


def pluralize(count: int, noun: str) -> str:
    """
    Example:
        >>> from claude_vm.status import pluralize
        >>> pluralize(1, 'pattern'), pluralize(3, 'pattern'), pluralize(0, 'pattern')
        ('1 pattern', '3 patterns', '0 patterns')
    """
    return f'{count} {noun}' if count == 1 else f'{count} {noun}s'


def on_off(flag: bool) -> str:
    return 'enabled' if flag else 'disabled'


def probe_template(lima, name: str) -> ProbeOutcome:
    for vm in lima.list():
        if vm.name == name:
            return ProbeOutcome(True, vm.status)
    return ProbeOutcome(None, 'Not created')


def _session_pid(vm_name: str, prefix: str) -> int:
    tail = vm_name[len(prefix):]
    return int(tail) if tail.isdigit() else -1


def find_running_sessions(lima, project: Project) -> list[str]:
    """Running session clones of this project's template, oldest first."""
    prefix = f'{project.template_name}-'
    names = [
        vm.name for vm in lima.list()
        if vm.is_running and vm.name.startswith(prefix)
    ]
    return sorted(names, key=lambda n: _session_pid(n, prefix))


def _vm_file_exists(lima, vm_name: str, path: str) -> bool:
    return lima.shell(vm_name, 'test', ['-f', path], check=False) == 0


def _read_vm_file(lima, vm_name: str, path: str) -> Optional[str]:
    try:
        return lima.shell_output(vm_name, 'cat', [path])
    except VMCommandError:
        return None


def probe_proxy(lima, vm_name: str) -> ProbeOutcome:
    """
    ``ok`` is None when the proxy was never started in this VM, False when
    its pid file is stale and True (detail = pid) while it runs.
    """
    if not _vm_file_exists(lima, vm_name, PROXY_PID_FILE):
        return ProbeOutcome(None, 'Proxy not started')
    pid = (_read_vm_file(lima, vm_name, PROXY_PID_FILE) or '').strip()
    if not pid.isdigit():
        return ProbeOutcome(False, 'Proxy stopped', diag=f'unreadable pid file: {pid!r}')
    # mitmdump runs as root; ps works where kill -0 would be refused.
    alive = lima.shell(vm_name, 'ps', ['-p', pid], check=False) == 0
    if not alive:
        return ProbeOutcome(False, 'Proxy stopped', diag=pid)
    return ProbeOutcome(True, pid)


def proxy_uptime(lima, vm_name: str, pid: str) -> str:
    try:
        return lima.shell_output(vm_name, 'ps', ['-p', pid, '-o', 'etime=']).strip()
    except VMCommandError:
        return ''


def read_proxy_stats(lima, vm_name: str) -> Optional[dict]:
    raw = _read_vm_file(lima, vm_name, PROXY_STATS_FILE)
    if not raw:
        return None
    try:
        stats = json.loads(raw)
    except ValueError:
        return None
    return stats if isinstance(stats, dict) else None


def render_network_status(config, lima, project: Project) -> str:
    policy = config.network
    lines = ['Network Security Status', '═' * 47, '']
    if not config.is_enabled('network-isolation'):
        lines += [
            'Status: DISABLED',
            '',
            'Network isolation is not enabled for this project.',
            '',
            'To enable it:',
            '  1. Add to .claude-vm.toml:',
            '     [security.network]',
            '     enabled = true',
            '  2. Rebuild the template:',
            '     claude-vm clean && claude-vm setup',
            '',
            'Or use the CLI shortcut:',
            '  claude-vm setup --network-isolation',
        ]
        return '\n'.join(lines)

    sessions = find_running_sessions(lima, project)
    if not sessions:
        lines += [
            'Status: INACTIVE (VM not running)',
            '',
            'The proxy only runs inside session VMs. Start one with:',
            '  claude-vm        # Run the agent',
            '  claude-vm shell  # Open shell',
        ]
        return '\n'.join(lines)

    vm_name = sessions[-1]
    probe = probe_proxy(lima, vm_name)
    if probe.ok is None:
        lines += [
            'Status: INACTIVE (Proxy not started)',
            '',
            f'VM: {vm_name}',
            'The proxy starts automatically with each session runtime.',
        ]
        return '\n'.join(lines)
    if probe.ok is False:
        lines += [
            'Status: INACTIVE (Proxy stopped)',
            '',
            f'VM: {vm_name}',
            f'The proxy process (PID: {probe.diag or "unknown"}) is not running.',
            'It may have crashed or been stopped.',
            '',
            'Check logs: claude-vm network logs',
        ]
        return '\n'.join(lines)

    pid = probe.detail
    lines += [status_line(True, 'Status: ACTIVE'), '', f'VM: {vm_name}', '', 'Proxy Process:']
    lines.append(f'  PID: {pid}')
    lines.append(f'  Listening: {PROXY_LISTEN}')
    uptime = proxy_uptime(lima, vm_name, pid)
    if uptime:
        lines.append(f'  Uptime: {uptime}')
    lines += [
        '',
        'Policy Configuration:',
        f'  Mode: {policy.mode}',
        f'  Allowed domains: {pluralize(len(policy.allowed_domains), "pattern")}',
        f'  Blocked domains: {pluralize(len(policy.blocked_domains), "pattern")}',
        f'  Bypass domains: {pluralize(len(policy.bypass_domains), "pattern")}',
        '',
        'Protocol Blocks:',
        f'  Raw TCP/UDP: {on_off(policy.block_tcp_udp)}',
        f'  Private networks: {on_off(policy.block_private_networks)}',
        f'  Cloud metadata: {on_off(policy.block_metadata_services)}',
        '',
    ]
    stats = read_proxy_stats(lima, vm_name)
    if stats is not None:
        lines.append('Statistics:')
        for key, label in (
            ('requests_total', 'Requests seen'),
            ('requests_allowed', 'Requests allowed'),
            ('requests_blocked', 'Requests blocked'),
        ):
            if isinstance(stats.get(key), int):
                lines.append(f'  {label}: {stats[key]}')
        lines.append('')
    lines.append('View logs: claude-vm network logs')
    return '\n'.join(lines)
