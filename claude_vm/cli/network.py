from __future__ import annotations

import dataclasses

import scriptconfig as scfg

from ..errors import ClaudeVMError, VMCommandError
from ..network import ALLOWLIST, evaluate
from ..shell import shell_escape
from ..status import PROXY_LOG_FILE, find_running_sessions, render_network_status
from ._common import _BaseCommand, _choose, _get_lima, _load_project_config

_RULE = '═' * 61


class NetworkStatusCLI(_BaseCommand):
    """Show whether the filtering proxy runs in a session VM of this project."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        cls.cli(argv=argv, data=kwargs)
        project, cfg = _load_project_config()
        print(render_network_status(cfg, _get_lima(), project))
        return 0


def build_log_command(lines: int, pattern: str | None, show_all: bool, follow: bool) -> str:
    """
    Shell pipeline that reads the proxy log inside the VM.

    Example:
        >>> from claude_vm.cli.network import build_log_command
        >>> build_log_command(20, 'github', False, False)
        "grep -i 'github' /tmp/mitmproxy.log | tail -n 20"
        >>> build_log_command(50, None, True, True)
        'tail -f /tmp/mitmproxy.log'
    """
    if follow:
        cmd = f'tail -f {PROXY_LOG_FILE}'
        if pattern:
            cmd += f' | grep --line-buffered -i {shell_escape(pattern)}'
        return cmd
    if pattern:
        cmd = f'grep -i {shell_escape(pattern)} {PROXY_LOG_FILE}'
    else:
        cmd = f'cat {PROXY_LOG_FILE}'
    if not show_all:
        cmd += f' | tail -n {int(lines)}'
    return cmd


class NetworkLogsCLI(_BaseCommand):
    """Show the proxy log of a running session VM."""

    lines = scfg.Value(50, type=int, short_alias=['n'], help='Show the last N lines.')
    filter = scfg.Value(None, short_alias=['f'], help='Only lines matching this pattern.')
    all = scfg.Value(False, isflag=True, help='Show the whole log.')
    follow = scfg.Value(False, isflag=True, help='Stream new lines as they arrive.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        project, _ = _load_project_config()
        lima = _get_lima()
        sessions = find_running_sessions(lima, project)
        if not sessions:
            print('No session VMs are currently running for this project.')
            print('Proxy logs only exist while a session runs. Start one with:')
            print('  claude-vm        # Run the agent')
            print('  claude-vm shell  # Open shell')
            raise ClaudeVMError('No running VMs')
        vm_name = _choose(sessions, reason='running session VMs')

        if lima.shell(vm_name, 'test', ['-f', PROXY_LOG_FILE], check=False) != 0:
            print('Network isolation logs not found in this VM.')
            print('Enable it in .claude-vm.toml ([security.network] enabled = true)')
            print('and rebuild the template: claude-vm clean && claude-vm setup')
            return 0

        cmd = build_log_command(args.lines, args.filter, args.all, args.follow)
        if args.follow:
            print('Network Isolation Logs (following)')
            print(_RULE)
            print(f'VM: {vm_name}')
            if args.filter:
                print(f'Filter: {args.filter}')
            print('Press Ctrl+C to stop following')
            print(_RULE)
            print()
            return lima.shell(vm_name, 'sh', ['-c', cmd])

        try:
            text = lima.shell_output(vm_name, 'sh', ['-c', cmd])
        except VMCommandError as ex:
            # grep exits 1 when nothing matches
            if args.filter and ex.code == 1:
                text = ''
            else:
                raise
        if not text.strip():
            if args.filter:
                print(f'No logs matching filter: {args.filter}')
            else:
                print('No logs available yet.')
            return 0
        print('Network Isolation Logs')
        print(_RULE)
        print(f'VM: {vm_name}')
        if args.filter:
            print(f'Filter: {args.filter}')
        if not args.all:
            print(f'Showing last {args.lines} lines')
        print(_RULE)
        print()
        print(text, end='' if text.endswith('\n') else '\n')
        print()
        print(f'Log file: {PROXY_LOG_FILE} (inside VM)')
        return 0


class NetworkTestCLI(_BaseCommand):
    """Check whether a domain would pass the configured policy."""

    domain = scfg.Value(None, position=1, help='Domain to test, e.g. api.github.com.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        if not args.domain:
            raise ClaudeVMError('A domain is required: claude-vm network test DOMAIN')
        _, cfg = _load_project_config()
        policy = cfg.network
        print(f'Testing domain: {args.domain}')
        print('═' * 60)
        print()
        if not cfg.is_enabled('network-isolation'):
            print('Status: Network isolation is DISABLED')
            print('The domain would be allowed (no filtering active).')
            return 0

        decision = evaluate(args.domain, dataclasses.replace(policy, enabled=True))
        if decision.reason == 'bypass':
            print('Result: ✓ ALLOWED (bypass)')
            print()
            print('This domain matches a bypass pattern (no TLS interception):')
        elif decision.allowed:
            print('Result: ✓ ALLOWED')
            print()
            print(_mode_line(policy.mode))
            if decision.patterns:
                print('This domain matches an allowed pattern:')
            else:
                print('This domain does NOT match any blocked patterns.')
        else:
            print('Result: ✗ BLOCKED')
            print()
            print(_mode_line(policy.mode))
            if policy.mode == ALLOWLIST:
                print('This domain does NOT match any allowed patterns.')
                print()
                print('To allow it, add to .claude-vm.toml:')
                print('  [security.network]')
                print(f'  allowed_domains = ["{args.domain}"]')
            else:
                print('This domain matches a blocked pattern:')
        for pattern in decision.patterns:
            print(f'  • {pattern}')
        return 0


def _mode_line(mode: str) -> str:
    if mode == ALLOWLIST:
        return 'Policy mode: Allowlist (block all except allowed)'
    return 'Policy mode: Denylist (allow all except blocked)'


class NetworkModalCLI(scfg.ModalCLI):
    """Network isolation diagnostics."""

    status = NetworkStatusCLI
    logs = NetworkLogsCLI
    test = NetworkTestCLI
