"""
The ``agent`` and ``shell`` commands: run something in a throwaway clone.

Both accept the runtime flags up front and pass everything after the
first unrecognized token (or after ``--``) through untouched, so
``claude-vm agent --disk 50 /clear --model x`` hands ``/clear --model x``
to the agent.
"""

from __future__ import annotations

import sys

import scriptconfig as scfg

from ..agents import AgentRegistry
from ..agents.executor import ensure_agent_command
from ..env import collect_env_vars
from ..shell import join_args
from ..update_check import check_and_notify
from ..vm.session import run_in_session, session_workdir
from ._common import (
    _BaseCommand,
    _ensure_template,
    _get_lima,
    _load_project_config,
    _resolve_worktree,
    log,
)

SCALAR_OPTIONS = {
    '--disk': 'disk',
    '--memory': 'memory',
    '--cpus': 'cpus',
    '--worktree': 'worktree',
}
LIST_OPTIONS = {
    '--mount': 'mount',
    '--env': 'env',
    '--env-file': 'env_file',
    '--inherit-env': 'inherit_env',
    '--runtime-script': 'runtime_script',
}
FLAG_OPTIONS = {
    '--forward-ssh-agent': 'forward_ssh_agent',
    '-A': 'forward_ssh_agent',
    '--no-conversations': 'no_conversations',
    '--auto-setup': 'auto_setup',
}


def _canonical(opt: str) -> str:
    """Accept ``--env_file`` as well as ``--env-file``."""
    if opt.startswith('--'):
        return '--' + opt[2:].replace('_', '-')
    return opt


def split_runtime_args(argv: list[str]) -> tuple[list[str], dict[str, list[str]], list[str]]:
    """
    Separate runtime options from the pass-through arguments.

    Returns ``(argv_for_parser, list_options, passthrough)``. Repeatable
    options are collected into ``list_options`` keyed by field name.
    Parsing stops at ``--`` (which is dropped) or at the first token that
    is not a runtime option.

    Example:
        >>> from claude_vm.cli.run import split_runtime_args
        >>> split_runtime_args(['--disk', '50', '--env', 'A=1', '-v', '/clear', '--disk', '9'])
        (['--disk=50', '-v'], {'env': ['A=1']}, ['/clear', '--disk', '9'])
        >>> split_runtime_args(['-A', '--', '--help'])
        (['--forward_ssh_agent'], {}, ['--help'])
    """
    parsed: list[str] = []
    lists: dict[str, list[str]] = {}
    idx = 0
    while idx < len(argv):
        item = argv[idx]
        if item == '--':
            idx += 1
            break
        if item in {'-h', '--help', '--verbose'} or (
            item.startswith('-') and not item.startswith('--')
            and len(item) > 1 and set(item[1:]) <= {'v'}
        ):
            parsed.append(item)
            idx += 1
            continue
        opt, eq, value = item.partition('=')
        opt = _canonical(opt)
        if opt in FLAG_OPTIONS and not eq:
            parsed.append('--' + FLAG_OPTIONS[opt])
            idx += 1
            continue
        if opt in SCALAR_OPTIONS or opt in LIST_OPTIONS:
            if not eq:
                if idx + 1 >= len(argv):
                    # Leave the dangling option for the parser to reject.
                    parsed.append(item)
                    idx += 1
                    continue
                value = argv[idx + 1]
                idx += 2
            else:
                idx += 1
            if opt in SCALAR_OPTIONS:
                parsed.append(f'--{SCALAR_OPTIONS[opt]}={value}')
            else:
                lists.setdefault(LIST_OPTIONS[opt], []).append(value)
            continue
        break
    return parsed, lists, list(argv[idx:])


class _RuntimeCommand(_BaseCommand):
    disk = scfg.Value(None, type=int, help='Disk size in GB for this session.')
    memory = scfg.Value(None, type=int, help='Memory in GB for this session.')
    cpus = scfg.Value(None, type=int, help='Number of CPUs for this session.')
    mount = scfg.Value([], help='Extra mount HOST[:GUEST][:ro|rw] (repeatable).')
    env = scfg.Value([], help='KEY=VALUE exported in the VM (repeatable).')
    env_file = scfg.Value([], help='Read KEY=VALUE lines from a file (repeatable).')
    inherit_env = scfg.Value([], help='Copy a host variable into the VM (repeatable).')
    runtime_script = scfg.Value([], help='Extra runtime script to run before the command (repeatable).')
    forward_ssh_agent = scfg.Value(False, isflag=True, short_alias=['A'], help='Forward the host SSH agent.')
    no_conversations = scfg.Value(False, isflag=True, help='Do not mount the conversation history folder.')
    auto_setup = scfg.Value(False, isflag=True, help='Create the template without asking when it is missing.')
    worktree = scfg.Value('', help='Run from the worktree of BRANCH[,BASE], creating it when needed.')

    @classmethod
    def _prepare(cls, argv, kwargs):
        passthrough = list(kwargs.pop('passthrough', []))
        lists = {key: list(kwargs.pop(key)) for key in list(kwargs) if key in LIST_OPTIONS.values()}
        if argv is True:
            argv, more_lists, more_pass = split_runtime_args(sys.argv[2:])
            lists.update(more_lists)
            passthrough = more_pass + passthrough
        args = cls.cli(argv=argv, data=kwargs)
        for key, value in lists.items():
            args[key] = value

        project, cfg = _load_project_config(args.to_dict())
        if args.worktree:
            path = _resolve_worktree(args.worktree, cfg, project)
            project, cfg = _load_project_config(args.to_dict(), cwd=path)
        env_vars = collect_env_vars(args.env, args.env_file, args.inherit_env)
        return args, project, cfg, env_vars, passthrough


class AgentCLI(_RuntimeCommand):
    """Run the configured coding agent in an ephemeral VM (the default command)."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args, project, cfg, env_vars, passthrough = cls._prepare(argv, kwargs)
        lima = _get_lima()
        check_and_notify(cfg.update_check.enabled, cfg.update_check.interval_hours)
        agent = AgentRegistry().get(cfg.defaults.agent)
        _ensure_template(project, cfg, lima=lima)

        def before_exec(session):
            ensure_agent_command(lima, session.name, agent)
            print(f'Running {agent.name} in VM: {session.name}')

        agent_args = [*agent.default_args, *cfg.defaults.agent_args, *passthrough]
        log.debug('Agent command: {} {}', agent.command, agent_args)
        return run_in_session(
            project,
            cfg,
            agent.command,
            agent_args,
            lima=lima,
            env_vars=env_vars,
            before_exec=before_exec,
            workdir=session_workdir(project),
        )


class ShellCLI(_RuntimeCommand):
    """Open a login shell, or run a command, in an ephemeral VM."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args, project, cfg, env_vars, passthrough = cls._prepare(argv, kwargs)
        lima = _get_lima()
        _ensure_template(project, cfg, lima=lima)
        workdir = session_workdir(project)

        if passthrough:
            command, command_args = 'bash', ['-c', join_args(passthrough)]
            before_exec = None
        else:
            command, command_args = 'bash', ['-l']

            def before_exec(session):
                print(
                    f'VM: {session.name} | Dir: {workdir} | '
                    f'Project: {project.template_name}'
                )
                print("Type 'exit' to stop and delete the VM")

        return run_in_session(
            project,
            cfg,
            command,
            command_args,
            lima=lima,
            env_vars=env_vars,
            before_exec=before_exec,
            workdir=workdir,
        )
