"""Top-level modal CLI wiring, argv routing, exit codes and logging setup."""

from __future__ import annotations

import os
import sys

import scriptconfig as scfg
from loguru import logger

from .. import __version__
from ..errors import CommandExitCodeError
from ._common import log
from .config import ConfigModalCLI
from .network import NetworkModalCLI
from .run import AgentCLI, ShellCLI, split_runtime_args
from .setup import SetupCLI
from .templates import CleanAllCLI, CleanCLI, InfoCLI, ListCLI
from .version import UpdateCLI, VersionCLI
from .worktree import WorktreeModalCLI

KNOWN_SUBCOMMANDS = (
    'agent',
    'shell',
    'setup',
    'info',
    'config',
    'list',
    'clean',
    'clean-all',
    'version',
    'update',
    'network',
    'worktree',
)
_TOP_LEVEL_FLAGS = ('--help', '-h', '--version', '-V')
_SUBCOMMAND_ALIASES = {'w': 'worktree'}
_REPEATABLE = {'setup': ('--setup_script', '--mount')}


class ClaudeVMModalCLI(scfg.ModalCLI):
    """
    Run coding agents inside throwaway Lima VMs cloned from a per-project template.

    ``claude-vm [options] [args]`` is shorthand for ``claude-vm agent``.
    """

    agent = AgentCLI
    shell = ShellCLI
    setup = SetupCLI
    info = InfoCLI
    config = ConfigModalCLI
    list = ListCLI
    clean = CleanCLI
    clean_all = CleanAllCLI
    version = VersionCLI
    update = UpdateCLI
    network = NetworkModalCLI
    worktree = WorktreeModalCLI


def route_args(argv: list[str]) -> list[str]:
    """
    Insert the default ``agent`` command unless a known command or a
    top-level help/version flag comes first.

    Example:
        >>> from claude_vm.cli.main import route_args
        >>> route_args(['/clear'])
        ['agent', '/clear']
        >>> route_args(['--disk', '50', '/clear'])
        ['agent', '--disk', '50', '/clear']
        >>> route_args(['shell', 'ls']), route_args([])
        (['shell', 'ls'], ['agent'])
    """
    if not argv:
        return ['agent']
    first = argv[0]
    if first in _TOP_LEVEL_FLAGS:
        return list(argv)
    if first in _SUBCOMMAND_ALIASES:
        return [_SUBCOMMAND_ALIASES[first], *argv[1:]]
    if first in KNOWN_SUBCOMMANDS:
        return list(argv)
    return ['agent', *argv]


def normalize_worktree_args(argv: list[str]) -> list[str]:
    """
    Fold ``--worktree BRANCH [BASE]`` into ``--worktree=BRANCH[,BASE]``.

    At most two following tokens are consumed, stopping at ``--`` or any
    token that starts with ``-``.

    Example:
        >>> from claude_vm.cli.main import normalize_worktree_args
        >>> normalize_worktree_args(['agent', '--worktree', 'feat', 'main', '--disk', '9'])
        ['agent', '--worktree=feat,main', '--disk', '9']
        >>> normalize_worktree_args(['agent', '--worktree', 'feat', '--', '/clear'])
        ['agent', '--worktree=feat', '--', '/clear']
    """
    out: list[str] = []
    idx = 0
    while idx < len(argv):
        item = argv[idx]
        if item == '--':
            out.extend(argv[idx:])
            break
        if item != '--worktree':
            out.append(item)
            idx += 1
            continue
        parts = []
        nxt = idx + 1
        while nxt < len(argv) and len(parts) < 2:
            cand = argv[nxt]
            if cand == '--' or cand.startswith('-'):
                break
            parts.append(cand)
            nxt += 1
        out.append('--worktree=' + ','.join(parts) if parts else item)
        idx = nxt
    return out


def _underscore_options(argv: list[str]) -> list[str]:
    """``--no-agent-install`` -> ``--no_agent_install`` (scriptconfig spelling)."""
    out = []
    for item in argv:
        if item == '--':
            out.extend(argv[len(out):])
            break
        if item.startswith('--') and len(item) > 2:
            name, eq, value = item[2:].partition('=')
            item = '--' + name.replace('-', '_') + eq + value
        out.append(item)
    return out


def _merge_repeated(argv: list[str], options: tuple[str, ...]) -> list[str]:
    """
    Collect repeated list options into one ``--opt a b`` occurrence.

    Example:
        >>> from claude_vm.cli.main import _merge_repeated
        >>> _merge_repeated(['--mount', 'a', '--docker', '--mount=b'], ('--mount',))
        ['--docker', '--mount', 'a', 'b']
    """
    collected: dict[str, list[str]] = {}
    rest: list[str] = []
    idx = 0
    while idx < len(argv):
        item = argv[idx]
        name, eq, value = item.partition('=')
        if name in options:
            if eq:
                collected.setdefault(name, []).append(value)
                idx += 1
                continue
            if idx + 1 < len(argv):
                collected.setdefault(name, []).append(argv[idx + 1])
                idx += 2
                continue
        rest.append(item)
        idx += 1
    for name, values in collected.items():
        rest += [name, *values]
    return rest


def _normalize_sub_argv(argv: list[str]) -> list[str]:
    """Normalize accepted hyphenated spellings to scriptconfig command names."""
    if not argv:
        return argv
    head, tail = argv[0], argv[1:]
    if head == 'clean-all':
        head = 'clean_all'
    if head == 'worktree' and tail:
        if tail[0] == 'rm':
            tail = ['remove', *tail[1:]]
        if tail[0] in {'list', 'remove'}:
            tail = [tail[0], *_split_merged_base(tail[1:])]
    tail = _underscore_options(tail)
    if head in _REPEATABLE:
        tail = _merge_repeated(tail, _REPEATABLE[head])
    return [head, *tail]


def _split_merged_base(argv: list[str]) -> list[str]:
    """
    ``--merged [BASE]`` -> ``--merged [--merged_base BASE]``.

    Example:
        >>> from claude_vm.cli.main import _split_merged_base
        >>> _split_merged_base(['--merged', 'main', '-y'])
        ['--merged', '--merged_base', 'main', '-y']
        >>> _split_merged_base(['--merged=dev']), _split_merged_base(['--merged'])
        (['--merged', '--merged_base', 'dev'], ['--merged'])
    """
    out: list[str] = []
    idx = 0
    while idx < len(argv):
        item = argv[idx]
        if item.startswith('--merged='):
            out += ['--merged', '--merged_base', item.split('=', 1)[1]]
        elif item == '--merged':
            out.append(item)
            nxt = argv[idx + 1] if idx + 1 < len(argv) else None
            if nxt is not None and not nxt.startswith('-'):
                out += ['--merged_base', nxt]
                idx += 1
        else:
            out.append(item)
        idx += 1
    return out


def main(argv: list[str] | None = None) -> None:
    if argv is None:
        argv = sys.argv[1:]
    argv = normalize_worktree_args(route_args(list(argv)))
    _setup_logging(_count_verbose(argv))

    if argv[0] in {'--version', '-V'}:
        print(f'claude-vm {__version__}')
        sys.exit(0)

    wants_help = False
    try:
        if argv[0] in {'agent', 'shell'}:
            parsed, lists, passthrough = split_runtime_args(argv[1:])
            wants_help = any(flag in parsed for flag in ('-h', '--help'))
            cmd_cls = AgentCLI if argv[0] == 'agent' else ShellCLI
            rc = cmd_cls.main(argv=parsed, passthrough=passthrough, **lists)
        else:
            sub_argv = _normalize_sub_argv(argv)
            wants_help = any(flag in sub_argv for flag in ('-h', '--help'))
            rc = ClaudeVMModalCLI.main(argv=sub_argv, _noexit=True)
    except CommandExitCodeError as ex:
        log.debug('Command in VM exited with {}', ex.code)
        sys.exit(ex.code)
    except KeyboardInterrupt:
        print('Interrupted', file=sys.stderr)
        sys.exit(130)
    except Exception as ex:
        print(f'ERROR: {ex}', file=sys.stderr)
        log.error('Unhandled claude-vm error: {}', ex)
        sys.exit(1)

    if wants_help:
        sys.exit(0)
    if isinstance(rc, int):
        sys.exit(rc)
    sys.exit(0)


def _setup_logging(args_verbose: int) -> None:
    logger.remove()
    level = 'WARNING'
    if args_verbose == 1:
        level = 'INFO'
    elif args_verbose >= 2:
        level = 'DEBUG'
    colorize = sys.stderr.isatty() and os.getenv('NO_COLOR') is None
    logger.add(
        sys.stderr,
        level=level,
        colorize=colorize,
        format='<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>',
    )
    log.debug('Logging configured at {} (colorize={})', level, colorize)


def _count_verbose(argv: list[str]) -> int:
    """
    Count ``-v`` style flags that precede any pass-through arguments.

    Example:
        >>> from claude_vm.cli.main import _count_verbose
        >>> _count_verbose(['agent', '-vv', '--', '-v']), _count_verbose(['setup', '--verbose'])
        (2, 1)
    """
    count = 0
    for item in argv:
        if item == '--':
            break
        if item == '--verbose':
            count += 1
        elif item.startswith('-') and not item.startswith('--'):
            short = item[1:]
            if short and set(short) <= {'v'}:
                count += len(short)
    return count
