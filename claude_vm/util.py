"""Shared helpers for subprocess execution and command formatting."""

from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

log = logger


@dataclass(frozen=True)
class CmdResult:
    code: int
    stdout: str
    stderr: str


class CmdError(RuntimeError):
    def __init__(self, cmd: Sequence[str] | str, result: CmdResult):
        self.cmd = cmd
        self.result = result
        super().__init__(
            f'Command failed (code={result.code}): {cmd}\n{result.stderr}'.strip()
        )


class CmdTimeoutError(CmdError):
    def __init__(self, cmd: Sequence[str] | str, timeout: float):
        self.timeout = timeout
        result = CmdResult(-1, '', f'timed out after {timeout}s')
        super().__init__(cmd, result)


def shell_join(cmd: Sequence[str]) -> str:
    return ' '.join(shlex.quote(str(c)) for c in cmd)


def run_cmd(
    cmd: Sequence[str],
    *,
    check: bool = True,
    capture: bool = True,
    quiet: bool = False,
    text: bool = True,
    input_text: Optional[str] = None,
    env: Optional[dict[str, str]] = None,
    cwd: Optional[str | Path] = None,
    timeout: Optional[float] = None,
) -> CmdResult:
    """
    Run a command and return its exit code and output.

    Args:
        capture: collect stdout/stderr. When False the child inherits the
            terminal, unless ``quiet`` is set, in which case its output is
            discarded.
        timeout: seconds before the child is killed and
            :class:`CmdTimeoutError` is raised.

    Raises:
        FileNotFoundError: the executable does not exist.
        CmdError: the command exited non-zero and ``check`` is set.
    """
    cmd = [str(c) for c in cmd]
    log.opt(depth=1).debug('RUN: {}', shell_join(cmd))
    if capture:
        io_kwargs = {'capture_output': True}
    elif quiet:
        io_kwargs = {'stdout': subprocess.DEVNULL, 'stderr': subprocess.DEVNULL}
    else:
        io_kwargs = {}
    try:
        p = subprocess.run(
            cmd,
            input=input_text if input_text is not None else None,
            text=text,
            env=env,
            cwd=cwd,
            timeout=timeout,
            **io_kwargs,
        )
    except subprocess.TimeoutExpired:
        log.opt(depth=1).error(
            'Command timed out after {}s: {}', timeout, shell_join(cmd)
        )
        raise CmdTimeoutError(cmd, timeout)
    res = CmdResult(p.returncode, p.stdout or '', p.stderr or '')
    if check and p.returncode != 0:
        log.opt(depth=1).error(
            'Command failed code={} cmd={} stderr={} stdout={}',
            p.returncode,
            shell_join(cmd),
            res.stderr.strip(),
            res.stdout.strip(),
        )
        raise CmdError(cmd, res)
    if p.returncode == 0:
        log.opt(depth=1).debug('Command ok code=0 cmd={}', shell_join(cmd))
    return res


def which(cmd: str) -> Optional[str]:
    from shutil import which as _which

    return _which(cmd)


